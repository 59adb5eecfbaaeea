"""
Main entry point for the Pub/Sub source controller.

This module wires the backends, the reconcilers and the HTTP API together
and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import Optional

from api import APIServer
from config import get_config
from controller import Controller, ControllerConfig, Reconciler
from dataplane import DataPlaneReconciler
from db import DatabaseManager
from deletion import DeletionCoordinator
from events import EventBus, EventRecorder
from messaging import SubscriptionReconciler
from plugins.registry import (
    AUTOSCALERS,
    MESSAGING,
    RESOLVERS,
    WORKLOADS,
    get_registry,
    register_builtin_plugins,
)
from resolver import DesiredStateResolver

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller, backends and API."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.api: Optional[APIServer] = None
        self.event_bus: Optional[EventBus] = None
        self.recorder: Optional[EventRecorder] = None
        self.running = False

    async def _backend(self, kind: str, name: str):
        registry = get_registry()
        return await registry.get(
            kind, name, self.config.backends.get_backend_config(name)
        )

    async def initialize(self):
        """Connect the store and wire the controller to its backends."""
        logger.info("Initializing Pub/Sub source controller")

        register_builtin_plugins()
        registry = get_registry()
        backends = self.config.backends
        if not backends.receive_adapter_image:
            raise ValueError("RECEIVE_ADAPTER_IMAGE environment variable must be set")

        # Initialize database
        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        self.event_bus = EventBus()
        self.recorder = EventRecorder(self.event_bus)

        messaging_admin = await self._backend(MESSAGING, backends.messaging_backend)
        workload_admin = await self._backend(WORKLOADS, backends.workload_backend)
        address_resolver = await self._backend(RESOLVERS, backends.resolver_backend)
        binder = None
        if registry.has_plugin(AUTOSCALERS, backends.autoscaler_backend):
            binder = await self._backend(AUTOSCALERS, backends.autoscaler_backend)
        else:
            logger.warning(
                f"Autoscaler backend '{backends.autoscaler_backend}' not available; "
                "elastic scaling requests will fail"
            )

        subscriptions = SubscriptionReconciler(messaging_admin)
        ctrl_config = self.config.controller
        reconciler = Reconciler(
            store=self.db,
            resolver=DesiredStateResolver(address_resolver, backends.default_project),
            subscriptions=subscriptions,
            dataplane=DataPlaneReconciler(
                workload_admin, backends.receive_adapter_image, binder
            ),
            deletion=DeletionCoordinator(
                self.db, subscriptions, backends.default_project
            ),
            recorder=self.recorder,
            max_conflict_retries=ctrl_config.max_conflict_retries,
            not_ready_requeue=ctrl_config.not_ready_requeue,
        )

        controller_config = ControllerConfig(
            reconcile_interval=ctrl_config.reconcile_interval,
            max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
            pass_timeout=ctrl_config.pass_timeout,
            resync_interval=ctrl_config.resync_interval,
            not_ready_requeue=ctrl_config.not_ready_requeue,
            backoff_base_delay=ctrl_config.backoff_base_delay,
            backoff_max_delay=ctrl_config.backoff_max_delay,
            backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
        )
        self.controller = Controller(self.db, reconciler, controller_config)

        api_config = self.config.api
        self.api = APIServer(
            store=self.db,
            controller=self.controller,
            event_bus=self.event_bus,
            recorder=self.recorder,
            host=api_config.host,
            port=api_config.port,
            log_level=api_config.log_level,
        )

        logger.info("Pub/Sub source controller initialized")

    async def start(self):
        """Run the controller and the HTTP API until stopped."""
        if not self.controller or not self.api:
            await self.initialize()

        self.running = True
        logger.info("Starting Pub/Sub source controller")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Drain in-flight passes before closing connections."""
        logger.info("Stopping Pub/Sub source controller")
        self.running = False

        if self.api:
            await self.api.stop()

        if self.controller:
            await self.controller.stop()

        await get_registry().close_all()

        if self.db:
            await self.db.close()

        logger.info("Pub/Sub source controller stopped")


async def main():
    """Run the controller process."""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.api.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())

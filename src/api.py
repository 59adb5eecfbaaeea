"""
HTTP API - REST surface for Pub/Sub sources.

Provides a FastAPI-based API for managing Pub/Sub sources and triggering
their reconciliation. Notices are streamed over Server-Sent Events.
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from db import AlreadyExistsError
from events import EventBus, EventRecorder, Notice
from models import SourceSpec

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_SPEC_SIZE = 256 * 1024


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_source_spec(value: Dict[str, Any]) -> Dict[str, Any]:
    """Check the shape of a source spec before it is stored."""
    if len(json.dumps(value)) > MAX_SPEC_SIZE:
        raise ValueError(f"spec exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB")
    if value.get("secret") is not None and not (
        isinstance(value["secret"], dict)
        and value["secret"].get("name")
        and value["secret"].get("key")
    ):
        raise ValueError("spec.secret must set name and key")
    try:
        spec = SourceSpec.from_dict(value)
    except (AttributeError, TypeError, KeyError) as e:
        raise ValueError(f"malformed spec: {e}") from e
    if not spec.topic:
        raise ValueError("spec.topic is required")
    if spec.sink is None or (spec.sink.ref is None and not spec.sink.uri):
        raise ValueError("spec.sink must set ref or uri")
    return value


class PubSubSourceCreate(BaseModel):
    """Request model for creating a Pub/Sub source."""

    name: str = Field(..., description="Source name", examples=["orders"])
    spec: Dict[str, Any] = Field(..., description="Source specification")
    annotations: Optional[Dict[str, str]] = Field(
        default=None, description="Annotations, e.g. autoscaling options"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_source_spec(v)


class PubSubSourceUpdate(BaseModel):
    """Request model for replacing the spec of a Pub/Sub source."""

    spec: Dict[str, Any] = Field(..., description="Updated source specification")
    annotations: Optional[Dict[str, str]] = Field(None, description="Annotations")

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_source_spec(v)


class PubSubSourceResponse(BaseModel):
    """Response model for a Pub/Sub source."""

    namespace: str
    name: str
    uid: str
    generation: int
    resource_version: int
    spec: Dict[str, Any]
    annotations: Dict[str, str] = {}
    status: Dict[str, Any] = {}
    finalizers: List[str] = []
    deletion_timestamp: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ReconciliationHistoryResponse(BaseModel):
    """Response model for one reconciliation history entry."""

    generation: int
    success: bool
    phase: str
    message: Optional[str] = None
    duration_seconds: Optional[float] = None
    trigger_reason: Optional[str] = None
    reconcile_time: datetime


class NoticeResponse(BaseModel):
    """Response model for a recorded notice."""

    type: str
    reason: str
    message: str
    namespace: str
    name: str
    timestamp: datetime


def _source_response(record: Dict[str, Any]) -> PubSubSourceResponse:
    return PubSubSourceResponse(
        **{k: v for k, v in record.items() if k in PubSubSourceResponse.model_fields}
    )


class APIServer:
    """FastAPI application and the uvicorn server that runs it."""

    def __init__(
        self,
        store,
        controller=None,
        event_bus: Optional[EventBus] = None,
        recorder: Optional[EventRecorder] = None,
        host: str = "0.0.0.0",
        port: int = 8000,
        log_level: str = "info",
    ):
        self.store = store
        self.controller = controller
        self.event_bus = event_bus
        self.recorder = recorder
        self.host = host
        self.port = port
        self.log_level = log_level.lower()
        self.server: Optional[uvicorn.Server] = None
        self.app = FastAPI(
            title="Pub/Sub Source Controller API",
            description="Manage Pub/Sub sources and watch their reconciliation",
            version="1.0.0",
        )
        self._setup_routes()

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes.

        Configures the following endpoint groups:
        - Health check: GET /
        - Sources CRUD: /api/v1/namespaces/{namespace}/pubsubsources
        - Reconciliation: POST .../{name}/reconcile
        - History and notices: GET .../{name}/history, .../{name}/events
        - Notice stream: GET /api/v1/events
        """
        app = self.app
        base = "/api/v1/namespaces/{namespace}/pubsubsources"

        @app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "pubsub-source-controller"}

        @app.post(base, response_model=PubSubSourceResponse, status_code=201)
        async def create_source(namespace: str, source: PubSubSourceCreate):
            """Create a new Pub/Sub source."""
            try:
                validate_name_format(namespace, "namespace")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

            try:
                created = await self.store.create_source(
                    namespace, source.name, source.spec, source.annotations
                )
            except AlreadyExistsError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error creating source: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            await self._trigger(namespace, source.name)
            return _source_response(created)

        @app.get(base, response_model=List[PubSubSourceResponse])
        async def list_sources(namespace: str, limit: int = 100):
            """List sources in a namespace."""
            try:
                records = await self.store.list_sources(namespace=namespace, limit=limit)
                return [_source_response(r) for r in records]
            except Exception as e:
                logger.error(f"Error listing sources: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @app.get(base + "/{name}", response_model=PubSubSourceResponse)
        async def get_source(namespace: str, name: str):
            """Get a source by namespace and name."""
            record = await self._get_or_404(namespace, name)
            return _source_response(record)

        @app.put(base + "/{name}", response_model=PubSubSourceResponse)
        async def update_source(namespace: str, name: str, update: PubSubSourceUpdate):
            """Replace the spec of a source."""
            try:
                updated = await self.store.update_source(
                    namespace, name, update.spec, update.annotations
                )
            except Exception as e:
                logger.error(f"Error updating source: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            if updated is None:
                raise HTTPException(status_code=404, detail="PubSubSource not found")

            await self._trigger(namespace, name)
            return _source_response(updated)

        @app.delete(base + "/{name}", status_code=202)
        async def delete_source(namespace: str, name: str):
            """Mark a source for deletion; finalization runs asynchronously."""
            try:
                removed = await self.store.mark_for_deletion(namespace, name)
            except Exception as e:
                logger.error(f"Error deleting source: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            if removed is None:
                raise HTTPException(status_code=404, detail="PubSubSource not found")

            if removed:
                return {"message": "PubSubSource deleted", "key": f"{namespace}/{name}"}
            await self._trigger(namespace, name)
            return {
                "message": "PubSubSource marked for deletion",
                "key": f"{namespace}/{name}",
            }

        @app.post(base + "/{name}/reconcile", status_code=202)
        async def trigger_reconciliation(namespace: str, name: str):
            """Manually trigger reconciliation for a source."""
            if not await self._trigger(namespace, name):
                raise HTTPException(status_code=404, detail="PubSubSource not found")
            return {"message": "Reconciliation triggered", "key": f"{namespace}/{name}"}

        @app.get(
            base + "/{name}/history",
            response_model=List[ReconciliationHistoryResponse],
        )
        async def get_reconciliation_history(namespace: str, name: str, limit: int = 10):
            """Get reconciliation history for a source."""
            try:
                history = await self.store.get_reconciliation_history(
                    namespace, name, limit
                )
                return [ReconciliationHistoryResponse(**record) for record in history]
            except Exception as e:
                logger.error(f"Error getting reconciliation history: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @app.get(base + "/{name}/events", response_model=List[NoticeResponse])
        async def get_source_notices(namespace: str, name: str):
            """Notices recorded for a source, oldest first."""
            if not self.recorder:
                raise HTTPException(status_code=503, detail="Notices not available")
            return [
                NoticeResponse(**n.to_dict())
                for n in self.recorder.events_for(namespace, name)
            ]

        @app.get("/api/v1/events")
        async def stream_events(
            namespace: Optional[str] = None, name: Optional[str] = None
        ):
            """SSE stream of notices, optionally for one namespace or object."""
            if not self.event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            def filter_fn(notice: Notice) -> bool:
                if namespace and notice.namespace != namespace:
                    return False
                return not name or notice.name == name

            subscriber_id, subscription = await self.event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for notice in subscription:
                        yield notice.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self.event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def _get_or_404(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            record = await self.store.get_source(namespace, name)
        except Exception as e:
            logger.error(f"Error getting source: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        if not record:
            raise HTTPException(status_code=404, detail="PubSubSource not found")
        return record

    async def _trigger(self, namespace: str, name: str) -> bool:
        try:
            if self.controller is not None:
                return await self.controller.trigger_reconciliation(namespace, name)
            return await self.store.mark_for_reconciliation(namespace, name)
        except Exception as e:
            logger.error(f"Error triggering reconciliation: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True

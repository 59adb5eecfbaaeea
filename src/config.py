"""
Configuration module for the Pub/Sub source operator.

Loads configuration from environment variables. Backends define their own
environment loading; BACKEND_CONFIGS can override any of it per backend.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "pubsub_source"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "pubsub_source"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Poll loop, pass deadline and retry timing."""

    reconcile_interval: int = 10  # seconds between store polls
    max_concurrent_reconciles: int = 5
    pass_timeout: int = 120  # deadline for a single pass
    resync_interval: int = 300  # periodic re-run of healthy sources
    not_ready_requeue: int = 30  # re-run of sources waiting on the adapter
    max_conflict_retries: int = 3  # re-runs after losing a write race

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 3600  # max delay in seconds (1 hour)
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "10")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            pass_timeout=int(os.getenv("PASS_TIMEOUT", "120")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "300")),
            not_ready_requeue=int(os.getenv("NOT_READY_REQUEUE", "30")),
            max_conflict_retries=int(os.getenv("MAX_CONFLICT_RETRIES", "3")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "3600")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
        )


@dataclass
class APIConfig:
    """HTTP listener settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class BackendConfig:
    """Backend selection and backend-specific configuration."""

    messaging_backend: str = "gcp_pubsub"
    workload_backend: str = "kubernetes"
    autoscaler_backend: str = "keda"
    resolver_backend: str = "kubernetes"
    receive_adapter_image: str = ""
    default_project: str = ""

    # Backend-specific configurations keyed by backend name
    backend_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend_configs = {}
        raw = os.getenv("BACKEND_CONFIGS")
        if raw:
            try:
                backend_configs = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"BACKEND_CONFIGS is not valid JSON: {e}") from e

        return cls(
            messaging_backend=os.getenv("MESSAGING_BACKEND", "gcp_pubsub"),
            workload_backend=os.getenv("WORKLOAD_BACKEND", "kubernetes"),
            autoscaler_backend=os.getenv("AUTOSCALER_BACKEND", "keda"),
            resolver_backend=os.getenv("RESOLVER_BACKEND", "kubernetes"),
            receive_adapter_image=os.getenv("RECEIVE_ADAPTER_IMAGE", ""),
            default_project=os.getenv("DEFAULT_PROJECT", ""),
            backend_configs=backend_configs,
        )

    def get_backend_config(self, backend_name: str) -> Dict[str, Any]:
        """Get configuration overrides for a specific backend."""
        return self.backend_configs.get(backend_name, {})

    @property
    def enabled_backends(self) -> List[str]:
        return [
            self.messaging_backend,
            self.workload_backend,
            self.autoscaler_backend,
            self.resolver_backend,
        ]


@dataclass
class Config:
    """Everything the process reads from its environment."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    backends: BackendConfig

    @classmethod
    def from_env(cls):
        """Load every section from the environment."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            backends=BackendConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """All defaults, without touching the environment."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            backends=BackendConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load the process-wide configuration once."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None

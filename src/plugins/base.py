"""
Core plugin types shared by all backends.

Backends implement one of the capability interfaces (messaging admin,
workload admin, autoscaler binding, address resolution). They share the
lifecycle defined here: construct, register, initialize with config, close.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict
import logging

logger = logging.getLogger(__name__)


@dataclass
class OwnerReference:
    """Owner of a child object, used for garbage collection of owned objects."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


class BackendPlugin(ABC):
    """
    Abstract base class for backend plugins.

    A backend is registered by class and instantiated lazily by the
    registry, which calls initialize() exactly once before first use.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this backend (e.g., 'gcp_pubsub')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Backend version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the backend with configuration.

        Called once when the backend is loaded. Use this to set up
        API clients and validate configuration.

        Args:
            config: Backend-specific configuration dictionary
        """
        pass

    async def close(self) -> None:
        """Release any connections held by the backend."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load backend-specific configuration from environment variables.

        Override this method in subclasses to define how the backend
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this backend.
        """
        return {}

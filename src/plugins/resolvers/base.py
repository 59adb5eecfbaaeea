"""
Resolver Plugin Base - Abstract interface for address resolution.

An address resolver turns a reference to an addressable object into the
URI events should be delivered to.
"""

from abc import abstractmethod

from plugins.base import BackendPlugin


class ReferenceNotFound(Exception):
    """The referenced object does not exist."""


class ReferenceNotReady(Exception):
    """The referenced object exists but does not expose an address yet."""


class AddressResolver(BackendPlugin):
    """Backend plugin that resolves object references to URIs."""

    @abstractmethod
    async def resolve(self, ref, namespace: str) -> str:
        """
        Resolve a reference to an absolute URI.

        Args:
            ref: The ObjectReference to resolve
            namespace: Namespace to use when the reference carries none

        Raises:
            ReferenceNotFound: The object does not exist
            ReferenceNotReady: The object has no address yet
        """
        pass

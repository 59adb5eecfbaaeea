"""Address resolution backends."""

from plugins.resolvers.base import AddressResolver, ReferenceNotFound, ReferenceNotReady

__all__ = ["AddressResolver", "ReferenceNotFound", "ReferenceNotReady"]

"""Storage backends implementing the uniform backend interface."""

from tierstore.backends.base import PresignedUrlProvider, StorageBackend
from tierstore.backends.disk import DiskBackend
from tierstore.backends.memory import MemoryBackend
from tierstore.backends.object_store import ObjectStoreBackend

__all__ = [
    "DiskBackend",
    "MemoryBackend",
    "ObjectStoreBackend",
    "PresignedUrlProvider",
    "StorageBackend",
]

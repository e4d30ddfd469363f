"""Tierstore hybrid blob storage.

Stores opaque byte blobs under a locator id across a hot, a cold and an
optional backup backend, with access-driven promotion, repair from backup and
version history on the cold tier.

Backends:
- MemoryBackend: In-process sharded map (default hot tier)
- DiskBackend: Local filesystem with JSON version sidecars (default backup)
- ObjectStoreBackend: S3-compatible bucket (default cold tier)
"""

from tierstore.config import BackendKind, StorageConfig, StorageConfigError, StorageOptions
from tierstore.errors import (
    AllTiersFailedError,
    NotFoundError,
    PartialFailureError,
    StorageError,
    VersionNotFoundError,
)
from tierstore.factory import create_storage
from tierstore.hybrid import HybridStorage
from tierstore.models import StoredObject, VersionRecord

__all__ = [
    "AllTiersFailedError",
    "BackendKind",
    "HybridStorage",
    "NotFoundError",
    "PartialFailureError",
    "StorageConfig",
    "StorageConfigError",
    "StorageError",
    "StorageOptions",
    "StoredObject",
    "VersionNotFoundError",
    "VersionRecord",
    "create_storage",
]

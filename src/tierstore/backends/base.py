"""Storage backend interface definition.

Provides the StorageBackend abstract base class that every backend
implements, so callers never branch on which physical backend serves them.
"""

from __future__ import annotations

import re
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from tierstore.config import StorageOptions
from tierstore.models import StoredObject, VersionRecord

Options = StorageOptions | Mapping[str, Any] | None

_GENERATED_VERSION_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def generate_version_id() -> str:
    """Return a new 32-character lowercase hex version id."""
    return uuid.uuid4().hex


def is_generated_version_id(version_id: str) -> bool:
    """Check whether a version id has the shape of a generated id."""
    return bool(_GENERATED_VERSION_PATTERN.match(version_id))


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    All implementations provide:
    - Overwriting writes and whole-object reads keyed by locator id
    - Idempotent deletes (deleting a missing locator succeeds)
    - Metadata-only stat
    - Version history, newest first
    - Typed errors from tierstore.errors for every failure

    Implementations:
    - MemoryBackend: In-process sharded map (hot tier)
    - DiskBackend: Local filesystem with JSON version sidecars
    - ObjectStoreBackend: S3-compatible bucket with native versioning
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend identifier used in envelopes and spans."""
        ...

    @abstractmethod
    def write(self, locator_id: str, content: bytes, *, opts: Options = None) -> StoredObject:
        """Store content at a locator, overwriting existing content.

        Raises:
            ContentTooLargeError: If the backend cannot accept the content size.
            InvalidLocatorError: If the locator cannot be mapped safely.
            PermissionDeniedError: If the backend refuses the write.
            TransientStorageError: If the backend cannot complete the write.
        """
        ...

    @abstractmethod
    def read(self, locator_id: str, *, opts: Options = None) -> bytes:
        """Return the current content of a locator.

        Raises:
            NotFoundError: If the locator does not exist.
            PermissionDeniedError: If the backend refuses the read.
            TransientStorageError: If the backend cannot complete the read.
        """
        ...

    @abstractmethod
    def delete(self, locator_id: str, *, opts: Options = None) -> None:
        """Delete a locator. Deleting a missing locator succeeds.

        Raises:
            PermissionDeniedError: If the backend refuses the deletion.
            TransientStorageError: If the backend cannot complete the deletion.
        """
        ...

    @abstractmethod
    def exists(self, locator_id: str, *, opts: Options = None) -> bool:
        """Check whether a locator exists. Never raises; errors read as False."""
        ...

    @abstractmethod
    def stat(self, locator_id: str, *, opts: Options = None) -> StoredObject:
        """Return metadata for a locator without transferring content.

        Raises:
            NotFoundError: If the locator does not exist.
            TransientStorageError: If the backend cannot complete the lookup.
        """
        ...

    @abstractmethod
    def create_version(
        self,
        locator_id: str,
        content: bytes,
        commit_message: str,
        *,
        opts: Options = None,
    ) -> tuple[str, VersionRecord]:
        """Record content as a new version and make it the current content.

        Returns:
            Tuple of (version_id, version record).
        """
        ...

    @abstractmethod
    def list_versions(self, locator_id: str, *, opts: Options = None) -> list[VersionRecord]:
        """List versions of a locator ordered by created_at descending.

        Returns:
            Version records, newest first. Empty if the locator has no history.
        """
        ...

    @abstractmethod
    def get_version(self, locator_id: str, version_id: str, *, opts: Options = None) -> bytes:
        """Return the content of a specific version.

        Raises:
            VersionNotFoundError: If the version does not exist.
            InvalidVersionError: If the version id is malformed for the backend.
        """
        ...

    @abstractmethod
    def copy(
        self, source_locator_id: str, dest_locator_id: str, *, opts: Options = None
    ) -> StoredObject:
        """Copy the current content of one locator to another.

        Raises:
            NotFoundError: If the source locator does not exist.
        """
        ...

    @abstractmethod
    def get_stats(self) -> dict[str, Any]:
        """Return backend health and usage statistics."""
        ...


class PresignedUrlProvider(ABC):
    """Capability of backends that issue time-bounded direct-access URLs."""

    @abstractmethod
    def generate_presigned_url(
        self,
        locator_id: str,
        method: str = "get",
        expires_in: int = 3600,
        *,
        opts: Options = None,
    ) -> str:
        """Return a URL granting direct get or put access to a locator.

        Raises:
            UnsupportedOperationError: If the method is not "get" or "put".
            ValueError: If expires_in is out of range.
        """
        ...


class LocatorEnumerator(ABC):
    """Capability of backends that can list every locator they hold."""

    @abstractmethod
    def list_locators(self) -> list[str]:
        """Return every locator currently held, sorted."""
        ...

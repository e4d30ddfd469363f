"""Tierstore error types.

Every backend translates its native failures (OS errors, object store client
errors, timeouts) into these typed exceptions. Expected conditions such as a
missing locator or version are always NotFoundError / VersionNotFoundError.
"""

from __future__ import annotations

from collections.abc import Mapping


class StorageError(Exception):
    """Base exception for storage operations.

    Attributes:
        message: Human-readable error message.
        locator_id: Locator associated with the operation (if applicable).
        backend: Backend name that produced the error (if applicable).
    """

    def __init__(
        self,
        message: str,
        *,
        locator_id: str | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.locator_id = locator_id
        self.backend = backend

    def __str__(self) -> str:
        parts = [self.message]
        if self.locator_id:
            parts.append(f"locator_id={self.locator_id}")
        if self.backend:
            parts.append(f"backend={self.backend}")
        return " ".join(parts)


class NotFoundError(StorageError):
    """Raised when a locator does not exist in a backend."""

    def __init__(
        self,
        message: str = "Object not found",
        *,
        locator_id: str | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message, locator_id=locator_id, backend=backend)


class VersionNotFoundError(NotFoundError):
    """Raised when a specific version of a locator does not exist."""

    def __init__(
        self,
        message: str = "Version not found",
        *,
        locator_id: str | None = None,
        backend: str | None = None,
        version_id: str | None = None,
    ) -> None:
        super().__init__(message, locator_id=locator_id, backend=backend)
        self.version_id = version_id

    def __str__(self) -> str:
        base = super().__str__()
        if self.version_id:
            return f"{base} version_id={self.version_id}"
        return base


class PermissionDeniedError(StorageError):
    """Raised when the backend refuses access to the object."""

    def __init__(
        self,
        message: str = "Permission denied",
        *,
        locator_id: str | None = None,
        backend: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, locator_id=locator_id, backend=backend)
        self.cause = cause


class TransientStorageError(StorageError):
    """Raised when the backend fails in a way the caller may retry.

    Covers network failures, timeouts, disk I/O errors and any other backend
    failure that is not a missing object or a permission problem. The original
    exception is kept on ``cause`` for diagnostics.
    """

    def __init__(
        self,
        message: str = "Storage backend error",
        *,
        locator_id: str | None = None,
        backend: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, locator_id=locator_id, backend=backend)
        self.cause = cause


class ContentTooLargeError(StorageError):
    """Raised when content exceeds the size a backend accepts."""

    def __init__(
        self,
        message: str = "Content too large",
        *,
        locator_id: str | None = None,
        backend: str | None = None,
        size_bytes: int | None = None,
        limit_bytes: int | None = None,
    ) -> None:
        super().__init__(message, locator_id=locator_id, backend=backend)
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class InvalidVersionError(StorageError):
    """Raised when a version id is malformed for the backend."""

    def __init__(
        self,
        message: str = "Invalid version id",
        *,
        locator_id: str | None = None,
        backend: str | None = None,
        version_id: str | None = None,
    ) -> None:
        super().__init__(message, locator_id=locator_id, backend=backend)
        self.version_id = version_id


class InvalidLocatorError(StorageError):
    """Raised when a locator cannot be mapped safely onto a backend path.

    This is a security error for path-mapped backends: locators like "../x",
    absolute paths or NUL bytes would escape the storage root.
    """

    def __init__(
        self,
        message: str = "Invalid locator: path traversal detected",
        *,
        locator_id: str | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message, locator_id=locator_id, backend=backend)


class UnsupportedOperationError(StorageError):
    """Raised when a backend does not provide the requested capability."""


class TierFailureError(StorageError):
    """Raised by the hybrid orchestrator when one or more tiers fail.

    Attributes:
        failures: Mapping of tier role ("hot", "cold", "backup") to the error
            that tier produced.
        succeeded: Tier roles that completed the operation.
    """

    def __init__(
        self,
        message: str,
        *,
        locator_id: str | None = None,
        failures: Mapping[str, StorageError] | None = None,
        succeeded: tuple[str, ...] = (),
    ) -> None:
        super().__init__(message, locator_id=locator_id, backend="hybrid")
        self.failures: dict[str, StorageError] = dict(failures or {})
        self.succeeded = succeeded

    @property
    def failed_tiers(self) -> tuple[str, ...]:
        """Return the failed tier roles in a stable order."""
        return tuple(sorted(self.failures))

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} failed_tiers={','.join(self.failed_tiers)}"


class PartialFailureError(TierFailureError):
    """Raised when some tiers succeeded and at least one required tier failed.

    The content is persisted in the succeeded tiers.
    """


class AllTiersFailedError(TierFailureError):
    """Raised when no tier completed the operation."""

"""Tierstore data models.

Provides typed dataclasses for the metadata envelope returned by writes and
stat calls, and for version history records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class OpKind(str, Enum):
    """Operation kinds recorded by the access tracker."""

    WRITE = "write"
    READ_HOT = "read_hot"
    READ_COLD = "read_cold"
    READ_BACKUP = "read_backup"
    VERSION = "version"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str):
        value = datetime.fromisoformat(raw)
    else:
        return utc_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True)
class StoredObject:
    """Metadata envelope for content held by a backend.

    Attributes:
        locator_id: Opaque identifier of the content item.
        size: Size of the content in bytes.
        stored_at: When the content was stored (or last modified).
        backend: Backend name that produced the envelope ("memory", "disk",
            "object_store" or "hybrid").
        version_id: Backend version id, when the backend reports one.
        etag: Content hash or entity tag, when the backend reports one.
        content_type: MIME type, when the backend tracks one.
        backend_fields: Backend-specific details (bucket and key for the
            object store, path for disk, per-tier results for hybrid).
    """

    locator_id: str
    size: int
    stored_at: datetime
    backend: str
    version_id: str | None = None
    etag: str | None = None
    content_type: str | None = None
    backend_fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert the envelope to a JSON-serializable dictionary."""
        return {
            "locator_id": self.locator_id,
            "size": self.size,
            "stored_at": self.stored_at.isoformat(),
            "backend": self.backend,
            "version_id": self.version_id,
            "etag": self.etag,
            "content_type": self.content_type,
            "backend_fields": _jsonable(self.backend_fields),
        }


@dataclass(frozen=True)
class VersionRecord:
    """One entry of a locator's version history.

    Attributes:
        version_id: Identifier unique within (locator_id, backend).
        locator_id: Locator this version belongs to.
        created_at: When the version was created.
        size: Size of the version content in bytes.
        commit_message: Message supplied when the version was created. The
            object store does not return it when listing native versions.
        backend: Backend name holding the version.
        etag: Entity tag of the version, when available.
        is_latest: Whether this is the current version (object store only).
        storage_class: Storage class of the version (object store only).
    """

    version_id: str
    locator_id: str
    created_at: datetime
    size: int
    commit_message: str | None
    backend: str
    etag: str | None = None
    is_latest: bool | None = None
    storage_class: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert the record to a JSON-serializable dictionary."""
        return {
            "version_id": self.version_id,
            "locator_id": self.locator_id,
            "created_at": self.created_at.isoformat(),
            "size": self.size,
            "commit_message": self.commit_message,
            "backend": self.backend,
            "etag": self.etag,
            "is_latest": self.is_latest,
            "storage_class": self.storage_class,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionRecord:
        """Create a record from a dictionary (e.g. a disk sidecar)."""
        size_raw = data.get("size")
        is_latest_raw = data.get("is_latest")
        return cls(
            version_id=str(data["version_id"]),
            locator_id=str(data["locator_id"]),
            created_at=_parse_datetime(data.get("created_at")),
            size=int(size_raw) if size_raw is not None else 0,
            commit_message=data.get("commit_message"),
            backend=str(data.get("backend") or "unknown"),
            etag=data.get("etag"),
            is_latest=bool(is_latest_raw) if is_latest_raw is not None else None,
            storage_class=data.get("storage_class"),
        )

    def with_backend(self, backend: str) -> VersionRecord:
        """Return a copy of this record labelled with another backend name."""
        return VersionRecord(
            version_id=self.version_id,
            locator_id=self.locator_id,
            created_at=self.created_at,
            size=self.size,
            commit_message=self.commit_message,
            backend=backend,
            etag=self.etag,
            is_latest=self.is_latest,
            storage_class=self.storage_class,
        )


def _jsonable(value: Any) -> Any:
    """Recursively convert envelopes and datetimes into JSON-friendly values."""
    if isinstance(value, StoredObject | VersionRecord):
        return value.to_dict()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    return value

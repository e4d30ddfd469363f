"""In-memory storage backend.

Fast, process-local storage used as the default hot tier. Content and version
history live in sharded maps, so writes to different locators never contend
for the same lock. Data is lost when the process exits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from tierstore.backends.base import (
    LocatorEnumerator,
    Options,
    StorageBackend,
    generate_version_id,
    is_generated_version_id,
)
from tierstore.config import MemoryBackendConfig
from tierstore.errors import (
    ContentTooLargeError,
    InvalidVersionError,
    NotFoundError,
    VersionNotFoundError,
)
from tierstore.models import StoredObject, VersionRecord, utc_now
from tierstore.sharding import ShardedMap
from tierstore.tracing import traced_storage_operation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Entry:
    content: bytes
    envelope: StoredObject


@dataclass(frozen=True)
class _VersionEntry:
    content: bytes
    record: VersionRecord


class MemoryBackend(StorageBackend, LocatorEnumerator):
    """Sharded in-process storage with version history."""

    def __init__(self, config: MemoryBackendConfig | None = None) -> None:
        self._config = config or MemoryBackendConfig()
        self._objects: ShardedMap[str, _Entry] = ShardedMap(self._config.shard_count)
        self._versions: ShardedMap[str, dict[str, _VersionEntry]] = ShardedMap(
            self._config.shard_count
        )

    @property
    def backend_name(self) -> str:
        return "memory"

    def _check_size(self, locator_id: str, content: bytes) -> None:
        limit = self._config.max_object_bytes
        if limit is not None and len(content) > limit:
            raise ContentTooLargeError(
                f"Content of {len(content)} bytes exceeds memory tier limit",
                locator_id=locator_id,
                backend=self.backend_name,
                size_bytes=len(content),
                limit_bytes=limit,
            )

    def _store(self, locator_id: str, content: bytes) -> StoredObject:
        envelope = StoredObject(
            locator_id=locator_id,
            size=len(content),
            stored_at=utc_now(),
            backend=self.backend_name,
        )
        self._objects.set(locator_id, _Entry(content=bytes(content), envelope=envelope))
        return envelope

    @traced_storage_operation("write")
    def write(self, locator_id: str, content: bytes, *, opts: Options = None) -> StoredObject:
        self._check_size(locator_id, content)
        envelope = self._store(locator_id, content)
        logger.debug("Stored in memory: locator=%s size=%d", locator_id, len(content))
        return envelope

    @traced_storage_operation("read")
    def read(self, locator_id: str, *, opts: Options = None) -> bytes:
        entry = self._objects.get(locator_id)
        if entry is None:
            raise NotFoundError(locator_id=locator_id, backend=self.backend_name)
        return entry.content

    @traced_storage_operation("delete")
    def delete(self, locator_id: str, *, opts: Options = None) -> None:
        self._objects.pop(locator_id)
        self._versions.pop(locator_id)
        logger.debug("Deleted from memory: locator=%s", locator_id)

    def exists(self, locator_id: str, *, opts: Options = None) -> bool:
        return locator_id in self._objects

    @traced_storage_operation("stat")
    def stat(self, locator_id: str, *, opts: Options = None) -> StoredObject:
        entry = self._objects.get(locator_id)
        if entry is None:
            raise NotFoundError(locator_id=locator_id, backend=self.backend_name)
        return entry.envelope

    @traced_storage_operation("create_version")
    def create_version(
        self,
        locator_id: str,
        content: bytes,
        commit_message: str,
        *,
        opts: Options = None,
    ) -> tuple[str, VersionRecord]:
        self._check_size(locator_id, content)
        version_id = generate_version_id()
        record = VersionRecord(
            version_id=version_id,
            locator_id=locator_id,
            created_at=utc_now(),
            size=len(content),
            commit_message=commit_message,
            backend=self.backend_name,
        )
        with self._versions.locked(locator_id) as versions:
            versions.setdefault(locator_id, {})[version_id] = _VersionEntry(
                content=bytes(content), record=record
            )
        self._store(locator_id, content)
        logger.debug("Created memory version: locator=%s version=%s", locator_id, version_id)
        return version_id, record

    @traced_storage_operation("list_versions")
    def list_versions(self, locator_id: str, *, opts: Options = None) -> list[VersionRecord]:
        with self._versions.locked(locator_id) as versions:
            entries = list(versions.get(locator_id, {}).values())
        # insertion order breaks created_at ties
        ordered = sorted(
            enumerate(entries),
            key=lambda pair: (pair[1].record.created_at, pair[0]),
            reverse=True,
        )
        return [entry.record for _, entry in ordered]

    @traced_storage_operation("get_version")
    def get_version(self, locator_id: str, version_id: str, *, opts: Options = None) -> bytes:
        if not is_generated_version_id(version_id):
            raise InvalidVersionError(
                locator_id=locator_id, backend=self.backend_name, version_id=version_id
            )
        with self._versions.locked(locator_id) as versions:
            entry = versions.get(locator_id, {}).get(version_id)
        if entry is None:
            raise VersionNotFoundError(
                locator_id=locator_id, backend=self.backend_name, version_id=version_id
            )
        return entry.content

    @traced_storage_operation("copy")
    def copy(
        self, source_locator_id: str, dest_locator_id: str, *, opts: Options = None
    ) -> StoredObject:
        content = self.read(source_locator_id)
        return self._store(dest_locator_id, content)

    def list_locators(self) -> list[str]:
        """Return every locator currently held, sorted."""
        return sorted(locator_id for locator_id, _ in self._objects.items())

    def clear(self) -> None:
        """Drop all content and version history."""
        logger.warning("Clearing all memory storage data")
        self._objects.clear()
        self._versions.clear()

    def get_stats(self) -> dict[str, Any]:
        objects = self._objects.items()
        version_count = sum(len(v) for _, v in self._versions.items())
        return {
            "backend": self.backend_name,
            "file_count": len(objects),
            "version_count": version_count,
            "total_size": sum(entry.envelope.size for _, entry in objects),
            "max_object_bytes": self._config.max_object_bytes,
        }

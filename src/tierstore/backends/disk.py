"""Disk storage backend.

Provides local filesystem storage with:
- Locator to path mapping under a configured root directory
- Path traversal protection
- Atomic writes (temp file + replace)
- Emulated versioning with JSON sidecars

Objects are stored in a directory structure:
    {root_dir}/{locator_id}                              # current content
    {root_dir}/.versions/{locator_id}/{version_id}       # version content
    {root_dir}/.versions/{locator_id}/{version_id}.meta  # version metadata

Environment Variables:
    TIERSTORE_DISK_ROOT: Root directory for storage
        (default: tempfile.gettempdir() / tierstore / storage)
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tierstore.backends.base import (
    Options,
    StorageBackend,
    generate_version_id,
    is_generated_version_id,
)
from tierstore.config import DiskBackendConfig
from tierstore.errors import (
    InvalidLocatorError,
    InvalidVersionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    TransientStorageError,
    VersionNotFoundError,
)
from tierstore.models import StoredObject, VersionRecord, utc_now
from tierstore.tracing import traced_storage_operation

logger = logging.getLogger(__name__)

VERSIONS_DIR = ".versions"
_METADATA_SUFFIX = ".meta"

_SAFE_LOCATOR_PATTERN = re.compile(r"^[a-zA-Z0-9_\-./@:]+$")


def _is_path_traversal(locator_id: str) -> bool:
    """Check if a locator contains path traversal sequences.

    Detects:
    - Empty locators
    - "..", "." and empty segments
    - Absolute paths (starting with / or ~) and drive letters like C:
    - Backslashes and NUL bytes
    - The reserved version-history directory
    - Characters outside the safe set
    """
    if not locator_id:
        return True

    if "\x00" in locator_id or "\\" in locator_id:
        return True

    if locator_id.startswith(("/", "~")):
        return True

    if len(locator_id) >= 2 and locator_id[1] == ":":
        return True

    segments = locator_id.split("/")
    if any(segment in ("..", ".", "") for segment in segments):
        return True

    if segments[0] == VERSIONS_DIR:
        return True

    return not bool(_SAFE_LOCATOR_PATTERN.match(locator_id))


def _translate_os_error(
    error: OSError,
    *,
    action: str,
    locator_id: str,
    backend: str,
    missing_is_not_found: bool = True,
) -> StorageError:
    """Map an OS error onto the storage error taxonomy."""
    if missing_is_not_found and isinstance(
        error, FileNotFoundError | NotADirectoryError | IsADirectoryError
    ):
        return NotFoundError(locator_id=locator_id, backend=backend)
    if isinstance(error, PermissionError):
        return PermissionDeniedError(
            f"Permission denied while trying to {action}: {error}",
            locator_id=locator_id,
            backend=backend,
            cause=error,
        )
    return TransientStorageError(
        f"Failed to {action}: {error}",
        locator_id=locator_id,
        backend=backend,
        cause=error,
    )


class DiskBackend(StorageBackend):
    """Filesystem-based storage implementation.

    Version ids are random 32-character hex strings, so identical content can
    be stored as separate versions.
    """

    def __init__(self, config: DiskBackendConfig | None = None) -> None:
        self._config = config or DiskBackendConfig()
        self._root_dir = Path(self._config.root_dir).resolve()
        logger.debug("DiskBackend initialized with root_dir=%s", self._root_dir)

    @property
    def backend_name(self) -> str:
        return "disk"

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def _ensure_resolved_within_root(self, path: Path, locator_id: str) -> Path:
        resolved = path.resolve()
        try:
            resolved.relative_to(self._root_dir)
        except ValueError as e:
            raise InvalidLocatorError(
                "Path resolves outside storage root directory",
                locator_id=locator_id,
                backend=self.backend_name,
            ) from e
        return resolved

    def _object_path(self, locator_id: str) -> Path:
        if _is_path_traversal(locator_id):
            raise InvalidLocatorError(
                "Invalid locator: path traversal or unsafe characters detected",
                locator_id=locator_id,
                backend=self.backend_name,
            )
        return self._ensure_resolved_within_root(self._root_dir / locator_id, locator_id)

    def _versions_dir(self, locator_id: str) -> Path:
        self._object_path(locator_id)
        return self._root_dir / VERSIONS_DIR / locator_id

    def _version_path(self, locator_id: str, version_id: str) -> Path:
        if not is_generated_version_id(version_id):
            raise InvalidVersionError(
                locator_id=locator_id, backend=self.backend_name, version_id=version_id
            )
        return self._versions_dir(locator_id) / version_id

    def _atomic_write(self, path: Path, data: bytes, locator_id: str) -> None:
        """Write data to path atomically, creating parent directories."""
        tmp_file = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_file.write_bytes(data)
            tmp_file.replace(path)
        except OSError as e:
            tmp_file.unlink(missing_ok=True)
            raise _translate_os_error(
                e,
                action="write file",
                locator_id=locator_id,
                backend=self.backend_name,
                missing_is_not_found=False,
            ) from e

    def _envelope(
        self, locator_id: str, path: Path, size: int, stored_at: datetime
    ) -> StoredObject:
        return StoredObject(
            locator_id=locator_id,
            size=size,
            stored_at=stored_at,
            backend=self.backend_name,
            backend_fields={"path": str(path)},
        )

    @traced_storage_operation("write")
    def write(self, locator_id: str, content: bytes, *, opts: Options = None) -> StoredObject:
        path = self._object_path(locator_id)
        self._atomic_write(path, content, locator_id)
        logger.debug("Stored on disk: locator=%s size=%d", locator_id, len(content))
        return self._envelope(locator_id, path, len(content), utc_now())

    @traced_storage_operation("read")
    def read(self, locator_id: str, *, opts: Options = None) -> bytes:
        path = self._object_path(locator_id)
        try:
            return path.read_bytes()
        except OSError as e:
            raise _translate_os_error(
                e, action="read file", locator_id=locator_id, backend=self.backend_name
            ) from e

    @traced_storage_operation("delete")
    def delete(self, locator_id: str, *, opts: Options = None) -> None:
        path = self._object_path(locator_id)
        versions_dir = self._versions_dir(locator_id)
        try:
            if not path.is_dir():
                path.unlink(missing_ok=True)
            if versions_dir.is_dir():
                # nested locators keep their history in subdirectories
                for entry in versions_dir.iterdir():
                    if entry.is_file():
                        entry.unlink(missing_ok=True)
                if not any(versions_dir.iterdir()):
                    versions_dir.rmdir()
        except OSError as e:
            raise _translate_os_error(
                e,
                action="delete file",
                locator_id=locator_id,
                backend=self.backend_name,
                missing_is_not_found=False,
            ) from e
        logger.debug("Deleted from disk: locator=%s", locator_id)

    def exists(self, locator_id: str, *, opts: Options = None) -> bool:
        try:
            return self._object_path(locator_id).is_file()
        except (StorageError, OSError):
            return False

    @traced_storage_operation("stat")
    def stat(self, locator_id: str, *, opts: Options = None) -> StoredObject:
        path = self._object_path(locator_id)
        try:
            st = path.stat()
        except OSError as e:
            raise _translate_os_error(
                e, action="stat file", locator_id=locator_id, backend=self.backend_name
            ) from e
        if not path.is_file():
            raise NotFoundError(locator_id=locator_id, backend=self.backend_name)
        return self._envelope(
            locator_id, path, st.st_size, datetime.fromtimestamp(st.st_mtime, tz=UTC)
        )

    @traced_storage_operation("create_version")
    def create_version(
        self,
        locator_id: str,
        content: bytes,
        commit_message: str,
        *,
        opts: Options = None,
    ) -> tuple[str, VersionRecord]:
        version_id = generate_version_id()
        version_path = self._version_path(locator_id, version_id)
        record = VersionRecord(
            version_id=version_id,
            locator_id=locator_id,
            created_at=utc_now(),
            size=len(content),
            commit_message=commit_message,
            backend=self.backend_name,
        )

        self._atomic_write(version_path, content, locator_id)
        meta_path = version_path.with_name(f"{version_id}{_METADATA_SUFFIX}")
        sidecar = json.dumps(record.to_dict(), indent=2).encode("utf-8")
        self._atomic_write(meta_path, sidecar, locator_id)
        self._atomic_write(self._object_path(locator_id), content, locator_id)

        logger.debug(
            "Created disk version: locator=%s version=%s",
            locator_id,
            version_id,
        )
        return version_id, record

    def _load_sidecar(self, meta_path: Path) -> tuple[VersionRecord, int] | None:
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            return VersionRecord.from_dict(data), meta_path.stat().st_mtime_ns
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Failed to read version metadata %s: %s", meta_path.name, e)
            return None

    @traced_storage_operation("list_versions")
    def list_versions(self, locator_id: str, *, opts: Options = None) -> list[VersionRecord]:
        versions_dir = self._versions_dir(locator_id)
        try:
            meta_files = [f for f in versions_dir.iterdir() if f.name.endswith(_METADATA_SUFFIX)]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise _translate_os_error(
                e,
                action="list versions",
                locator_id=locator_id,
                backend=self.backend_name,
                missing_is_not_found=False,
            ) from e

        loaded = [entry for entry in map(self._load_sidecar, meta_files) if entry is not None]
        loaded.sort(key=lambda entry: (entry[0].created_at, entry[1]), reverse=True)
        return [record for record, _ in loaded]

    @traced_storage_operation("get_version")
    def get_version(self, locator_id: str, version_id: str, *, opts: Options = None) -> bytes:
        version_path = self._version_path(locator_id, version_id)
        try:
            return version_path.read_bytes()
        except (FileNotFoundError, NotADirectoryError) as e:
            raise VersionNotFoundError(
                locator_id=locator_id, backend=self.backend_name, version_id=version_id
            ) from e
        except OSError as e:
            raise _translate_os_error(
                e, action="read version", locator_id=locator_id, backend=self.backend_name
            ) from e

    @traced_storage_operation("copy")
    def copy(
        self, source_locator_id: str, dest_locator_id: str, *, opts: Options = None
    ) -> StoredObject:
        content = self.read(source_locator_id)
        return self.write(dest_locator_id, content)

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {"backend": self.backend_name, "root_dir": str(self._root_dir)}
        file_count = 0
        version_count = 0
        total_size = 0
        try:
            for dirpath, dirnames, filenames in os.walk(self._root_dir):
                in_versions = Path(dirpath).is_relative_to(self._root_dir / VERSIONS_DIR)
                for name in filenames:
                    if name.endswith(".tmp"):
                        continue
                    if in_versions:
                        if name.endswith(_METADATA_SUFFIX):
                            version_count += 1
                        continue
                    file_count += 1
                    total_size += (Path(dirpath) / name).stat().st_size
            usage = shutil.disk_usage(self._root_dir) if self._root_dir.exists() else None
        except OSError as e:
            logger.warning("Failed to collect disk stats: %s", e)
            stats["error"] = str(e)
            return stats

        stats.update(
            {
                "file_count": file_count,
                "version_count": version_count,
                "total_size": total_size,
                "free_bytes": usage.free if usage else None,
            }
        )
        return stats

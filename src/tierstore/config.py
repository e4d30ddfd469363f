"""Tierstore configuration.

Per-call options and process-wide defaults for backend selection and tiering.

Environment Variables:
    TIERSTORE_HOT_BACKEND: Hot tier backend kind (default: "memory")
    TIERSTORE_COLD_BACKEND: Cold tier backend kind (default: "object_store")
    TIERSTORE_BACKUP_BACKEND: Backup tier backend kind (default: "disk")
    TIERSTORE_ACCESS_THRESHOLD: Accesses before promotion to hot (default: 5)
    TIERSTORE_HOT_TTL_SECONDS: Hot tier TTL in seconds (default: 3600)
    TIERSTORE_DISK_ROOT: Root directory of the disk backend
        (default: OS temp dir / tierstore / storage)
    TIERSTORE_MEMORY_MAX_OBJECT_BYTES: Largest object the memory backend
        accepts (default: unlimited)
    TIERSTORE_S3_BUCKET: Bucket of the object store backend (no default;
        the object store backend is unavailable without it)
    TIERSTORE_S3_KEY_PREFIX: Key prefix joined in front of every locator
    TIERSTORE_S3_REGION: Region name passed to the client
    TIERSTORE_S3_ENDPOINT_URL: Endpoint for S3-compatible services
    TIERSTORE_S3_CONNECT_TIMEOUT: Connect timeout in seconds (default: 5)
    TIERSTORE_S3_READ_TIMEOUT: Per-request read timeout in seconds (default: 30)
    TIERSTORE_S3_MAX_ATTEMPTS: Total attempts per request (default: 3)
    TIERSTORE_S3_STORAGE_CLASS: Storage class for new objects
    TIERSTORE_BULK_MAX_IN_FLIGHT: Bulk operation concurrency (default: 8)
    TIERSTORE_BULK_TIMEOUT_SECONDS: Bulk operation deadline (default: 30)
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

ENV_HOT_BACKEND: Final[str] = "TIERSTORE_HOT_BACKEND"
ENV_COLD_BACKEND: Final[str] = "TIERSTORE_COLD_BACKEND"
ENV_BACKUP_BACKEND: Final[str] = "TIERSTORE_BACKUP_BACKEND"
ENV_ACCESS_THRESHOLD: Final[str] = "TIERSTORE_ACCESS_THRESHOLD"
ENV_HOT_TTL_SECONDS: Final[str] = "TIERSTORE_HOT_TTL_SECONDS"
ENV_DISK_ROOT: Final[str] = "TIERSTORE_DISK_ROOT"
ENV_MEMORY_MAX_OBJECT_BYTES: Final[str] = "TIERSTORE_MEMORY_MAX_OBJECT_BYTES"
ENV_S3_BUCKET: Final[str] = "TIERSTORE_S3_BUCKET"
ENV_S3_KEY_PREFIX: Final[str] = "TIERSTORE_S3_KEY_PREFIX"
ENV_S3_REGION: Final[str] = "TIERSTORE_S3_REGION"
ENV_S3_ENDPOINT_URL: Final[str] = "TIERSTORE_S3_ENDPOINT_URL"
ENV_S3_CONNECT_TIMEOUT: Final[str] = "TIERSTORE_S3_CONNECT_TIMEOUT"
ENV_S3_READ_TIMEOUT: Final[str] = "TIERSTORE_S3_READ_TIMEOUT"
ENV_S3_MAX_ATTEMPTS: Final[str] = "TIERSTORE_S3_MAX_ATTEMPTS"
ENV_S3_STORAGE_CLASS: Final[str] = "TIERSTORE_S3_STORAGE_CLASS"
ENV_BULK_MAX_IN_FLIGHT: Final[str] = "TIERSTORE_BULK_MAX_IN_FLIGHT"
ENV_BULK_TIMEOUT_SECONDS: Final[str] = "TIERSTORE_BULK_TIMEOUT_SECONDS"

DEFAULT_ACCESS_THRESHOLD: Final[int] = 5
DEFAULT_HOT_TTL_SECONDS: Final[int] = 3600
DEFAULT_S3_CONNECT_TIMEOUT: Final[int] = 5
DEFAULT_S3_READ_TIMEOUT: Final[int] = 30
DEFAULT_S3_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_BULK_MAX_IN_FLIGHT: Final[int] = 8
DEFAULT_BULK_TIMEOUT_SECONDS: Final[int] = 30


class StorageConfigError(Exception):
    """Raised when storage configuration is invalid or incomplete."""


class BackendKind(str, Enum):
    """Backend variants available for tier selection."""

    MEMORY = "memory"
    DISK = "disk"
    OBJECT_STORE = "object_store"

    @classmethod
    def _missing_(cls, value: object) -> BackendKind | None:
        aliases = {"ram": cls.MEMORY, "s3": cls.OBJECT_STORE, "object-store": cls.OBJECT_STORE}
        if isinstance(value, str):
            return aliases.get(value.strip().lower())
        return None


class StorageOptions(BaseModel):
    """Per-call options. Unrecognized keys are ignored."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    hot_backend: BackendKind | None = None
    cold_backend: BackendKind | None = None
    backup_backend: BackendKind | None = None
    bucket: str | None = None
    key_prefix: str | None = None
    access_threshold: int | None = Field(default=None, ge=1)
    hot_ttl: int | None = Field(default=None, ge=1)
    content_type: str | None = None
    storage_class: str | None = None

    @classmethod
    def coerce(cls, opts: StorageOptions | Mapping[str, Any] | None) -> StorageOptions:
        """Build options from a mapping, passing existing instances through.

        Raises:
            StorageConfigError: If a recognized option has an invalid value.
        """
        if opts is None:
            return _EMPTY_OPTIONS
        if isinstance(opts, StorageOptions):
            return opts
        try:
            return cls.model_validate(dict(opts))
        except ValidationError as e:
            raise StorageConfigError(f"Invalid storage options: {e}") from e


_EMPTY_OPTIONS = StorageOptions()


class TieringConfig(BaseModel):
    """Tier roles and promotion thresholds for the hybrid orchestrator."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    hot_backend: BackendKind = BackendKind.MEMORY
    cold_backend: BackendKind = BackendKind.OBJECT_STORE
    backup_backend: BackendKind = BackendKind.DISK
    access_threshold: int = Field(default=DEFAULT_ACCESS_THRESHOLD, ge=1)
    hot_ttl: int = Field(default=DEFAULT_HOT_TTL_SECONDS, ge=1)

    @property
    def backup_is_distinct(self) -> bool:
        """Whether the backup tier is a different backend than the cold tier."""
        return self.backup_backend != self.cold_backend

    def merged(self, opts: StorageOptions | Mapping[str, Any] | None) -> TieringConfig:
        """Return the configuration with per-call overrides applied."""
        options = StorageOptions.coerce(opts)
        overrides = {
            name: getattr(options, name)
            for name in (
                "hot_backend",
                "cold_backend",
                "backup_backend",
                "access_threshold",
                "hot_ttl",
            )
            if getattr(options, name) is not None
        }
        if not overrides:
            return self
        return self.model_copy(update=overrides)


class MemoryBackendConfig(BaseModel):
    """Configuration for the in-process memory backend."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_object_bytes: int | None = Field(default=None, ge=1)
    shard_count: int = Field(default=16, ge=1, le=1024)


def _default_disk_root() -> Path:
    return Path(tempfile.gettempdir()) / "tierstore" / "storage"


class DiskBackendConfig(BaseModel):
    """Configuration for the local disk backend."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    root_dir: Path = Field(default_factory=_default_disk_root)


class ObjectStoreConfig(BaseModel):
    """Configuration for the S3-compatible object store backend."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    bucket: str = Field(..., min_length=3, max_length=63)
    key_prefix: str = ""
    region_name: str | None = None
    endpoint_url: str | None = None
    connect_timeout: int = Field(default=DEFAULT_S3_CONNECT_TIMEOUT, ge=1)
    read_timeout: int = Field(default=DEFAULT_S3_READ_TIMEOUT, ge=1)
    max_attempts: int = Field(default=DEFAULT_S3_MAX_ATTEMPTS, ge=1, le=10)
    storage_class: str | None = None
    resolve_commit_messages: bool = Field(
        default=True,
        description="Fetch per-version metadata when listing versions",
    )

    @field_validator("key_prefix")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        return v.strip("/")


class BulkConfig(BaseModel):
    """Limits for bulk operations."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_in_flight: int = Field(default=DEFAULT_BULK_MAX_IN_FLIGHT, ge=1, le=256)
    timeout_seconds: int = Field(default=DEFAULT_BULK_TIMEOUT_SECONDS, ge=1)


class StorageConfig(BaseModel):
    """Process-wide storage configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tiering: TieringConfig = Field(default_factory=TieringConfig)
    memory: MemoryBackendConfig = Field(default_factory=MemoryBackendConfig)
    disk: DiskBackendConfig = Field(default_factory=DiskBackendConfig)
    object_store: ObjectStoreConfig | None = None
    bulk: BulkConfig = Field(default_factory=BulkConfig)


def _get_env_str(env_var: str) -> str | None:
    raw = os.environ.get(env_var)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _parse_positive_int(env_var: str, default: int | None) -> int | None:
    """Parse a positive integer from an environment variable.

    Raises:
        StorageConfigError: If the value is set but not a positive integer.
    """
    raw = _get_env_str(env_var)
    if raw is None:
        return default

    try:
        value = int(raw)
    except ValueError as e:
        raise StorageConfigError(f"{env_var} must be a positive integer, got '{raw}'") from e

    if value <= 0:
        raise StorageConfigError(f"{env_var} must be a positive integer, got {value}")

    return value


def _parse_backend_kind(env_var: str, default: BackendKind) -> BackendKind:
    raw = _get_env_str(env_var)
    if raw is None:
        return default
    try:
        return BackendKind(raw)
    except ValueError as e:
        valid = sorted(kind.value for kind in BackendKind)
        raise StorageConfigError(f"{env_var} must be one of {valid}, got '{raw}'") from e


def load_storage_config() -> StorageConfig:
    """Load storage configuration from environment variables.

    Returns:
        StorageConfig with validated values. The object store section is None
        when TIERSTORE_S3_BUCKET is not set.

    Raises:
        StorageConfigError: If any value is invalid.
    """
    tiering = TieringConfig(
        hot_backend=_parse_backend_kind(ENV_HOT_BACKEND, BackendKind.MEMORY),
        cold_backend=_parse_backend_kind(ENV_COLD_BACKEND, BackendKind.OBJECT_STORE),
        backup_backend=_parse_backend_kind(ENV_BACKUP_BACKEND, BackendKind.DISK),
        access_threshold=_parse_positive_int(ENV_ACCESS_THRESHOLD, DEFAULT_ACCESS_THRESHOLD),
        hot_ttl=_parse_positive_int(ENV_HOT_TTL_SECONDS, DEFAULT_HOT_TTL_SECONDS),
    )

    memory = MemoryBackendConfig(
        max_object_bytes=_parse_positive_int(ENV_MEMORY_MAX_OBJECT_BYTES, None),
    )

    disk_root = _get_env_str(ENV_DISK_ROOT)
    disk = DiskBackendConfig(root_dir=Path(disk_root)) if disk_root else DiskBackendConfig()

    object_store: ObjectStoreConfig | None = None
    bucket = _get_env_str(ENV_S3_BUCKET)
    if bucket is not None:
        try:
            object_store = ObjectStoreConfig(
                bucket=bucket,
                key_prefix=_get_env_str(ENV_S3_KEY_PREFIX) or "",
                region_name=_get_env_str(ENV_S3_REGION),
                endpoint_url=_get_env_str(ENV_S3_ENDPOINT_URL),
                connect_timeout=_parse_positive_int(
                    ENV_S3_CONNECT_TIMEOUT, DEFAULT_S3_CONNECT_TIMEOUT
                ),
                read_timeout=_parse_positive_int(ENV_S3_READ_TIMEOUT, DEFAULT_S3_READ_TIMEOUT),
                max_attempts=_parse_positive_int(ENV_S3_MAX_ATTEMPTS, DEFAULT_S3_MAX_ATTEMPTS),
                storage_class=_get_env_str(ENV_S3_STORAGE_CLASS),
            )
        except ValidationError as e:
            raise StorageConfigError(f"Invalid object store configuration: {e}") from e

    try:
        bulk = BulkConfig(
            max_in_flight=_parse_positive_int(ENV_BULK_MAX_IN_FLIGHT, DEFAULT_BULK_MAX_IN_FLIGHT),
            timeout_seconds=_parse_positive_int(
                ENV_BULK_TIMEOUT_SECONDS, DEFAULT_BULK_TIMEOUT_SECONDS
            ),
        )
    except ValidationError as e:
        raise StorageConfigError(f"Invalid bulk configuration: {e}") from e

    return StorageConfig(
        tiering=tiering,
        memory=memory,
        disk=disk,
        object_store=object_store,
        bulk=bulk,
    )

"""Tests for storage configuration loading and per-call options."""

from __future__ import annotations

from pathlib import Path

import pytest

from tierstore.config import (
    ENV_ACCESS_THRESHOLD,
    ENV_BULK_MAX_IN_FLIGHT,
    ENV_COLD_BACKEND,
    ENV_DISK_ROOT,
    ENV_HOT_BACKEND,
    ENV_S3_BUCKET,
    ENV_S3_KEY_PREFIX,
    ENV_S3_MAX_ATTEMPTS,
    BackendKind,
    ObjectStoreConfig,
    StorageConfigError,
    StorageOptions,
    TieringConfig,
    load_storage_config,
)


class TestLoadStorageConfig:
    """Tests for load_storage_config."""

    def test_defaults_without_environment(self) -> None:
        config = load_storage_config()

        assert config.tiering.hot_backend is BackendKind.MEMORY
        assert config.tiering.cold_backend is BackendKind.OBJECT_STORE
        assert config.tiering.backup_backend is BackendKind.DISK
        assert config.tiering.access_threshold == 5
        assert config.tiering.hot_ttl == 3600
        assert config.object_store is None
        assert config.bulk.max_in_flight == 8

    def test_environment_overrides(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv(ENV_HOT_BACKEND, "ram")
        monkeypatch.setenv(ENV_COLD_BACKEND, "disk")
        monkeypatch.setenv(ENV_ACCESS_THRESHOLD, " 7 ")
        monkeypatch.setenv(ENV_DISK_ROOT, str(tmp_path))
        monkeypatch.setenv(ENV_S3_BUCKET, "my-bucket")
        monkeypatch.setenv(ENV_S3_KEY_PREFIX, "/tenant/docs/")
        monkeypatch.setenv(ENV_S3_MAX_ATTEMPTS, "5")

        config = load_storage_config()

        assert config.tiering.hot_backend is BackendKind.MEMORY
        assert config.tiering.cold_backend is BackendKind.DISK
        assert config.tiering.access_threshold == 7
        assert config.disk.root_dir == tmp_path
        assert config.object_store is not None
        assert config.object_store.bucket == "my-bucket"
        assert config.object_store.key_prefix == "tenant/docs"
        assert config.object_store.max_attempts == 5

    def test_blank_value_uses_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_ACCESS_THRESHOLD, "   ")

        assert load_storage_config().tiering.access_threshold == 5

    @pytest.mark.parametrize("raw", ["abc", "0", "-3", "1.5"])
    def test_invalid_threshold_fails_closed(
        self, monkeypatch: pytest.MonkeyPatch, raw: str
    ) -> None:
        monkeypatch.setenv(ENV_ACCESS_THRESHOLD, raw)

        with pytest.raises(StorageConfigError, match=ENV_ACCESS_THRESHOLD):
            load_storage_config()

    def test_unknown_backend_kind(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_COLD_BACKEND, "tape")

        with pytest.raises(StorageConfigError, match="tape"):
            load_storage_config()

    def test_invalid_bucket_name(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_S3_BUCKET, "ab")

        with pytest.raises(StorageConfigError, match="object store"):
            load_storage_config()

    def test_out_of_range_bulk_limit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_BULK_MAX_IN_FLIGHT, "10000")

        with pytest.raises(StorageConfigError, match="bulk"):
            load_storage_config()


class TestBackendKind:
    """Tests for backend kind aliases."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("memory", BackendKind.MEMORY),
            ("RAM", BackendKind.MEMORY),
            ("s3", BackendKind.OBJECT_STORE),
            ("object-store", BackendKind.OBJECT_STORE),
            ("disk", BackendKind.DISK),
        ],
    )
    def test_aliases(self, raw: str, expected: BackendKind) -> None:
        assert BackendKind(raw) is expected

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError):
            BackendKind("tape")


class TestStorageOptions:
    """Tests for per-call options."""

    def test_none_is_empty(self) -> None:
        options = StorageOptions.coerce(None)

        assert options.hot_backend is None
        assert options.bucket is None

    def test_unrecognized_keys_ignored(self) -> None:
        options = StorageOptions.coerce({"bucket": "b", "colour": "blue"})

        assert options.bucket == "b"
        assert not hasattr(options, "colour")

    def test_instance_passed_through(self) -> None:
        options = StorageOptions(bucket="b")

        assert StorageOptions.coerce(options) is options

    def test_invalid_recognized_value(self) -> None:
        with pytest.raises(StorageConfigError):
            StorageOptions.coerce({"access_threshold": 0})

        with pytest.raises(StorageConfigError):
            StorageOptions.coerce({"cold_backend": "tape"})


class TestTieringConfig:
    """Tests for tier role resolution."""

    def test_backup_distinct_by_default(self) -> None:
        assert TieringConfig().backup_is_distinct is True

    def test_backup_same_as_cold(self) -> None:
        config = TieringConfig(cold_backend=BackendKind.DISK)

        assert config.backup_is_distinct is False

    def test_merged_applies_overrides(self) -> None:
        config = TieringConfig(access_threshold=3)

        merged = config.merged({"cold_backend": "s3", "hot_ttl": 60, "bucket": "ignored"})

        assert merged.cold_backend is BackendKind.OBJECT_STORE
        assert merged.hot_ttl == 60
        assert merged.access_threshold == 3
        assert config.hot_ttl == 3600

    def test_merged_without_overrides_is_same_instance(self) -> None:
        config = TieringConfig()

        assert config.merged({"bucket": "b"}) is config


class TestObjectStoreConfig:
    """Tests for object store settings."""

    def test_prefix_slashes_stripped(self) -> None:
        assert ObjectStoreConfig(bucket="bucket", key_prefix="//a/b//").key_prefix == "a/b"

    def test_extra_fields_rejected(self) -> None:
        with pytest.raises(ValueError):
            ObjectStoreConfig(bucket="bucket", colour="blue")  # type: ignore[call-arg]

"""Tests for the in-memory storage backend.

Covers:
- Roundtrip, overwrite and idempotent delete
- Version history ordering and lookup errors
- Size limit enforcement
- Concurrent writes to distinct locators
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from tierstore.backends.memory import MemoryBackend
from tierstore.config import MemoryBackendConfig
from tierstore.errors import (
    ContentTooLargeError,
    InvalidVersionError,
    NotFoundError,
    VersionNotFoundError,
)


class TestRoundtrip:
    """Tests for write/read/delete behavior."""

    def test_write_then_read_returns_identical_bytes(self, memory_backend: MemoryBackend) -> None:
        """Written content is read back unchanged."""
        data = bytes(range(256))

        envelope = memory_backend.write("doc/a.bin", data)

        assert memory_backend.read("doc/a.bin") == data
        assert envelope.size == 256
        assert envelope.backend == "memory"
        assert envelope.locator_id == "doc/a.bin"

    def test_write_overwrites(self, memory_backend: MemoryBackend) -> None:
        """A second write replaces the content."""
        memory_backend.write("doc", b"one")
        memory_backend.write("doc", b"two")

        assert memory_backend.read("doc") == b"two"

    def test_read_missing_raises_not_found(self, memory_backend: MemoryBackend) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            memory_backend.read("missing")

        assert exc_info.value.locator_id == "missing"
        assert exc_info.value.backend == "memory"

    def test_delete_is_idempotent(self, memory_backend: MemoryBackend) -> None:
        """Deleting a missing locator succeeds, twice."""
        memory_backend.delete("never-written")
        memory_backend.delete("never-written")

        memory_backend.write("doc", b"x")
        memory_backend.delete("doc")

        assert not memory_backend.exists("doc")

    def test_stat_returns_metadata(self, memory_backend: MemoryBackend) -> None:
        memory_backend.write("doc", b"12345")

        envelope = memory_backend.stat("doc")

        assert envelope.size == 5
        assert envelope.backend == "memory"

    def test_stat_missing_raises_not_found(self, memory_backend: MemoryBackend) -> None:
        with pytest.raises(NotFoundError):
            memory_backend.stat("missing")

    def test_copy(self, memory_backend: MemoryBackend) -> None:
        memory_backend.write("src", b"payload")

        envelope = memory_backend.copy("src", "dst")

        assert envelope.locator_id == "dst"
        assert memory_backend.read("dst") == b"payload"
        assert memory_backend.read("src") == b"payload"

    def test_copy_missing_source_raises_not_found(self, memory_backend: MemoryBackend) -> None:
        with pytest.raises(NotFoundError):
            memory_backend.copy("missing", "dst")


class TestVersioning:
    """Tests for version history."""

    def test_versions_listed_newest_first(self, memory_backend: MemoryBackend) -> None:
        """Versions V1, V2, V3 list as [V3, V2, V1]."""
        ids = [
            memory_backend.create_version("doc", f"v{i}".encode(), f"v{i}")[0] for i in (1, 2, 3)
        ]

        versions = memory_backend.list_versions("doc")

        assert [v.version_id for v in versions] == list(reversed(ids))
        assert [v.commit_message for v in versions] == ["v3", "v2", "v1"]

    def test_create_version_updates_current_content(self, memory_backend: MemoryBackend) -> None:
        memory_backend.create_version("doc", b"first", "first")
        memory_backend.create_version("doc", b"second", "second")

        assert memory_backend.read("doc") == b"second"

    def test_get_version_returns_that_version(self, memory_backend: MemoryBackend) -> None:
        v1, _ = memory_backend.create_version("doc", b"first", "first")
        memory_backend.create_version("doc", b"second", "second")

        assert memory_backend.get_version("doc", v1) == b"first"

    def test_version_ids_are_unique_for_identical_content(
        self, memory_backend: MemoryBackend
    ) -> None:
        v1, _ = memory_backend.create_version("doc", b"same", "a")
        v2, _ = memory_backend.create_version("doc", b"same", "b")

        assert v1 != v2
        assert len(v1) == 32

    def test_unknown_version_raises_version_not_found(
        self, memory_backend: MemoryBackend
    ) -> None:
        memory_backend.create_version("doc", b"x", "x")

        with pytest.raises(VersionNotFoundError) as exc_info:
            memory_backend.get_version("doc", "0" * 32)

        assert exc_info.value.version_id == "0" * 32

    def test_malformed_version_raises_invalid_version(
        self, memory_backend: MemoryBackend
    ) -> None:
        with pytest.raises(InvalidVersionError):
            memory_backend.get_version("doc", "not-a-version")

    def test_list_versions_of_unknown_locator_is_empty(
        self, memory_backend: MemoryBackend
    ) -> None:
        assert memory_backend.list_versions("missing") == []

    def test_delete_drops_version_history(self, memory_backend: MemoryBackend) -> None:
        memory_backend.create_version("doc", b"x", "x")

        memory_backend.delete("doc")

        assert memory_backend.list_versions("doc") == []


class TestLimitsAndStats:
    """Tests for size limits, listing and stats."""

    def test_content_too_large(self) -> None:
        backend = MemoryBackend(MemoryBackendConfig(max_object_bytes=4))

        with pytest.raises(ContentTooLargeError) as exc_info:
            backend.write("doc", b"12345")

        assert exc_info.value.size_bytes == 5
        assert exc_info.value.limit_bytes == 4
        assert not backend.exists("doc")

    def test_stats_and_listing(self, memory_backend: MemoryBackend) -> None:
        memory_backend.write("b", b"12")
        memory_backend.write("a", b"123")
        memory_backend.create_version("a", b"1234", "v1")

        stats = memory_backend.get_stats()

        assert memory_backend.list_locators() == ["a", "b"]
        assert stats["file_count"] == 2
        assert stats["version_count"] == 1
        assert stats["total_size"] == 6

    def test_clear(self, memory_backend: MemoryBackend) -> None:
        memory_backend.write("a", b"1")
        memory_backend.create_version("a", b"2", "v")

        memory_backend.clear()

        assert memory_backend.list_locators() == []
        assert memory_backend.list_versions("a") == []


class TestConcurrency:
    """Tests for concurrent isolation."""

    def test_concurrent_writes_do_not_cross_talk(self, memory_backend: MemoryBackend) -> None:
        """Each locator reads back exactly what was written to it."""
        payloads = {f"doc-{i}": f"content-{i}".encode() * (i + 1) for i in range(200)}

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda item: memory_backend.write(*item), payloads.items()))

        for locator_id, content in payloads.items():
            assert memory_backend.read(locator_id) == content

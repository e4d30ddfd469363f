"""Sharded lock map.

A dictionary split across independently locked shards. Keys that hash to
different shards never contend for the same lock, so operations on unrelated
locators proceed in parallel.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_SHARD_COUNT = 16


class _Shard(Generic[K, V]):
    __slots__ = ("lock", "data")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.data: dict[K, V] = {}


class ShardedMap(Generic[K, V]):
    """Thread-safe mapping with one lock per shard."""

    def __init__(self, shard_count: int = DEFAULT_SHARD_COUNT) -> None:
        if shard_count < 1:
            raise ValueError(f"shard_count must be >= 1, got {shard_count}")
        self._shards: tuple[_Shard[K, V], ...] = tuple(_Shard() for _ in range(shard_count))

    @property
    def shard_count(self) -> int:
        return len(self._shards)

    def _shard_for(self, key: K) -> _Shard[K, V]:
        return self._shards[hash(key) % len(self._shards)]

    @contextmanager
    def locked(self, key: K) -> Iterator[dict[K, V]]:
        """Hold the lock of the shard owning ``key`` and yield its dictionary.

        Callers may read and mutate entries for ``key`` (and any other key of
        the same shard) while the context is active.
        """
        shard = self._shard_for(key)
        with shard.lock:
            yield shard.data

    def get(self, key: K, default: V | None = None) -> V | None:
        shard = self._shard_for(key)
        with shard.lock:
            return shard.data.get(key, default)

    def set(self, key: K, value: V) -> None:
        shard = self._shard_for(key)
        with shard.lock:
            shard.data[key] = value

    def pop(self, key: K, default: V | None = None) -> V | None:
        shard = self._shard_for(key)
        with shard.lock:
            return shard.data.pop(key, default)

    def __contains__(self, key: object) -> bool:
        shard = self._shard_for(key)  # type: ignore[arg-type]
        with shard.lock:
            return key in shard.data

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.data)
        return total

    def items(self) -> list[tuple[K, V]]:
        """Return a snapshot of all entries, taken one shard at a time."""
        result: list[tuple[K, V]] = []
        for shard in self._shards:
            with shard.lock:
                result.extend(shard.data.items())
        return result

    def remove_where(self, predicate: Callable[[K, V], bool]) -> list[K]:
        """Remove entries matching ``predicate`` and return their keys."""
        removed: list[K] = []
        for shard in self._shards:
            with shard.lock:
                doomed = [k for k, v in shard.data.items() if predicate(k, v)]
                for k in doomed:
                    del shard.data[k]
                removed.extend(doomed)
        return removed

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.data.clear()

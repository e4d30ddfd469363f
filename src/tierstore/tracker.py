"""Per-locator access pattern tracking.

Records how often and how recently each locator was touched, plus the last
few operation kinds. The hybrid orchestrator uses the counts to decide
promotions and the timestamps to sweep idle entries.

The table is sharded: every operation locks only the shard owning its
locator, so unrelated locators never serialize against each other.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final

from tierstore.models import OpKind
from tierstore.sharding import DEFAULT_SHARD_COUNT, ShardedMap

logger = logging.getLogger(__name__)

RECENT_OPS_CAPACITY: Final[int] = 10


class _PatternState:
    """Mutable pattern entry. Only touched while its shard lock is held."""

    __slots__ = ("count", "last_access", "recent_ops")

    def __init__(self) -> None:
        self.count = 0
        self.last_access = 0.0
        self.recent_ops: deque[OpKind] = deque(maxlen=RECENT_OPS_CAPACITY)


@dataclass(frozen=True)
class AccessPattern:
    """Point-in-time copy of a locator's access pattern.

    Attributes:
        locator_id: Tracked locator.
        count: Number of tracked operations since the entry was created.
        last_access: Epoch seconds of the most recent tracked operation.
        recent_ops: Most recent operation kinds, newest first.
    """

    locator_id: str
    count: int
    last_access: float
    recent_ops: tuple[OpKind, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "last_access": datetime.fromtimestamp(self.last_access, tz=UTC).isoformat(),
            "recent_ops": [op.value for op in self.recent_ops],
        }


class AccessTracker:
    """Concurrency-safe table of access patterns keyed by locator id."""

    def __init__(
        self,
        shard_count: int = DEFAULT_SHARD_COUNT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the tracker.

        Args:
            shard_count: Number of independently locked shards.
            clock: Source of epoch seconds. Tests inject a fake clock.
        """
        self._patterns: ShardedMap[str, _PatternState] = ShardedMap(shard_count)
        self._clock = clock

    def track(self, locator_id: str, op: OpKind) -> int:
        """Record one operation on a locator.

        Returns:
            The locator's access count after this operation.
        """
        now = self._clock()
        with self._patterns.locked(locator_id) as patterns:
            state = patterns.get(locator_id)
            if state is None:
                state = _PatternState()
                patterns[locator_id] = state
            state.count += 1
            state.last_access = now
            state.recent_ops.append(op)
            return state.count

    def access_count(self, locator_id: str) -> int:
        """Return the access count of a locator (0 if untracked)."""
        with self._patterns.locked(locator_id) as patterns:
            state = patterns.get(locator_id)
            return state.count if state is not None else 0

    def get_pattern(self, locator_id: str) -> AccessPattern | None:
        with self._patterns.locked(locator_id) as patterns:
            state = patterns.get(locator_id)
            if state is None:
                return None
            return AccessPattern(
                locator_id=locator_id,
                count=state.count,
                last_access=state.last_access,
                recent_ops=tuple(reversed(state.recent_ops)),
            )

    def forget(self, locator_id: str) -> bool:
        """Remove a locator's entry. Returns whether one existed."""
        return self._patterns.pop(locator_id) is not None

    def sweep_expired(self, idle_seconds: float) -> int:
        """Remove entries idle for longer than ``idle_seconds``.

        Returns:
            Number of entries removed.
        """
        cutoff = self._clock() - idle_seconds
        removed = self._patterns.remove_where(lambda _, state: state.last_access < cutoff)
        if removed:
            logger.info("Swept %d expired access patterns", len(removed))
        return len(removed)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return all patterns as a JSON-friendly dict keyed by locator id."""
        result: dict[str, dict[str, Any]] = {}
        for locator_id in sorted(key for key, _ in self._patterns.items()):
            pattern = self.get_pattern(locator_id)
            if pattern is not None:
                result[locator_id] = pattern.to_dict()
        return result

    def clear(self) -> None:
        self._patterns.clear()

    def __len__(self) -> int:
        return len(self._patterns)

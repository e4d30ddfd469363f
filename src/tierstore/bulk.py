"""Bounded-concurrency bulk execution.

Runs one callable per item on a worker pool with a fixed number of items in
flight and a single deadline for the whole batch.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from time import monotonic
from typing import Any, TypeVar

from tierstore.errors import StorageError, TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BulkResult:
    """Outcome of a bulk operation.

    Attributes:
        succeeded: Item key to the value its call returned.
        failed: Item key to the storage error its call raised.
    """

    succeeded: dict[str, Any] = field(default_factory=dict)
    failed: dict[str, StorageError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def run_bounded(
    items: Iterable[str],
    fn: Callable[[str], T],
    max_in_flight: int,
    timeout_seconds: float,
) -> BulkResult:
    """Run ``fn`` for every item with bounded concurrency and a deadline.

    Args:
        items: Item keys (typically locator ids). Duplicates run once.
        fn: Callable invoked with each item key.
        max_in_flight: Maximum number of calls running at the same time.
        timeout_seconds: Deadline for the whole batch.

    Returns:
        BulkResult. Items that raised a StorageError, or that had not finished
        when the deadline passed, are reported under ``failed``.

    Raises:
        ValueError: If max_in_flight or timeout_seconds is not positive.

    Exceptions other than StorageError raised by ``fn`` are not captured
    per item: the first one propagates and unfinished items are cancelled.
    """
    if max_in_flight < 1:
        raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")
    if timeout_seconds <= 0:
        raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")

    pending_items = list(dict.fromkeys(items))
    result = BulkResult()
    if not pending_items:
        return result

    deadline = monotonic() + timeout_seconds
    executor = ThreadPoolExecutor(
        max_workers=min(max_in_flight, len(pending_items)),
        thread_name_prefix="tierstore-bulk",
    )
    in_flight: dict[Future[T], str] = {}
    queue = iter(pending_items)

    def submit_next() -> bool:
        item = next(queue, None)
        if item is None:
            return False
        in_flight[executor.submit(fn, item)] = item
        return True

    try:
        for _ in range(max_in_flight):
            if not submit_next():
                break

        while in_flight:
            remaining = deadline - monotonic()
            if remaining <= 0:
                break
            done, _ = wait(in_flight, timeout=remaining, return_when=FIRST_COMPLETED)
            for future in done:
                item = in_flight.pop(future)
                try:
                    result.succeeded[item] = future.result()
                except StorageError as e:
                    result.failed[item] = e
                submit_next()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    unfinished = [*in_flight.values(), *queue]
    for item in unfinished:
        result.failed[item] = TransientStorageError(
            f"Bulk operation did not finish within {timeout_seconds}s",
            locator_id=item,
        )
    if unfinished:
        logger.warning(
            "Bulk operation deadline passed: unfinished=%d succeeded=%d",
            len(unfinished),
            len(result.succeeded),
        )
    return result

"""Hybrid tiered storage.

Composes a hot, a cold and an optional backup backend behind the uniform
backend interface:

- Writes go to hot, then cold, then backup (when backup differs from cold).
  Only hot and cold decide the outcome; a backup failure is logged.
- Reads walk hot -> cold -> backup. A cold hit on a locator that already had
  ``access_threshold`` accesses schedules a background promotion to hot. A
  backup hit schedules a background repair of hot and cold.
- Versioning is authoritative on the cold tier.
- Deletes succeed when at least one tier deleted the locator.

Promotion and repair run on an owned worker pool; the read that triggers
them returns without waiting. ``drain()`` waits for them to land.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

from tierstore.backends.base import (
    LocatorEnumerator,
    Options,
    PresignedUrlProvider,
    StorageBackend,
)
from tierstore.bulk import BulkResult, run_bounded
from tierstore.config import (
    BackendKind,
    BulkConfig,
    StorageConfigError,
    StorageOptions,
    TieringConfig,
)
from tierstore.errors import (
    AllTiersFailedError,
    NotFoundError,
    PartialFailureError,
    StorageError,
    UnsupportedOperationError,
)
from tierstore.models import OpKind, StoredObject, VersionRecord, utc_now
from tierstore.sharding import ShardedMap
from tierstore.tracing import traced_storage_operation
from tierstore.tracker import AccessTracker

logger = logging.getLogger(__name__)

HOT = "hot"
COLD = "cold"
BACKUP = "backup"

DEFAULT_BACKGROUND_WORKERS = 4


class BackendRegistry:
    """Backend instances keyed by the kind used to select them."""

    def __init__(self, backends: Mapping[BackendKind, StorageBackend] | None = None) -> None:
        self._backends: dict[BackendKind, StorageBackend] = dict(backends or {})

    def register(self, kind: BackendKind, backend: StorageBackend) -> None:
        self._backends[BackendKind(kind)] = backend

    def get(self, kind: BackendKind) -> StorageBackend:
        """Return the backend registered for ``kind``.

        Raises:
            StorageConfigError: If no backend of that kind is configured.
        """
        backend = self._backends.get(BackendKind(kind))
        if backend is None:
            configured = sorted(k.value for k in self._backends)
            raise StorageConfigError(
                f"Backend '{BackendKind(kind).value}' is not configured "
                f"(configured: {configured})"
            )
        return backend

    def kinds(self) -> list[BackendKind]:
        return sorted(self._backends, key=lambda k: k.value)

    def __contains__(self, kind: object) -> bool:
        return kind in self._backends


@dataclass(frozen=True)
class ResolvedTiers:
    """Backends bound to the tier roles of one call."""

    config: TieringConfig
    hot: StorageBackend
    cold: StorageBackend
    backup: StorageBackend | None

    def primaries(self) -> Iterator[tuple[str, StorageBackend]]:
        yield HOT, self.hot
        yield COLD, self.cold

    def all(self) -> Iterator[tuple[str, StorageBackend]]:
        yield from self.primaries()
        if self.backup is not None:
            yield BACKUP, self.backup


@dataclass(frozen=True)
class TieringReport:
    """Outcome of one tiering pass.

    Attributes:
        swept_patterns: Access patterns removed by the expiry sweep.
        demoted_locators: Locators removed from the hot tier.
        demotion_policy: Name of the policy that ran, None when none is set.
    """

    swept_patterns: int
    demoted_locators: tuple[str, ...]
    demotion_policy: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "swept_patterns": self.swept_patterns,
            "demoted_locators": list(self.demoted_locators),
            "demotion_policy": self.demotion_policy,
        }


class DemotionPolicy(ABC):
    """Decides which hot-tier content to move back to cold-only."""

    name = "custom"

    @abstractmethod
    def demote(self, tiers: ResolvedTiers, tracker: AccessTracker) -> list[str]:
        """Remove idle content from the hot tier.

        Returns:
            Locators removed from the hot tier.
        """
        ...


class IdleDemotionPolicy(DemotionPolicy):
    """Drop hot copies that have been idle longer than the hot TTL.

    A hot copy is only removed after the cold tier confirms it holds the
    locator. Requires a hot backend that can list its locators.
    """

    name = "idle"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def demote(self, tiers: ResolvedTiers, tracker: AccessTracker) -> list[str]:
        if not isinstance(tiers.hot, LocatorEnumerator):
            logger.warning(
                "Hot tier %s cannot list its locators; skipping idle demotion",
                tiers.hot.backend_name,
            )
            return []

        now = self._clock()
        demoted: list[str] = []
        for locator_id in tiers.hot.list_locators():
            pattern = tracker.get_pattern(locator_id)
            if pattern is not None and now - pattern.last_access <= tiers.config.hot_ttl:
                continue
            if not tiers.cold.exists(locator_id):
                logger.warning(
                    "Not demoting locator missing from cold tier",
                    extra={"locator_id": locator_id},
                )
                continue
            try:
                tiers.hot.delete(locator_id)
            except StorageError as e:
                logger.warning("Failed to demote %s: %s", locator_id, e)
                continue
            demoted.append(locator_id)
        return demoted


class HybridStorage(StorageBackend, PresignedUrlProvider):
    """Tiered storage orchestrator over hot, cold and backup backends."""

    def __init__(
        self,
        registry: BackendRegistry,
        config: TieringConfig | None = None,
        tracker: AccessTracker | None = None,
        *,
        bulk: BulkConfig | None = None,
        max_background_workers: int = DEFAULT_BACKGROUND_WORKERS,
        demotion_policy: DemotionPolicy | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: Backends available for tier selection.
            config: Default tier roles and thresholds.
            tracker: Access tracker. A new one is created when None.
            bulk: Concurrency and deadline for bulk operations.
            max_background_workers: Worker threads for promotion and repair.
            demotion_policy: Policy run by trigger_tiering. Demotion is
                skipped when None.

        Raises:
            StorageConfigError: If a default tier's backend is not registered.
        """
        self._registry = registry
        self._config = config or TieringConfig()
        self._tracker = tracker if tracker is not None else AccessTracker()
        self._bulk = bulk or BulkConfig()
        self._demotion_policy = demotion_policy
        self._executor = ThreadPoolExecutor(
            max_workers=max_background_workers, thread_name_prefix="tierstore-tiering"
        )
        self._background: set[Future[None]] = set()
        self._background_lock = threading.Lock()
        self._promotions: ShardedMap[str, bool] = ShardedMap()
        self._maintenance_stop = threading.Event()
        self._maintenance_thread: threading.Thread | None = None
        self._closed = False

        self.resolve_tiers()

    @property
    def backend_name(self) -> str:
        return "hybrid"

    @property
    def config(self) -> TieringConfig:
        return self._config

    @property
    def tracker(self) -> AccessTracker:
        return self._tracker

    @property
    def registry(self) -> BackendRegistry:
        return self._registry

    def resolve_tiers(self, opts: Options = None) -> ResolvedTiers:
        """Bind backends to tier roles, applying per-call overrides.

        Raises:
            StorageConfigError: If a selected backend is not registered.
        """
        config = self._config.merged(opts)
        return ResolvedTiers(
            config=config,
            hot=self._registry.get(config.hot_backend),
            cold=self._registry.get(config.cold_backend),
            backup=self._registry.get(config.backup_backend)
            if config.backup_is_distinct
            else None,
        )

    # Background work

    def _submit(self, task: Callable[[], None], description: str) -> bool:
        try:
            future = self._executor.submit(task)
        except RuntimeError:
            logger.warning("Background %s skipped: storage is closed", description)
            return False
        with self._background_lock:
            self._background.add(future)
        future.add_done_callback(self._background_done)
        return True

    def _background_done(self, future: Future[None]) -> None:
        with self._background_lock:
            self._background.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Background tiering task failed: %s", error, exc_info=error)

    def _schedule_promotion(
        self, locator_id: str, content: bytes, tiers: ResolvedTiers, options: StorageOptions
    ) -> None:
        with self._promotions.locked(locator_id) as in_flight:
            if locator_id in in_flight:
                return
            in_flight[locator_id] = True

        def promote() -> None:
            try:
                tiers.hot.write(locator_id, content, opts=options)
                logger.info(
                    "Promoted locator to hot tier",
                    extra={"locator_id": locator_id, "hot_backend": tiers.hot.backend_name},
                )
            except StorageError as e:
                logger.warning(
                    "Promotion to hot tier failed: %s",
                    e,
                    extra={"locator_id": locator_id},
                )
            finally:
                self._promotions.pop(locator_id)

        if not self._submit(promote, "promotion"):
            self._promotions.pop(locator_id)

    def _schedule_repair(
        self, locator_id: str, content: bytes, tiers: ResolvedTiers, options: StorageOptions
    ) -> None:
        def repair() -> None:
            for role, backend in tiers.primaries():
                try:
                    backend.write(locator_id, content, opts=options)
                except StorageError as e:
                    logger.warning(
                        "Repair of %s tier failed: %s",
                        role,
                        e,
                        extra={"locator_id": locator_id, "tier": role},
                    )
            logger.info("Repaired primary tiers from backup", extra={"locator_id": locator_id})

        self._submit(repair, "repair")

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight promotion and repair writes.

        Returns:
            True if all background work finished within the timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._background_lock:
                pending = [f for f in self._background if not f.done()]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            _, not_done = wait(pending, timeout=remaining)
            if not_done and remaining is not None:
                return False

    # Uniform interface

    @traced_storage_operation("write")
    def write(self, locator_id: str, content: bytes, *, opts: Options = None) -> StoredObject:
        """Write content to hot and cold, and to backup when distinct.

        Raises:
            PartialFailureError: If exactly one of hot and cold failed.
            AllTiersFailedError: If both hot and cold failed.
        """
        tiers = self.resolve_tiers(opts)
        options = StorageOptions.coerce(opts)
        written: dict[str, StoredObject] = {}
        failures: dict[str, StorageError] = {}

        for role, backend in tiers.primaries():
            try:
                written[role] = backend.write(locator_id, content, opts=options)
            except StorageError as e:
                failures[role] = e
                logger.error(
                    "Write to %s tier failed: %s",
                    role,
                    e,
                    extra={"locator_id": locator_id, "tier": role},
                )

        if tiers.backup is not None:
            try:
                written[BACKUP] = tiers.backup.write(locator_id, content, opts=options)
            except StorageError as e:
                logger.warning(
                    "Write to backup tier failed: %s",
                    e,
                    extra={"locator_id": locator_id, "tier": BACKUP},
                )

        self._tracker.track(locator_id, OpKind.WRITE)

        if failures:
            succeeded = tuple(role for role in (HOT, COLD) if role in written)
            error_cls = PartialFailureError if succeeded else AllTiersFailedError
            raise error_cls(
                f"Write failed on tier(s): {', '.join(sorted(failures))}",
                locator_id=locator_id,
                failures=failures,
                succeeded=succeeded,
            )

        cold = written[COLD]
        return StoredObject(
            locator_id=locator_id,
            size=len(content),
            stored_at=utc_now(),
            backend=self.backend_name,
            version_id=cold.version_id,
            etag=cold.etag,
            content_type=cold.content_type,
            backend_fields={"tiers": {role: env.to_dict() for role, env in written.items()}},
        )

    @traced_storage_operation("read")
    def read(self, locator_id: str, *, opts: Options = None) -> bytes:
        """Read through the hot -> cold -> backup chain.

        Raises:
            NotFoundError: If no configured tier holds the locator.
            StorageError: If the cold or backup tier fails with anything
                other than a miss.
        """
        tiers = self.resolve_tiers(opts)
        options = StorageOptions.coerce(opts)

        try:
            content = tiers.hot.read(locator_id, opts=options)
        except NotFoundError:
            pass
        except StorageError as e:
            logger.warning(
                "Hot tier read failed, falling back to cold: %s",
                e,
                extra={"locator_id": locator_id},
            )
        else:
            self._tracker.track(locator_id, OpKind.READ_HOT)
            return content

        try:
            content = tiers.cold.read(locator_id, opts=options)
        except NotFoundError:
            pass
        else:
            # promotion counts the accesses seen before this read
            prior_accesses = self._tracker.track(locator_id, OpKind.READ_COLD) - 1
            if prior_accesses >= tiers.config.access_threshold:
                self._schedule_promotion(locator_id, content, tiers, options)
            return content

        if tiers.backup is not None:
            try:
                content = tiers.backup.read(locator_id, opts=options)
            except NotFoundError:
                pass
            else:
                self._tracker.track(locator_id, OpKind.READ_BACKUP)
                logger.warning(
                    "Served from backup tier; scheduling repair",
                    extra={"locator_id": locator_id},
                )
                self._schedule_repair(locator_id, content, tiers, options)
                return content

        raise NotFoundError(locator_id=locator_id, backend=self.backend_name)

    @traced_storage_operation("delete")
    def delete(self, locator_id: str, *, opts: Options = None) -> None:
        """Delete from every configured tier.

        Raises:
            AllTiersFailedError: If no tier deleted the locator.
        """
        tiers = self.resolve_tiers(opts)
        options = StorageOptions.coerce(opts)
        succeeded: list[str] = []
        failures: dict[str, StorageError] = {}

        for role, backend in tiers.all():
            try:
                backend.delete(locator_id, opts=options)
                succeeded.append(role)
            except StorageError as e:
                failures[role] = e
                logger.warning(
                    "Delete from %s tier failed: %s",
                    role,
                    e,
                    extra={"locator_id": locator_id, "tier": role},
                )

        self._tracker.forget(locator_id)

        if not succeeded:
            raise AllTiersFailedError(
                "Delete failed on every tier",
                locator_id=locator_id,
                failures=failures,
            )

    def exists(self, locator_id: str, *, opts: Options = None) -> bool:
        try:
            tiers = self.resolve_tiers(opts)
            options = StorageOptions.coerce(opts)
        except StorageConfigError:
            return False
        return any(backend.exists(locator_id, opts=options) for _, backend in tiers.all())

    @traced_storage_operation("stat")
    def stat(self, locator_id: str, *, opts: Options = None) -> StoredObject:
        tiers = self.resolve_tiers(opts)
        options = StorageOptions.coerce(opts)

        for role, backend in tiers.all():
            try:
                envelope = backend.stat(locator_id, opts=options)
            except NotFoundError:
                continue
            except StorageError as e:
                if role != HOT:
                    raise
                logger.warning(
                    "Hot tier stat failed, falling back to cold: %s",
                    e,
                    extra={"locator_id": locator_id},
                )
                continue
            return StoredObject(
                locator_id=locator_id,
                size=envelope.size,
                stored_at=envelope.stored_at,
                backend=self.backend_name,
                version_id=envelope.version_id,
                etag=envelope.etag,
                content_type=envelope.content_type,
                backend_fields={
                    **envelope.backend_fields,
                    "served_by": role,
                    "tier_backend": envelope.backend,
                },
            )

        raise NotFoundError(locator_id=locator_id, backend=self.backend_name)

    @traced_storage_operation("create_version")
    def create_version(
        self,
        locator_id: str,
        content: bytes,
        commit_message: str,
        *,
        opts: Options = None,
    ) -> tuple[str, VersionRecord]:
        """Create a version on the cold tier, then refresh the hot copy."""
        tiers = self.resolve_tiers(opts)
        options = StorageOptions.coerce(opts)

        version_id, record = tiers.cold.create_version(
            locator_id, content, commit_message, opts=options
        )
        self._tracker.track(locator_id, OpKind.VERSION)

        try:
            tiers.hot.write(locator_id, content, opts=options)
        except StorageError as e:
            logger.warning(
                "Hot tier refresh after new version failed: %s",
                e,
                extra={"locator_id": locator_id, "version_id": version_id},
            )

        logger.info(
            "Created version",
            extra={"locator_id": locator_id, "version_id": version_id},
        )
        return version_id, record

    @traced_storage_operation("list_versions")
    def list_versions(self, locator_id: str, *, opts: Options = None) -> list[VersionRecord]:
        tiers = self.resolve_tiers(opts)
        return tiers.cold.list_versions(locator_id, opts=StorageOptions.coerce(opts))

    @traced_storage_operation("get_version")
    def get_version(self, locator_id: str, version_id: str, *, opts: Options = None) -> bytes:
        tiers = self.resolve_tiers(opts)
        return tiers.cold.get_version(locator_id, version_id, opts=StorageOptions.coerce(opts))

    @traced_storage_operation("copy")
    def copy(
        self, source_locator_id: str, dest_locator_id: str, *, opts: Options = None
    ) -> StoredObject:
        """Read the source through the fallback chain and write the destination."""
        content = self.read(source_locator_id, opts=opts)
        return self.write(dest_locator_id, content, opts=opts)

    def generate_presigned_url(
        self,
        locator_id: str,
        method: str = "get",
        expires_in: int = 3600,
        *,
        opts: Options = None,
    ) -> str:
        tiers = self.resolve_tiers(opts)
        if not isinstance(tiers.cold, PresignedUrlProvider):
            raise UnsupportedOperationError(
                f"Cold tier {tiers.cold.backend_name} does not issue presigned URLs",
                locator_id=locator_id,
                backend=self.backend_name,
            )
        return tiers.cold.generate_presigned_url(
            locator_id, method, expires_in, opts=StorageOptions.coerce(opts)
        )

    # Bulk operations resolve tier selection once, before any item runs.

    def write_many(self, items: Mapping[str, bytes], *, opts: Options = None) -> BulkResult:
        self.resolve_tiers(opts)
        return run_bounded(
            items,
            lambda locator_id: self.write(locator_id, items[locator_id], opts=opts),
            self._bulk.max_in_flight,
            self._bulk.timeout_seconds,
        )

    def read_many(self, locator_ids: Iterable[str], *, opts: Options = None) -> BulkResult:
        self.resolve_tiers(opts)
        return run_bounded(
            locator_ids,
            lambda locator_id: self.read(locator_id, opts=opts),
            self._bulk.max_in_flight,
            self._bulk.timeout_seconds,
        )

    def delete_many(self, locator_ids: Iterable[str], *, opts: Options = None) -> BulkResult:
        self.resolve_tiers(opts)
        return run_bounded(
            locator_ids,
            lambda locator_id: self.delete(locator_id, opts=opts),
            self._bulk.max_in_flight,
            self._bulk.timeout_seconds,
        )

    # Maintenance and observability

    def trigger_tiering(self, opts: Options = None) -> TieringReport:
        """Run one tiering pass.

        Sweeps access patterns idle for more than twice the hot TTL, then
        runs the demotion policy when one is configured.
        """
        tiers = self.resolve_tiers(opts)
        swept = self._tracker.sweep_expired(2 * tiers.config.hot_ttl)

        if self._demotion_policy is None:
            logger.info("Demotion requested but no demotion policy is configured; skipping")
            report = TieringReport(swept_patterns=swept, demoted_locators=(), demotion_policy=None)
        else:
            demoted = tuple(self._demotion_policy.demote(tiers, self._tracker))
            report = TieringReport(
                swept_patterns=swept,
                demoted_locators=demoted,
                demotion_policy=self._demotion_policy.name,
            )

        logger.info(
            "Tiering pass complete: swept=%d demoted=%d",
            report.swept_patterns,
            len(report.demoted_locators),
        )
        return report

    def start_maintenance(self, interval_seconds: float) -> None:
        """Run trigger_tiering every ``interval_seconds`` until close()."""
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        if self._maintenance_thread is not None and self._maintenance_thread.is_alive():
            logger.warning("Maintenance already running")
            return

        self._maintenance_stop.clear()
        self._maintenance_thread = threading.Thread(
            target=self._maintenance_loop,
            args=(interval_seconds,),
            name="tierstore-maintenance",
            daemon=True,
        )
        self._maintenance_thread.start()
        logger.info("Tiering maintenance started (interval=%ss)", interval_seconds)

    def _maintenance_loop(self, interval_seconds: float) -> None:
        while not self._maintenance_stop.wait(interval_seconds):
            try:
                self.trigger_tiering()
            except Exception as e:
                logger.error("Error in tiering maintenance loop: %s", e, exc_info=True)

    def get_stats(self) -> dict[str, Any]:
        return self.get_storage_stats()

    def get_storage_stats(self, opts: Options = None) -> dict[str, Any]:
        """Report per-tier backend stats, access patterns and thresholds."""
        tiers = self.resolve_tiers(opts)
        config = tiers.config
        stats: dict[str, Any] = {
            HOT: {"backend": config.hot_backend.value, "stats": tiers.hot.get_stats()},
            COLD: {"backend": config.cold_backend.value, "stats": tiers.cold.get_stats()},
            BACKUP: {
                "backend": config.backup_backend.value,
                "stats": tiers.backup.get_stats() if tiers.backup is not None else "same as cold",
            },
            "access_patterns": self._tracker.snapshot(),
            "config": {
                "access_threshold": config.access_threshold,
                "hot_ttl": config.hot_ttl,
            },
        }
        return stats

    def close(self) -> None:
        """Stop maintenance and wait for background writes to finish."""
        if self._closed:
            return
        self._closed = True
        self._maintenance_stop.set()
        if self._maintenance_thread is not None:
            self._maintenance_thread.join()
            self._maintenance_thread = None
        self._executor.shutdown(wait=True)
        logger.info("Hybrid storage closed")

    def __enter__(self) -> HybridStorage:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

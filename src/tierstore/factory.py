"""Storage factory.

Builds the backend registry, access tracker and hybrid orchestrator from a
StorageConfig (loaded from the environment by default).
"""

from __future__ import annotations

import logging
from typing import Any

from tierstore.backends.disk import DiskBackend
from tierstore.backends.memory import MemoryBackend
from tierstore.backends.object_store import ObjectStoreBackend
from tierstore.config import BackendKind, StorageConfig, StorageConfigError, load_storage_config
from tierstore.hybrid import BackendRegistry, DemotionPolicy, HybridStorage
from tierstore.tracker import AccessTracker

logger = logging.getLogger(__name__)


def create_registry(
    config: StorageConfig, *, object_store_client: Any | None = None
) -> BackendRegistry:
    """Create a registry holding every backend the configuration enables.

    The memory and disk backends are always available. The object store
    backend is registered only when an object store section is configured.
    """
    registry = BackendRegistry()
    registry.register(BackendKind.MEMORY, MemoryBackend(config.memory))
    registry.register(BackendKind.DISK, DiskBackend(config.disk))
    if config.object_store is not None:
        registry.register(
            BackendKind.OBJECT_STORE,
            ObjectStoreBackend(config.object_store, client=object_store_client),
        )
    return registry


def create_storage(
    config: StorageConfig | None = None,
    *,
    object_store_client: Any | None = None,
    demotion_policy: DemotionPolicy | None = None,
) -> HybridStorage:
    """Create a hybrid storage instance.

    Args:
        config: Storage configuration. If None, loads from environment.
        object_store_client: Pre-built S3 client for the object store backend.
        demotion_policy: Policy run by trigger_tiering.

    Returns:
        HybridStorage ready for use. Call close() when done.

    Raises:
        StorageConfigError: If a tier selects a backend that is not configured.
    """
    if config is None:
        config = load_storage_config()

    registry = create_registry(config, object_store_client=object_store_client)
    tiering = config.tiering
    for role, kind in (
        ("hot", tiering.hot_backend),
        ("cold", tiering.cold_backend),
        ("backup", tiering.backup_backend),
    ):
        if kind not in registry:
            raise StorageConfigError(
                f"The {role} tier selects '{kind.value}', which is not configured"
                + (" (set TIERSTORE_S3_BUCKET)" if kind is BackendKind.OBJECT_STORE else "")
            )

    logger.info(
        "Creating hybrid storage: hot=%s cold=%s backup=%s threshold=%d",
        tiering.hot_backend.value,
        tiering.cold_backend.value,
        tiering.backup_backend.value,
        tiering.access_threshold,
    )
    return HybridStorage(
        registry,
        tiering,
        AccessTracker(),
        bulk=config.bulk,
        demotion_policy=demotion_policy,
    )

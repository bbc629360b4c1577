"""Offline storage service: the facade consumers call.

Writes land in the local store immediately with ``synced=false`` whatever the
current connectivity; only the sync coordinator flips ``synced`` after the
remote acknowledges the id.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar, cast

from retina_offline.connectivity import ConnectivityMonitor
from retina_offline.errors import EntityConflictError
from retina_offline.models import (
    SYNC_STATE_FIELDS,
    SYNCABLE_TYPES,
    CapturedImage,
    DetectionResult,
    EntityType,
    Model,
    SyncableEntity,
    TrainingSession,
)
from retina_offline.storage import LocalStore, StorageUsage, StorageUsageTracker
from retina_offline.sync import BackoffPolicy, RemoteSyncClient, SyncCoordinator

if TYPE_CHECKING:
    from retina_offline.config import OfflineConfig
    from retina_offline.scheduling import Scheduler
    from retina_offline.sync import SyncStatus, SyncSummary

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=SyncableEntity)


class OfflineStorageService:
    """Composes the local store, usage tracker, connectivity monitor and
    sync coordinator into the operations the client uses."""

    def __init__(
        self,
        store: LocalStore,
        monitor: ConnectivityMonitor,
        coordinator: SyncCoordinator,
        tracker: StorageUsageTracker | None = None,
        remote: RemoteSyncClient | None = None,
        ephemeral_retention_days: int = 7,
    ) -> None:
        """Initialize service.

        Args:
            store: Local store
            monitor: Connectivity monitor
            coordinator: Sync coordinator
            tracker: Usage tracker (created over ``store`` if omitted)
            remote: Remote client closed on ``dispose()``
            ephemeral_retention_days: Default age for ``evict_ephemeral()``
        """
        self.store = store
        self.monitor = monitor
        self.coordinator = coordinator
        self.tracker = tracker or StorageUsageTracker(store)
        self.remote = remote
        self.ephemeral_retention_days = ephemeral_retention_days

    @classmethod
    def from_config(
        cls,
        config: OfflineConfig,
        *,
        scheduler: Scheduler | None = None,
        initial_platform_online: bool = True,
        remote: RemoteSyncClient | None = None,
    ) -> OfflineStorageService:
        """Wire a service from configuration.

        Args:
            config: Loaded configuration
            scheduler: Scheduler shared by the monitor and the coordinator
            initial_platform_online: Platform connectivity flag at startup
            remote: Remote client to use instead of building one from config;
                the caller keeps ownership and closes it

        Returns:
            A service that still needs ``init()``
        """
        sync_cfg = config.sync
        conn_cfg = config.connectivity

        owns_remote = remote is None
        if remote is None:
            headers = {"Authorization": f"Bearer {sync_cfg.api_token}"} if sync_cfg.api_token else None
            remote = RemoteSyncClient(
                base_url=sync_cfg.remote_url,
                health_url=conn_cfg.health_url,
                timeout=sync_cfg.push_timeout_seconds,
                probe_timeout=conn_cfg.probe_timeout_seconds,
                headers=headers,
            )

        store = LocalStore(database_path=config.storage.path or ":memory:", quota_bytes=config.storage.quota_bytes)
        monitor = ConnectivityMonitor(
            probe=remote,
            scheduler=scheduler,
            hysteresis_seconds=conn_cfg.hysteresis_seconds,
            reprobe_interval_seconds=conn_cfg.reprobe_interval_seconds,
            initial_platform_online=initial_platform_online,
        )
        coordinator = SyncCoordinator(
            store=store,
            transport=remote,
            monitor=monitor,
            scheduler=scheduler,
            backoff=BackoffPolicy(
                base=sync_cfg.backoff_base_seconds,
                cap=sync_cfg.backoff_cap_seconds,
                multiplier=sync_cfg.backoff_multiplier,
                jitter_ratio=sync_cfg.jitter_ratio,
            ),
            max_concurrency=sync_cfg.max_concurrency,
            push_timeout_seconds=sync_cfg.push_timeout_seconds,
            max_attempts_per_pass=sync_cfg.max_attempts_per_pass,
            retry_window_seconds=sync_cfg.retry_window_seconds,
        )
        return cls(
            store=store,
            monitor=monitor,
            coordinator=coordinator,
            remote=remote if owns_remote else None,
            ephemeral_retention_days=config.storage.ephemeral_retention_days,
        )

    async def init(self, start_sync: bool = True) -> None:
        """Open the store, then start syncing and monitoring.

        The coordinator subscribes before the monitor's first probe so that
        work left pending by a previous run syncs as soon as the monitor
        reports Online.

        Args:
            start_sync: False opens the store only (read-only inspection);
                no probe is sent and no pass is triggered
        """
        await self.store.initialize()
        if start_sync:
            self.coordinator.start()
            await self.monitor.init()
        logger.info("Offline storage service initialized")

    async def dispose(self) -> None:
        """Stop syncing and monitoring and close the store."""
        await self.coordinator.stop()
        await self.monitor.dispose()
        if self.remote is not None:
            await self.remote.aclose()
        await self.store.close()
        logger.info("Offline storage service disposed")

    async def __aenter__(self) -> OfflineStorageService:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _save_syncable(self, entity: S) -> S:
        fresh = entity.model_copy(update={field: SyncableEntity.model_fields[field].default for field in SYNC_STATE_FIELDS})
        await self.store.put(fresh)
        stored = await self.store.get_by_id(fresh.entity_type, fresh.id)
        return cast(S, stored) if stored is not None else fresh

    async def save_detection_result(self, result: DetectionResult) -> DetectionResult:
        """Persist a detection result as pending sync.

        Raises:
            QuotaExceededError: If the store has no room for the result
        """
        saved = await self._save_syncable(result)
        logger.info(f"Saved detection result '{saved.id}' ({saved.disease_type})")
        return saved

    async def save_training_session(self, session: TrainingSession) -> TrainingSession:
        """Persist a training session as pending sync."""
        saved = await self._save_syncable(session)
        logger.info(f"Saved training session '{saved.id}' ({saved.disease_type})")
        return saved

    async def save_captured_image(self, image: CapturedImage) -> CapturedImage:
        """Persist a captured image until retention evicts it."""
        await self.store.put(image)
        return image

    async def save_model(self, model: Model) -> Model:
        """Cache a model. Models are append-only.

        Re-saving an identical model is a no-op; a different body under an
        existing id is rejected, since a new version must be a new record.

        Raises:
            EntityConflictError: If the id exists with different content
        """
        existing = await self.store.get_by_id(EntityType.MODEL, model.id)
        if existing is not None:
            if existing.payload() == model.payload():
                return cast(Model, existing)
            raise EntityConflictError(EntityType.MODEL.value, model.id)

        await self.store.put(model)
        logger.info(f"Cached model '{model.id}' ({model.disease_type} v{model.version})")
        return model

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_all_models(self) -> list[Model]:
        return cast(list[Model], await self.store.query_by_index(EntityType.MODEL).to_list())

    async def get_models_for_disease(self, disease_type: str) -> list[Model]:
        query = self.store.query_by_index(EntityType.MODEL, disease_type=disease_type)
        return cast(list[Model], await query.to_list())

    async def get_latest_model(self, disease_type: str) -> Model | None:
        """Newest cached model for a disease (highest version, then latest cache time)."""
        models = await self.get_models_for_disease(disease_type)
        if not models:
            return None
        return max(models, key=lambda m: (m.version, m.cached_at))

    async def get_unsynced_detection_results(self) -> list[DetectionResult]:
        """Detection results not yet acknowledged, including failed-permanent ones."""
        query = self.store.query_by_index(EntityType.DETECTION, synced=False)
        return cast(list[DetectionResult], await query.to_list())

    async def get_unsynced_training_sessions(self) -> list[TrainingSession]:
        """Training sessions not yet acknowledged, including failed-permanent ones."""
        query = self.store.query_by_index(EntityType.TRAINING, synced=False)
        return cast(list[TrainingSession], await query.to_list())

    async def get_failed_items(self) -> list[SyncableEntity]:
        """Items the remote rejected, awaiting manual handling."""
        failed: list[SyncableEntity] = []
        for entity_type in SYNCABLE_TYPES:
            query = self.store.query_by_index(entity_type, synced=False, failed_permanent=True)
            failed.extend(cast(list[SyncableEntity], await query.to_list()))
        return failed

    async def requeue_failed(self, entity_type: EntityType, entity_id: str) -> bool:
        """Return a failed-permanent item to automatic sync after manual repair.

        Returns:
            True if the item was failed-permanent and is now pending again
        """
        entity = await self.store.get_by_id(entity_type, entity_id)
        if not isinstance(entity, SyncableEntity) or entity.synced or not entity.failed_permanent:
            return False

        await self.store.update_sync_state(
            entity_type,
            entity_id,
            failed_permanent=False,
            attempts=0,
            last_error=None,
            next_attempt_at=None,
        )
        logger.info(f"Requeued {EntityType(entity_type).value} '{entity_id}' for sync")
        return True

    # ------------------------------------------------------------------
    # Sync, connectivity and usage
    # ------------------------------------------------------------------

    async def force_sync(self) -> SyncSummary:
        return await self.coordinator.force_sync()

    async def sync_status(self) -> SyncStatus:
        return await self.coordinator.status()

    def is_online(self) -> bool:
        return self.monitor.is_online()

    async def check_connectivity(self) -> bool:
        """Probe the remote now (the client's "retry connection" action)."""
        return await self.monitor.check_now()

    async def storage_usage(self, refresh: bool = True) -> StorageUsage:
        """Usage per category; ``refresh=False`` returns the cached snapshot."""
        if refresh:
            return await self.tracker.refresh()
        return self.tracker.snapshot()

    async def evict_ephemeral(self, older_than: timedelta | None = None) -> int:
        """Delete captured images older than the retention age.

        Returns:
            Number of evicted images
        """
        age = older_than if older_than is not None else timedelta(days=self.ephemeral_retention_days)
        return await self.store.delete_older_than(EntityType.EPHEMERAL, datetime.now(UTC) - age)

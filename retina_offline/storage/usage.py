"""Storage usage tracker: on-demand aggregates over the local store."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from retina_offline.models import EntityType
from retina_offline.observability import update_store_usage
from retina_offline.storage.models import CategoryUsage, StorageUsage

if TYPE_CHECKING:
    from retina_offline.storage.local_store import LocalStore

logger = logging.getLogger(__name__)

CATEGORY_BY_TYPE: dict[EntityType, str] = {
    EntityType.MODEL: "models",
    EntityType.DETECTION: "detections",
    EntityType.TRAINING: "training",
    EntityType.EPHEMERAL: "ephemeral",
}


class StorageUsageTracker:
    """Computes usage snapshots without blocking writers.

    Numbers are advisory: a refresh that races with writes may miss them.
    """

    def __init__(self, store: LocalStore) -> None:
        self.store = store
        self._snapshot = StorageUsage(quota_bytes=store.quota_bytes)

    async def refresh(self) -> StorageUsage:
        """Recompute the snapshot from the local store.

        Returns:
            The new snapshot
        """
        rows = await self.store.usage_rows()
        categories = {name: CategoryUsage() for name in CATEGORY_BY_TYPE.values()}
        pending = failed = 0

        for type_tag, count, size_bytes, type_pending, type_failed in rows:
            try:
                category = CATEGORY_BY_TYPE[EntityType(type_tag)]
            except ValueError:
                logger.warning(f"Ignoring usage of unknown entity type '{type_tag}'")
                continue
            categories[category] = CategoryUsage(count=count, bytes=size_bytes)
            pending += type_pending
            failed += type_failed

        self._snapshot = StorageUsage(
            **categories,
            pending_sync=pending,
            failed_permanent=failed,
            quota_bytes=self.store.quota_bytes,
            computed_at=datetime.now(UTC),
        )

        for name, usage in categories.items():
            update_store_usage(name, usage.count, usage.bytes)

        logger.debug(
            f"Storage usage refreshed: {self._snapshot.total_items} items, "
            f"{self._snapshot.total_bytes} bytes, {pending} pending sync"
        )
        return self._snapshot

    def snapshot(self) -> StorageUsage:
        """Return the last computed snapshot without any I/O."""
        return self._snapshot

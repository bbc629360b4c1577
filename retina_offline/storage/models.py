"""Storage usage models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class CategoryUsage(BaseModel):
    """Item count and payload bytes for one storage category."""

    count: int = 0
    bytes: int = 0


class StorageUsage(BaseModel):
    """Advisory snapshot of local store usage.

    Attributes:
        models: Cached inference models
        detections: Detection results
        training: Training sessions
        ephemeral: Captured images awaiting retention
        pending_sync: Syncable items still waiting for acknowledgment
        failed_permanent: Items rejected by the remote, awaiting manual handling
        quota_bytes: Configured quota, or None when unlimited
        computed_at: When the snapshot was computed (None before the first refresh)
    """

    models: CategoryUsage = Field(default_factory=CategoryUsage)
    detections: CategoryUsage = Field(default_factory=CategoryUsage)
    training: CategoryUsage = Field(default_factory=CategoryUsage)
    ephemeral: CategoryUsage = Field(default_factory=CategoryUsage)
    pending_sync: int = 0
    failed_permanent: int = 0
    quota_bytes: int | None = None
    computed_at: datetime | None = None

    @property
    def total_bytes(self) -> int:
        return self.models.bytes + self.detections.bytes + self.training.bytes + self.ephemeral.bytes

    @property
    def total_items(self) -> int:
        return self.models.count + self.detections.count + self.training.count + self.ephemeral.count

    @property
    def quota_fraction(self) -> float | None:
        """Fraction of the quota in use, or None when unlimited."""
        if not self.quota_bytes:
            return None
        return self.total_bytes / self.quota_bytes

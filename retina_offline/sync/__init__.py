"""Sync layer: backoff policy, remote client, and the sync coordinator."""

from retina_offline.sync.backoff import BackoffPolicy
from retina_offline.sync.coordinator import (
    ItemOutcome,
    SyncCoordinator,
    SyncState,
    SyncStatus,
    SyncSummary,
)
from retina_offline.sync.remote import HealthProbe, RemoteSyncClient, SyncTransport

__all__ = [
    "BackoffPolicy",
    "HealthProbe",
    "ItemOutcome",
    "RemoteSyncClient",
    "SyncCoordinator",
    "SyncState",
    "SyncStatus",
    "SyncSummary",
    "SyncTransport",
]

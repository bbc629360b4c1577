"""Retina offline storage layer."""

from retina_offline.storage.local_store import EntityQuery, LocalStore
from retina_offline.storage.models import CategoryUsage, StorageUsage
from retina_offline.storage.path_resolver import StoragePathResolver
from retina_offline.storage.usage import StorageUsageTracker

__all__ = [
    "CategoryUsage",
    "EntityQuery",
    "LocalStore",
    "StoragePathResolver",
    "StorageUsage",
    "StorageUsageTracker",
]

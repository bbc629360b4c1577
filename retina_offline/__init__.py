"""Retina offline: local persistence and background sync for detection results."""

from retina_offline.service import OfflineStorageService

__all__ = ["OfflineStorageService"]

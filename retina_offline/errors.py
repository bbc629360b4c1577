"""Exception hierarchy for the offline storage and sync subsystem."""

from __future__ import annotations


class OfflineStorageError(Exception):
    """Base class for all retina_offline errors."""


class EntityValidationError(OfflineStorageError):
    """Raised when an entity is missing its id or type tag."""


class EntityConflictError(OfflineStorageError):
    """Raised when an append-only record would be rewritten in place."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type} '{entity_id}' already exists with different content")
        self.entity_type = entity_type
        self.entity_id = entity_id


class QuotaExceededError(OfflineStorageError):
    """Raised when the storage medium rejects a write for lack of space.

    The write is rolled back; the previous value for the key (or its absence)
    is preserved.
    """

    def __init__(self, message: str, requested_bytes: int = 0, available_bytes: int | None = None) -> None:
        super().__init__(message)
        self.requested_bytes = requested_bytes
        self.available_bytes = available_bytes


class CorruptRecordError(OfflineStorageError):
    """Raised when a stored row cannot be deserialized."""

    def __init__(self, entity_type: str, entity_id: str, reason: str) -> None:
        super().__init__(f"Corrupt {entity_type} record '{entity_id}': {reason}")
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason


class SyncError(OfflineStorageError):
    """Base class for failures while pushing a record to the remote."""


class NetworkFailureError(SyncError):
    """Transient failure: the push may succeed if retried later."""


class PushTimeoutError(NetworkFailureError):
    """A push attempt did not complete within its timeout."""


class RemoteRejectedError(SyncError):
    """Definite rejection from the remote; retrying will not help."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

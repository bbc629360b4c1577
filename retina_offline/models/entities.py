"""Entity models persisted by the local store.

Every entity is a tagged variant: the class carries its ``EntityType`` and a
schema version, and the store persists both next to the JSON payload. Sync
state (``synced``, ``failed_permanent`` and friends) lives in dedicated store
columns and is never part of the payload pushed to the remote.
"""

from __future__ import annotations

import base64
import re
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, Field, field_serializer, field_validator


class EntityType(str, Enum):
    """Owning type tag of a stored entity."""

    MODEL = "model"
    DETECTION = "detection"
    TRAINING = "training"
    EPHEMERAL = "ephemeral"


SYNC_STATE_FIELDS = frozenset(
    {"synced", "failed_permanent", "sync_attempts", "last_sync_error", "next_attempt_at"}
)


def new_entity_id(prefix: str) -> str:
    """Generate a globally unique writer-side id such as ``detection_<hex>``."""
    return f"{prefix}_{uuid.uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Entity(BaseModel):
    """Base class for everything the local store accepts."""

    entity_type: ClassVar[EntityType]
    schema_version: ClassVar[int] = 2
    syncable: ClassVar[bool] = False

    id: str = Field(min_length=1)
    disease_type: str | None = None

    def payload(self) -> dict[str, Any]:
        """JSON-ready payload without store-owned sync state."""
        return self.model_dump(mode="json", exclude=set(SYNC_STATE_FIELDS))


class SyncableEntity(Entity):
    """Entity whose creation must eventually be acknowledged by the remote.

    Attributes:
        synced: True only after the remote acknowledged this id
        failed_permanent: Remote rejected the record; excluded from automatic retry
        sync_attempts: Number of transient push failures so far
        last_sync_error: Message of the most recent push failure
        next_attempt_at: Earliest time the next automatic attempt may run
    """

    syncable: ClassVar[bool] = True

    synced: bool = False
    failed_permanent: bool = False
    sync_attempts: int = 0
    last_sync_error: str | None = None
    next_attempt_at: datetime | None = None


class ModelMetadata(BaseModel):
    """Training metadata attached to a cached model."""

    accuracy: float | None = None
    parameter_count: int | None = None
    trained_at: datetime | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class Model(Entity):
    """Cached inference model. Append-only: a new version is a new record."""

    entity_type: ClassVar[EntityType] = EntityType.MODEL

    id: str = Field(default_factory=lambda: new_entity_id("model"), min_length=1)
    disease_type: str
    weights_ref: str
    metadata: ModelMetadata = Field(default_factory=ModelMetadata)
    version: int = Field(default=1, ge=1)
    cached_at: datetime = Field(default_factory=_utcnow)


class DetectionResult(SyncableEntity):
    """Result of one completed inference on a captured image."""

    entity_type: ClassVar[EntityType] = EntityType.DETECTION

    id: str = Field(default_factory=lambda: new_entity_id("detection"), min_length=1)
    image_id: str
    disease_type: str
    result: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=_utcnow)


class TrainingSession(SyncableEntity):
    """A recorded training run."""

    entity_type: ClassVar[EntityType] = EntityType.TRAINING

    id: str = Field(default_factory=lambda: new_entity_id("training"), min_length=1)
    disease_type: str
    dataset_ref: str
    metrics: dict[str, float] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None


class CapturedImage(Entity):
    """Ephemeral diagnostic artifact kept only until retention evicts it."""

    entity_type: ClassVar[EntityType] = EntityType.EPHEMERAL

    id: str = Field(default_factory=lambda: new_entity_id("image"), min_length=1)
    mime_type: str = "image/jpeg"
    content: bytes
    captured_at: datetime = Field(default_factory=_utcnow)

    @field_validator("content", mode="before")
    @classmethod
    def _decode_content(cls, value: Any) -> Any:
        if isinstance(value, str):
            return base64.b64decode(value)
        return value

    @field_serializer("content", when_used="json")
    def _encode_content(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


ENTITY_CLASSES: dict[EntityType, type[Entity]] = {
    cls.entity_type: cls for cls in (Model, DetectionResult, TrainingSession, CapturedImage)
}

SYNCABLE_TYPES: tuple[EntityType, ...] = tuple(
    entity_type for entity_type, cls in ENTITY_CLASSES.items() if cls.syncable
)


def entity_class_for(entity_type: EntityType | str) -> type[Entity]:
    """Look up the entity class registered for a type tag.

    Raises:
        KeyError: If the tag is unknown
    """
    return ENTITY_CLASSES[EntityType(entity_type)]


# ============================================================================
# Schema upgrades
# ============================================================================

Upgrader = Callable[[dict[str, Any]], dict[str, Any]]

_UPGRADERS: dict[tuple[EntityType, int], Upgrader] = {}


def register_upgrader(entity_type: EntityType, from_version: int) -> Callable[[Upgrader], Upgrader]:
    """Register a payload upgrade from ``from_version`` to ``from_version + 1``."""

    def decorator(func: Upgrader) -> Upgrader:
        _UPGRADERS[(entity_type, from_version)] = func
        return func

    return decorator


def upgrade_payload(entity_type: EntityType, version: int, payload: dict[str, Any]) -> dict[str, Any]:
    """Migrate a stored payload forward to the current schema version.

    Raises:
        ValueError: If the version is newer than this code understands or no
            upgrade path exists
    """
    current = entity_class_for(entity_type).schema_version
    if version > current:
        raise ValueError(f"schema version {version} is newer than supported {current}")

    while version < current:
        upgrader = _UPGRADERS.get((entity_type, version))
        if upgrader is None:
            raise ValueError(f"no upgrade path for {entity_type.value} schema v{version}")
        payload = upgrader(payload)
        version += 1
    return payload


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_case_keys(payload: dict[str, Any]) -> dict[str, Any]:
    """v1 records were written by the browser client with camelCase keys."""
    converted: dict[str, Any] = {}
    for key, value in payload.items():
        new_key = _CAMEL_BOUNDARY.sub("_", key).lower()
        if isinstance(value, dict) and key == "metadata":
            value = _snake_case_keys(value)
        converted[new_key] = value
    return converted


for _entity_type in EntityType:
    register_upgrader(_entity_type, 1)(_snake_case_keys)


class SyncEnvelope(BaseModel):
    """One idempotent upsert request sent to the remote."""

    entity_type: EntityType
    id: str
    payload: dict[str, Any]

    @classmethod
    def from_entity(cls, entity: Entity) -> SyncEnvelope:
        return cls(entity_type=entity.entity_type, id=entity.id, payload=entity.payload())

    def to_wire(self) -> dict[str, Any]:
        """Wire shape: ``{"entityType", "id", "payload"}``."""
        return {"entityType": self.entity_type.value, "id": self.id, "payload": self.payload}

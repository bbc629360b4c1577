"""Retina offline data models."""

from retina_offline.models.entities import (
    ENTITY_CLASSES,
    SYNC_STATE_FIELDS,
    SYNCABLE_TYPES,
    CapturedImage,
    DetectionResult,
    Entity,
    EntityType,
    Model,
    ModelMetadata,
    SyncableEntity,
    SyncEnvelope,
    TrainingSession,
    entity_class_for,
    new_entity_id,
    register_upgrader,
    upgrade_payload,
)

__all__ = [
    "CapturedImage",
    "DetectionResult",
    "ENTITY_CLASSES",
    "Entity",
    "EntityType",
    "entity_class_for",
    "Model",
    "ModelMetadata",
    "new_entity_id",
    "register_upgrader",
    "SYNC_STATE_FIELDS",
    "SYNCABLE_TYPES",
    "SyncableEntity",
    "SyncEnvelope",
    "TrainingSession",
    "upgrade_payload",
]

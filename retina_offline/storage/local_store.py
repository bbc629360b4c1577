"""Local store: DuckDB-backed durable storage for typed entities."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import duckdb
from pydantic import ValidationError

from retina_offline.errors import CorruptRecordError, EntityValidationError, QuotaExceededError
from retina_offline.models import ENTITY_CLASSES, SYNC_STATE_FIELDS, Entity, EntityType, entity_class_for, upgrade_payload
from retina_offline.observability import record_corrupt_record

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)

_UNSET: Any = object()

_ROW_COLUMNS = """
    entity_type, id, schema_version, payload,
    synced, failed_permanent, sync_attempts, last_sync_error, next_attempt_at
"""


def _to_epoch(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _from_epoch(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value is not None else None


class EntityQuery:
    """Restartable snapshot query over one entity type.

    Every ``async for`` runs the query again and yields a consistent snapshot
    of the matching rows; rows are deserialized one at a time. Rows that fail
    to deserialize are skipped and collected in ``corrupt``.
    """

    def __init__(self, store: LocalStore, entity_type: EntityType, filters: dict[str, Any]) -> None:
        self.store = store
        self.entity_type = entity_type
        self.filters = filters
        self.corrupt: list[CorruptRecordError] = []

    def __aiter__(self) -> AsyncIterator[Entity]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Entity]:
        rows = await self.store._fetch_rows(self.entity_type, self.filters)
        self.corrupt = []
        for row in rows:
            try:
                entity = self.store._row_to_entity(row)
            except CorruptRecordError as e:
                logger.warning(f"Skipping corrupt record: {e}")
                record_corrupt_record(self.entity_type.value)
                self.corrupt.append(e)
                continue
            yield entity

    async def to_list(self) -> list[Entity]:
        """Materialize one snapshot of the query."""
        return [entity async for entity in self]


class LocalStore:
    """Keyed entity storage with lookup by disease type and sync state.

    Every mutating call is a single transaction scoped to one key. Sync-state
    columns are only written by ``update_sync_state``; ``put`` never touches
    them for an existing key.
    """

    def __init__(self, database_path: str | Path = ":memory:", quota_bytes: int | None = None) -> None:
        """Initialize local store.

        Args:
            database_path: DuckDB database path (":memory:" for in-memory)
            quota_bytes: Maximum total payload bytes, or None for no limit
        """
        self.db_path = database_path
        self.quota_bytes = quota_bytes
        self.conn: duckdb.DuckDBPyConnection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create the schema."""
        async with self._lock:
            if str(self.db_path) != ":memory:":
                from pathlib import Path

                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = duckdb.connect(str(self.db_path))

            # Lookups by disease_type and synced are filtered scans; an ART
            # index on a mutable column would turn updates into delete+insert
            # and trip the primary key.
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS entities (
                    entity_type VARCHAR NOT NULL,
                    id VARCHAR NOT NULL,
                    schema_version INTEGER NOT NULL,
                    disease_type VARCHAR,
                    payload VARCHAR NOT NULL,
                    size_bytes BIGINT NOT NULL,
                    synced BOOLEAN,
                    failed_permanent BOOLEAN NOT NULL DEFAULT FALSE,
                    sync_attempts INTEGER NOT NULL DEFAULT 0,
                    last_sync_error VARCHAR,
                    next_attempt_at DOUBLE,
                    created_at DOUBLE NOT NULL,
                    updated_at DOUBLE NOT NULL,
                    PRIMARY KEY (entity_type, id)
                )
            """)

            logger.info(f"Local store initialized at {self.db_path}")

    def _require_conn(self) -> duckdb.DuckDBPyConnection:
        if not self.conn:
            raise RuntimeError("Local store not initialized")
        return self.conn

    @staticmethod
    def _validate(entity: Entity) -> None:
        entity_type = getattr(type(entity), "entity_type", None)
        if entity_type not in ENTITY_CLASSES or ENTITY_CLASSES[entity_type] is not type(entity):
            raise EntityValidationError(f"Unregistered entity class: {type(entity).__name__}")
        if not entity.id or not entity.id.strip():
            raise EntityValidationError(f"{entity_type.value} entity has no id")

    async def put(self, entity: Entity) -> None:
        """Insert or replace an entity atomically.

        Args:
            entity: Entity to persist

        Raises:
            EntityValidationError: If the entity has no id or an unknown type
            QuotaExceededError: If the write does not fit; nothing is changed
        """
        self._validate(entity)
        entity_type = entity.entity_type
        payload = entity.model_dump_json(exclude=set(SYNC_STATE_FIELDS))
        size_bytes = len(payload.encode("utf-8"))
        now = datetime.now(UTC).timestamp()

        async with self._lock:
            conn = self._require_conn()
            conn.begin()
            try:
                existing = conn.execute(
                    "SELECT size_bytes FROM entities WHERE entity_type = ? AND id = ?",
                    [entity_type.value, entity.id],
                ).fetchone()
                self._check_quota(conn, size_bytes, existing[0] if existing else 0)

                if existing:
                    conn.execute(
                        """
                        UPDATE entities
                        SET schema_version = ?, disease_type = ?, payload = ?,
                            size_bytes = ?, updated_at = ?
                        WHERE entity_type = ? AND id = ?
                        """,
                        [
                            entity.schema_version,
                            entity.disease_type,
                            payload,
                            size_bytes,
                            now,
                            entity_type.value,
                            entity.id,
                        ],
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO entities (
                            entity_type, id, schema_version, disease_type, payload,
                            size_bytes, synced, created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            entity_type.value,
                            entity.id,
                            entity.schema_version,
                            entity.disease_type,
                            payload,
                            size_bytes,
                            False if entity.syncable else None,
                            now,
                            now,
                        ],
                    )
                conn.commit()
            except QuotaExceededError:
                conn.rollback()
                raise
            except duckdb.OutOfMemoryException as e:
                conn.rollback()
                raise QuotaExceededError(
                    f"Storage medium rejected {entity_type.value} '{entity.id}': {e}",
                    requested_bytes=size_bytes,
                ) from e
            except duckdb.IOException as e:
                conn.rollback()
                if "space" in str(e).lower():
                    raise QuotaExceededError(
                        f"Storage medium is full while writing {entity_type.value} '{entity.id}'",
                        requested_bytes=size_bytes,
                    ) from e
                raise
            except Exception:
                conn.rollback()
                raise

        logger.debug(f"Stored {entity_type.value} '{entity.id}' ({size_bytes} bytes)")

    def _check_quota(self, conn: duckdb.DuckDBPyConnection, size_bytes: int, replaced_bytes: int) -> None:
        if self.quota_bytes is None:
            return
        used = conn.execute("SELECT COALESCE(SUM(size_bytes), 0) FROM entities").fetchone()[0]
        available = self.quota_bytes - (int(used) - replaced_bytes)
        if size_bytes > available:
            raise QuotaExceededError(
                f"Write of {size_bytes} bytes exceeds remaining quota of {max(available, 0)} bytes",
                requested_bytes=size_bytes,
                available_bytes=max(available, 0),
            )

    async def get_by_id(self, entity_type: EntityType, entity_id: str) -> Entity | None:
        """Get an entity by type and id.

        Returns:
            The entity, or None if absent

        Raises:
            CorruptRecordError: If the stored row cannot be deserialized
        """
        async with self._lock:
            conn = self._require_conn()
            row = conn.execute(
                f"SELECT {_ROW_COLUMNS} FROM entities WHERE entity_type = ? AND id = ?",
                [EntityType(entity_type).value, entity_id],
            ).fetchone()

        if row is None:
            return None
        return self._row_to_entity(row)

    def query_by_index(
        self,
        entity_type: EntityType,
        *,
        disease_type: str | None = None,
        synced: bool | None = None,
        failed_permanent: bool | None = None,
    ) -> EntityQuery:
        """Query entities of one type by secondary attributes.

        Args:
            entity_type: Type tag to query
            disease_type: Only entities for this disease
            synced: Only entities with this synced flag
            failed_permanent: Only entities with this failed-permanent flag

        Returns:
            A restartable snapshot query
        """
        filters = {
            "disease_type": disease_type,
            "synced": synced,
            "failed_permanent": failed_permanent,
        }
        return EntityQuery(self, EntityType(entity_type), {k: v for k, v in filters.items() if v is not None})

    async def _fetch_rows(self, entity_type: EntityType, filters: dict[str, Any]) -> list[tuple[Any, ...]]:
        clauses = ["entity_type = ?"]
        params: list[Any] = [entity_type.value]
        for column, value in filters.items():
            clauses.append(f"{column} = ?")
            params.append(value)

        async with self._lock:
            conn = self._require_conn()
            return conn.execute(
                f"SELECT {_ROW_COLUMNS} FROM entities WHERE {' AND '.join(clauses)} ORDER BY created_at, id",
                params,
            ).fetchall()

    def _row_to_entity(self, row: tuple[Any, ...]) -> Entity:
        (
            type_tag,
            entity_id,
            schema_version,
            payload,
            synced,
            failed_permanent,
            sync_attempts,
            last_sync_error,
            next_attempt_at,
        ) = row
        try:
            entity_type = EntityType(type_tag)
            cls = entity_class_for(entity_type)
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise ValueError("payload is not a JSON object")
            data = upgrade_payload(entity_type, schema_version, data)
            if cls.syncable:
                data.update(
                    synced=bool(synced),
                    failed_permanent=bool(failed_permanent),
                    sync_attempts=sync_attempts,
                    last_sync_error=last_sync_error,
                    next_attempt_at=_from_epoch(next_attempt_at),
                )
            return cls.model_validate(data)
        except (ValueError, ValidationError) as e:
            raise CorruptRecordError(str(type_tag), str(entity_id), str(e)) from e

    async def delete(self, entity_type: EntityType, entity_id: str) -> None:
        """Delete an entity. Deleting an absent key is a no-op."""
        async with self._lock:
            conn = self._require_conn()
            conn.execute(
                "DELETE FROM entities WHERE entity_type = ? AND id = ?",
                [EntityType(entity_type).value, entity_id],
            )

    async def delete_older_than(self, entity_type: EntityType, cutoff: datetime) -> int:
        """Delete entities of a type written before ``cutoff``.

        Returns:
            Number of deleted entities
        """
        params = [EntityType(entity_type).value, cutoff.timestamp()]
        async with self._lock:
            conn = self._require_conn()
            conn.begin()
            try:
                count = conn.execute(
                    "SELECT COUNT(*) FROM entities WHERE entity_type = ? AND created_at < ?", params
                ).fetchone()[0]
                conn.execute("DELETE FROM entities WHERE entity_type = ? AND created_at < ?", params)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        if count:
            logger.info(f"Deleted {count} {entity_type.value} records older than {cutoff.isoformat()}")
        return int(count)

    async def update_sync_state(
        self,
        entity_type: EntityType,
        entity_id: str,
        *,
        synced: bool | None = None,
        failed_permanent: bool = _UNSET,
        attempts: int = _UNSET,
        last_error: str | None = _UNSET,
        next_attempt_at: datetime | None = _UNSET,
    ) -> bool:
        """Update the sync-state columns of one syncable entity.

        ``synced`` only moves from false to true; passing ``synced=False`` is
        rejected.

        Returns:
            True if the entity exists and is syncable
        """
        if synced is False:
            raise ValueError("synced can only be set to True")

        assignments: list[str] = []
        params: list[Any] = []
        if synced:
            assignments.append("synced = TRUE")
        if failed_permanent is not _UNSET:
            assignments.append("failed_permanent = ?")
            params.append(failed_permanent)
        if attempts is not _UNSET:
            assignments.append("sync_attempts = ?")
            params.append(attempts)
        if last_error is not _UNSET:
            assignments.append("last_sync_error = ?")
            params.append(last_error)
        if next_attempt_at is not _UNSET:
            assignments.append("next_attempt_at = ?")
            params.append(_to_epoch(next_attempt_at))
        if not assignments:
            return False

        assignments.append("updated_at = ?")
        params.append(datetime.now(UTC).timestamp())
        key = [EntityType(entity_type).value, entity_id]

        async with self._lock:
            conn = self._require_conn()
            exists = conn.execute(
                "SELECT 1 FROM entities WHERE entity_type = ? AND id = ? AND synced IS NOT NULL", key
            ).fetchone()
            if not exists:
                return False
            conn.execute(
                f"UPDATE entities SET {', '.join(assignments)} WHERE entity_type = ? AND id = ?",
                params + key,
            )
        return True

    async def usage_rows(self) -> list[tuple[str, int, int, int, int]]:
        """Aggregate usage per entity type.

        Returns:
            Tuples of (entity_type, count, bytes, pending, failed_permanent)
        """
        async with self._lock:
            conn = self._require_conn()
            rows = conn.execute("""
                SELECT
                    entity_type,
                    COUNT(*),
                    COALESCE(SUM(size_bytes), 0),
                    COUNT(*) FILTER (WHERE synced = FALSE AND NOT failed_permanent),
                    COUNT(*) FILTER (WHERE synced = FALSE AND failed_permanent)
                FROM entities
                GROUP BY entity_type
            """).fetchall()
        return [(r[0], int(r[1]), int(r[2]), int(r[3]), int(r[4])) for r in rows]

    async def close(self) -> None:
        """Close database connection."""
        async with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.info("Local store closed")

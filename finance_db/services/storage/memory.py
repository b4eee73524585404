"""
In-Memory Storage

The default storage of a fresh process: entity collections and audit
events held in dicts. Used until an operator activates a real database,
as the source of the first migration, and by the test suite.

DESIGN DECISION: Column sets, unique columns and defaults come from the
shared table definitions, so memory behaves like the SQL backends for
every case the migration engine cares about (ids assigned on insert,
unique violations, unknown fields).
"""

from typing import Any, Optional
from uuid import UUID

import structlog

from finance_db.models.audit import AuditEvent
from finance_db.models.entities import EntityCollection, Record, RecordId
from finance_db.services.storage import schema
from finance_db.services.storage.interface import (
    AuditStorageInterface,
    ConflictError,
    InvalidRecordError,
    NotFoundError,
    ProviderAdapter,
)


logger = structlog.get_logger(__name__)


class InMemoryAdapter(ProviderAdapter):
    """
    Entity storage in process memory.

    Ids are auto-increment integers per collection, starting at 1.
    Records handed out are copies; mutating them does not touch the store.
    """

    def __init__(self, name: str = "memory"):
        self._name = name
        self._rows: dict[EntityCollection, dict[int, Record]] = {
            collection: {} for collection in EntityCollection
        }
        self._next_id: dict[EntityCollection, int] = {
            collection: 1 for collection in EntityCollection
        }

    @property
    def provider_name(self) -> str:
        return self._name

    def _collection(self, collection: EntityCollection) -> dict[int, Record]:
        return self._rows[EntityCollection(collection)]

    def _find(self, collection: EntityCollection, id: RecordId) -> Record:
        rows = self._collection(collection)
        try:
            key = int(id)
        except (TypeError, ValueError):
            raise NotFoundError(EntityCollection(collection).value, id) from None
        if key not in rows:
            raise NotFoundError(EntityCollection(collection).value, id)
        return rows[key]

    def _check_fields(self, collection: EntityCollection, record: Record) -> None:
        unknown = schema.unknown_fields(collection, record)
        if unknown:
            raise InvalidRecordError(
                f"Unknown fields for {EntityCollection(collection).value}: {', '.join(unknown)}"
            )

    def _check_unique(
        self,
        collection: EntityCollection,
        record: Record,
        skip_id: Optional[int] = None,
    ) -> None:
        for column in schema.unique_columns(collection):
            value = record.get(column)
            if value is None:
                continue
            for row_id, row in self._collection(collection).items():
                if row_id != skip_id and row.get(column) == value:
                    raise ConflictError(
                        f"Duplicate value for {EntityCollection(collection).value}.{column}: {value!r}"
                    )

    async def list(
        self,
        collection: EntityCollection,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[Record]:
        if filter:
            self._check_fields(collection, filter)
        rows = self._collection(collection)
        result = []
        for row_id in sorted(rows):
            row = rows[row_id]
            if filter and any(row.get(k) != v for k, v in filter.items()):
                continue
            result.append(dict(row))
        return result

    async def get(self, collection: EntityCollection, id: RecordId) -> Record:
        return dict(self._find(collection, id))

    async def insert(self, collection: EntityCollection, record: Record) -> Record:
        collection = EntityCollection(collection)
        values = {k: v for k, v in record.items() if k != "id"}
        self._check_fields(collection, values)
        values = schema.apply_defaults(collection, values)
        self._check_unique(collection, values)

        new_id = self._next_id[collection]
        self._next_id[collection] = new_id + 1
        stored = {"id": new_id, **values}
        self._rows[collection][new_id] = stored
        return dict(stored)

    async def update(
        self,
        collection: EntityCollection,
        id: RecordId,
        changes: Record,
    ) -> Record:
        row = self._find(collection, id)
        values = {k: v for k, v in changes.items() if k != "id"}
        self._check_fields(collection, values)
        self._check_unique(collection, values, skip_id=row["id"])
        row.update(values)
        return dict(row)

    async def delete(self, collection: EntityCollection, id: RecordId) -> None:
        row = self._find(collection, id)
        del self._collection(collection)[row["id"]]

    async def ping(self) -> str:
        return "in-memory"

    async def existing_collections(self) -> set[str]:
        return {collection.value for collection in EntityCollection}

    async def prepare(self) -> None:
        return None

    def count(self, collection: EntityCollection) -> int:
        """Number of stored records in a collection."""
        return len(self._collection(collection))


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in memory."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

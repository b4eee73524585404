"""
Identifier Remapping

Identifiers are provider-local: account 7 in the source may become
account 1 in the target. A RemapTable remembers, for one migration run,
which target id every copied source record received, and rewrites the
foreign keys of later records through it.

DESIGN DECISION: A reference that cannot be resolved is an error, never
a silently copied source id. Writing the old id would make the record
point at whatever happens to carry that id in the target.
"""

from typing import Any

from finance_db.models.entities import EntityCollection, Record, RecordId
from finance_db.services.storage import schema


class UnresolvedReferenceError(Exception):
    """A foreign key points at a record that was not copied."""

    def __init__(self, collection: EntityCollection, field: str, source_id: Any):
        super().__init__(
            f"{field} references {EntityCollection(collection).value} "
            f"record {source_id!r}, which was not migrated"
        )
        self.collection = collection
        self.field = field
        self.source_id = source_id


class RemapTable:
    """Source id -> target id, per collection, for one migration run."""

    def __init__(self):
        self._ids: dict[EntityCollection, dict[str, RecordId]] = {}

    @staticmethod
    def _key(source_id: Any) -> str:
        # SQL returns 7, REST filters may hand back "7"; both are the same row.
        return str(source_id)

    def record(self, collection: EntityCollection, source_id: Any, target_id: RecordId) -> None:
        self._ids.setdefault(EntityCollection(collection), {})[self._key(source_id)] = target_id

    def resolve(self, collection: EntityCollection, source_id: Any, field: str = "id") -> RecordId:
        """
        Target id for a source id.

        Raises:
            UnresolvedReferenceError: If that source record was not copied
        """
        try:
            return self._ids[EntityCollection(collection)][self._key(source_id)]
        except KeyError:
            raise UnresolvedReferenceError(collection, field, source_id) from None

    def count(self, collection: EntityCollection) -> int:
        return len(self._ids.get(EntityCollection(collection), {}))

    def translate(
        self,
        collection: EntityCollection,
        record: Record,
    ) -> tuple[Record, dict[str, Any]]:
        """
        Prepare a source record for insertion into the target.

        The id is dropped and every foreign key is rewritten to its target
        id. Self-references cannot be resolved yet (the parent may not be
        copied), so they are set to None and returned separately.

        Returns:
            (values to insert, {self-referencing field: source id})

        Raises:
            UnresolvedReferenceError: A foreign key points at an uncopied record
        """
        collection = EntityCollection(collection)
        values = {k: v for k, v in record.items() if k != "id"}
        deferred = {}

        for field, referenced in schema.references(collection).items():
            source_ref = values.get(field)
            if source_ref is None:
                continue
            if referenced == collection:
                deferred[field] = source_ref
                values[field] = None
            else:
                values[field] = self.resolve(referenced, source_ref, field)

        return values, deferred

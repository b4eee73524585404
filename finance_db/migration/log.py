"""
Migration Log

Keeps every MigrationRecord for the lifetime of the process so the admin
surface can poll a running migration and list past ones.

DESIGN DECISION: The log lives in memory. A migration interrupted by a
process restart is lost together with its record; nothing resumes it.
"""

import threading
from typing import Optional

from finance_db.models.database import MigrationRecord, MigrationStatus


class MigrationLog:
    """In-memory store of migration records."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, MigrationRecord] = {}

    def add(self, record: MigrationRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def get(self, migration_id: str) -> MigrationRecord:
        """
        Snapshot of a migration record.

        Raises:
            MigrationNotFoundError: If the id is unknown
        """
        with self._lock:
            try:
                return self._records[migration_id].model_copy(deep=True)
            except KeyError:
                raise MigrationNotFoundError(migration_id) from None

    def records(self) -> list[MigrationRecord]:
        """Snapshots of all records, newest first."""
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.started_at, reverse=True)
            return [r.model_copy(deep=True) for r in records]

    def running(self) -> Optional[MigrationRecord]:
        """The migration that is pending or in progress, if any."""
        with self._lock:
            for record in self._records.values():
                if record.status in (MigrationStatus.PENDING, MigrationStatus.IN_PROGRESS):
                    return record.model_copy(deep=True)
            return None


class MigrationNotFoundError(Exception):
    """No migration has this id."""

    def __init__(self, migration_id: str):
        super().__init__(f"Migration {migration_id!r} not found")
        self.migration_id = migration_id

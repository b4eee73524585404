"""
Migration Engine

Copies every record from one storage backend to another.

Flow:
1. Begin   -> Reject if the target is untested or a migration is running
2. Prepare -> Create the schema in the target (failure here is fatal)
3. Copy    -> Collections in dependency order; records within a
              collection concurrently, foreign keys remapped
4. Patch   -> Self-references (category parents) once their collection is in
5. Finish  -> completed if nothing failed, failed with a summary otherwise

DESIGN DECISION: A single bad record never aborts the run. Record-level
failures (conflicts, unresolved references, backend errors) are collected
with the collection and source id, and reported at the end. The operator
gets everything that could be copied plus an exact list of what could not.

Only one migration runs per process. The check for a running migration
and the creation of the new record happen under one lock, so two
simultaneous requests cannot both start.
"""

import asyncio
import threading
from typing import Any, Callable, Optional, Union

import structlog
from sqlalchemy.exc import ArgumentError

from finance_db.audit import AuditLogger
from finance_db.config.settings import StorageSettings
from finance_db.migration.log import MigrationLog
from finance_db.migration.remap import RemapTable, UnresolvedReferenceError
from finance_db.models.database import DatabaseConfiguration, MigrationRecord
from finance_db.models.entities import MIGRATION_ORDER, EntityCollection, Record
from finance_db.services.providers import create_adapter
from finance_db.services.registry import NotConnectedError
from finance_db.services.storage import ProviderAdapter, StorageError


logger = structlog.get_logger(__name__)

AdapterFactory = Callable[[DatabaseConfiguration], ProviderAdapter]


class MigrationEngine:
    """
    Runs migrations between database configurations.

    Args:
        default_storage: The in-process storage used when no source is given
        log: Where migration records are kept
        settings: Fan-out and error-preview limits
        adapter_factory: Opens an adapter for a configuration
        audit_logger: Receives migration started/finished events
    """

    def __init__(
        self,
        default_storage: ProviderAdapter,
        log: Optional[MigrationLog] = None,
        settings: Optional[StorageSettings] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._default_storage = default_storage
        self._log = log or MigrationLog()
        self._settings = settings or StorageSettings()
        self._adapter_factory = adapter_factory or (
            lambda config: create_adapter(config, self._settings)
        )
        self._audit = audit_logger or AuditLogger()
        self._guard = threading.Lock()
        # Live records of runs started here; the log hands out snapshots.
        self._live: dict[str, MigrationRecord] = {}

    @property
    def log(self) -> MigrationLog:
        return self._log

    # =========================================================================
    # BEGIN
    # =========================================================================

    def begin(
        self,
        target_config: DatabaseConfiguration,
        source_config: Optional[DatabaseConfiguration] = None,
    ) -> MigrationRecord:
        """
        Validate a migration request and register it as in progress.

        Returns at once; call run() to copy the data.

        Raises:
            NotConnectedError: The target's last connection test did not pass
            MigrationInProgressError: Another migration is running
        """
        if not target_config.is_connected:
            raise NotConnectedError(target_config.id)

        with self._guard:
            running = self._log.running()
            if running is not None:
                raise MigrationInProgressError(running.id)

            record = MigrationRecord(
                from_provider=source_config.provider if source_config else None,
                to_provider=target_config.provider,
                migration_details={
                    "source_configuration_id": source_config.id if source_config else None,
                    "target_configuration_id": target_config.id,
                },
            )
            self._log.add(record)
            record.start()
            self._live[record.id] = record

        logger.info(
            "migration_started",
            migration_id=record.id,
            from_provider=record.from_provider.value if record.from_provider else None,
            to_provider=record.to_provider.value,
        )
        return record.model_copy(deep=True)

    # =========================================================================
    # RUN
    # =========================================================================

    async def run(
        self,
        migration: Union[MigrationRecord, str],
        target_config: DatabaseConfiguration,
        source_config: Optional[DatabaseConfiguration] = None,
    ) -> MigrationRecord:
        """
        Copy all data for a migration created by begin().

        Record-level problems are collected, not raised. The returned
        record is terminal.
        """
        migration_id = migration if isinstance(migration, str) else migration.id
        record = self._live[migration_id]
        await self._audit.log_migration_started(record)

        opened: list[ProviderAdapter] = []
        try:
            try:
                target = self._adapter_factory(target_config)
                opened.append(target)
                if source_config is None:
                    source = self._default_storage
                else:
                    source = self._adapter_factory(source_config)
                    opened.append(source)
            except (ArgumentError, ValueError) as e:
                record.fail(f"Could not open adapters: {e}")
                return await self._finish(record)

            try:
                await target.prepare()
            except StorageError as e:
                record.fail(f"Target schema preparation failed: {e}")
                return await self._finish(record)

            await self._copy_all(record, source, target)
            return await self._finish(record)

        except Exception as e:
            if not record.is_terminal:
                record.fail(f"Unexpected error: {e}")
                await self._finish(record)
            raise
        finally:
            for adapter in opened:
                await adapter.close()
            self._live.pop(migration_id, None)

    async def migrate(
        self,
        target_config: DatabaseConfiguration,
        source_config: Optional[DatabaseConfiguration] = None,
    ) -> MigrationRecord:
        """begin() and run() in one call."""
        record = self.begin(target_config, source_config)
        return await self.run(record, target_config, source_config)

    # =========================================================================
    # COPY
    # =========================================================================

    def _fan_out(self, target: ProviderAdapter) -> int:
        limit = self._settings.migration_fan_out
        if target.max_concurrency is not None:
            limit = min(limit, target.max_concurrency)
        return max(1, limit)

    async def _copy_all(
        self,
        record: MigrationRecord,
        source: ProviderAdapter,
        target: ProviderAdapter,
    ) -> None:
        remap = RemapTable()
        failures: list[dict[str, Any]] = []
        counts: dict[str, dict[str, int]] = {}

        for collection in MIGRATION_ORDER:
            counts[collection.value] = await self._copy_collection(
                record, source, target, collection, remap, failures
            )

        record.migration_details["collections"] = counts
        record.migration_details["failures"] = failures

    async def _copy_collection(
        self,
        record: MigrationRecord,
        source: ProviderAdapter,
        target: ProviderAdapter,
        collection: EntityCollection,
        remap: RemapTable,
        failures: list[dict[str, Any]],
    ) -> dict[str, int]:
        # migrated + failed == source; a migrated record whose self-reference
        # could not be patched is counted under patch_failed instead.
        stats = {"source": 0, "migrated": 0, "failed": 0, "patch_failed": 0}

        def _failed(source_id: Any, error: Exception, stage: str = "copy") -> None:
            if stage == "copy":
                stats["failed"] += 1
            elif stage == "patch":
                stats["patch_failed"] += 1
            failures.append({
                "collection": collection.value,
                "source_id": source_id,
                "stage": stage,
                "error": str(error),
            })
            logger.warning(
                "migration_record_failed",
                migration_id=record.id,
                collection=collection.value,
                source_id=source_id,
                stage=stage,
                error=str(error),
            )

        try:
            rows = await source.list(collection)
        except StorageError as e:
            _failed(None, StorageError(f"Could not list source collection: {e}"), stage="list")
            return stats

        stats["source"] = len(rows)
        semaphore = asyncio.Semaphore(self._fan_out(target))
        patches: list[tuple[Any, Any, dict[str, Any]]] = []

        async def _copy_one(row: Record) -> None:
            async with semaphore:
                try:
                    values, deferred = remap.translate(collection, row)
                    stored = await target.insert(collection, values)
                except (StorageError, UnresolvedReferenceError) as e:
                    _failed(row.get("id"), e)
                    return
            remap.record(collection, row["id"], stored["id"])
            record.add_migrated()
            stats["migrated"] += 1
            if deferred:
                patches.append((row["id"], stored["id"], deferred))

        await asyncio.gather(*(_copy_one(row) for row in rows))

        for source_id, target_id, deferred in patches:
            try:
                changes = {
                    field: remap.resolve(collection, source_ref, field)
                    for field, source_ref in deferred.items()
                }
                await target.update(collection, target_id, changes)
            except (StorageError, UnresolvedReferenceError) as e:
                _failed(source_id, e, stage="patch")

        logger.info(
            "migration_collection_copied",
            migration_id=record.id,
            collection=collection.value,
            **stats,
        )
        return stats

    # =========================================================================
    # FINISH
    # =========================================================================

    async def _finish(self, record: MigrationRecord) -> MigrationRecord:
        if not record.is_terminal:
            failures = record.migration_details.get("failures", [])
            if failures:
                preview = failures[: self._settings.migration_error_preview]
                summary = "; ".join(
                    f"{f['collection']}#{f['source_id']}: {f['error']}" for f in preview
                )
                record.fail(
                    f"{len(failures)} record(s) failed to migrate; first failures: {summary}"
                )
            else:
                record.complete()

        logger.info(
            "migration_finished",
            migration_id=record.id,
            status=record.status.value,
            records_migrated=record.records_migrated,
        )
        await self._audit.log_migration_finished(record)
        return record.model_copy(deep=True)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class MigrationError(Exception):
    """Base exception for migration operations."""
    pass


class MigrationInProgressError(MigrationError):
    """Another migration is already running in this process."""

    def __init__(self, migration_id: str):
        super().__init__(f"Migration {migration_id} is already in progress")
        self.migration_id = migration_id

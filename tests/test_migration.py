"""
Tests for the migration engine.

Most runs copy between two InMemoryAdapters. The target is pre-seeded so
its ids are shifted against the source, which makes a copied-instead-of-
remapped foreign key visible.
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from conftest import make_target_config, seed_finance_data
from finance_db.audit import AuditLogger
from finance_db.migration import (
    MigrationEngine,
    MigrationInProgressError,
    RemapTable,
    UnresolvedReferenceError,
)
from finance_db.models.audit import AuditEventType
from finance_db.models.database import MigrationStatus
from finance_db.models.entities import MIGRATION_ORDER, EntityCollection
from finance_db.services.providers import create_adapter
from finance_db.services.registry import NotConnectedError
from finance_db.services.storage import (
    ConflictError,
    InMemoryAdapter,
    InMemoryAuditStorage,
    StorageError,
    UnavailableError,
)
from finance_db.services.storage import schema


USERS = EntityCollection.USERS
ACCOUNTS = EntityCollection.ACCOUNTS
CATEGORIES = EntityCollection.CATEGORIES
PRODUCTS = EntityCollection.PRODUCTS
TRANSACTIONS = EntityCollection.TRANSACTIONS


class FailingPrepareAdapter(InMemoryAdapter):
    async def prepare(self) -> None:
        raise StorageError("permission denied for schema public")


class BrokenListAdapter(InMemoryAdapter):
    """Source whose products collection cannot be read."""

    async def list(self, collection, filter=None):
        if EntityCollection(collection) == PRODUCTS:
            raise UnavailableError("products timed out")
        return await super().list(collection, filter)


class CountingTarget(InMemoryAdapter):
    """Records the most inserts it ever had in flight at once."""

    def __init__(self, max_concurrency=None):
        super().__init__(name="target")
        self.max_concurrency = max_concurrency
        self.in_flight = 0
        self.peak = 0

    async def insert(self, collection, record):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().insert(collection, record)
        finally:
            self.in_flight -= 1


class ConflictingTarget(InMemoryAdapter):
    """Refuses transactions with the given descriptions."""

    def __init__(self, rejected):
        super().__init__(name="target")
        self.rejected = set(rejected)

    async def insert(self, collection, record):
        if EntityCollection(collection) == TRANSACTIONS and record["description"] in self.rejected:
            raise ConflictError(f"duplicate transaction {record['description']}")
        return await super().insert(collection, record)


class PatchRejectingTarget(InMemoryAdapter):
    """Accepts inserts but fails every update."""

    async def update(self, collection, id, changes):
        raise UnavailableError("connection reset during update")


async def _shifted_target() -> InMemoryAdapter:
    """A target that already holds rows, so new ids do not match the source."""
    target = InMemoryAdapter(name="target")
    for i in range(2):
        user = await target.insert(USERS, {
            "username": f"existing-{i}",
            "email": f"existing-{i}@example.com",
            "password_hash": "x",
        })
    for i in range(4):
        await target.insert(ACCOUNTS, {"user_id": user["id"], "name": f"old-{i}", "type": "savings"})
        await target.insert(CATEGORIES, {"user_id": user["id"], "name": f"old-{i}", "type": "income"})
    return target


def _engine(source, target, settings, audit_logger=None) -> MigrationEngine:
    return MigrationEngine(
        default_storage=source,
        settings=settings,
        adapter_factory=lambda config: target,
        audit_logger=audit_logger,
    )


async def _dangling_references(adapter: InMemoryAdapter) -> list[str]:
    dangling = []
    for collection in MIGRATION_ORDER:
        for row in await adapter.list(collection):
            for field, referenced in schema.references(collection).items():
                ref = row.get(field)
                if ref is None:
                    continue
                ids = {r["id"] for r in await adapter.list(referenced)}
                if ref not in ids:
                    dangling.append(f"{collection.value}#{row['id']}.{field}={ref}")
    return dangling


class TestRemapTable:
    """Tests for identifier translation."""

    def test_string_and_int_ids_are_the_same_key(self):
        remap = RemapTable()
        remap.record(ACCOUNTS, 7, 1)
        assert remap.resolve(ACCOUNTS, "7") == 1
        assert remap.count(ACCOUNTS) == 1

    def test_translate_rewrites_and_defers(self):
        remap = RemapTable()
        remap.record(USERS, 1, 10)
        values, deferred = remap.translate(CATEGORIES, {
            "id": 5, "user_id": 1, "parent_id": 4, "name": "Groceries",
        })
        assert values == {"user_id": 10, "parent_id": None, "name": "Groceries"}
        assert deferred == {"parent_id": 4}

    def test_unknown_reference(self):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            RemapTable().translate(TRANSACTIONS, {"id": 1, "user_id": 3, "account_id": 9})
        assert exc_info.value.field == "user_id"


class TestMigrationRun:
    """Tests for copying data."""

    @pytest.mark.asyncio
    async def test_foreign_keys_follow_remapped_ids(self, storage_settings):
        """Test 3 accounts and 5 transactions land linked to the right accounts."""
        source = InMemoryAdapter()
        user = await source.insert(USERS, {"username": "asha", "email": "a@example.com", "password_hash": "x"})
        accounts = [
            await source.insert(ACCOUNTS, {"user_id": user["id"], "name": name, "type": "checking"})
            for name in ("Checking", "Savings", "Card")
        ]
        plan = [0, 1, 2, 2, 0]
        for n, index in enumerate(plan):
            await source.insert(TRANSACTIONS, {
                "user_id": user["id"],
                "account_id": accounts[index]["id"],
                "amount": Decimal(n + 1),
                "description": f"t{n}",
                "date": date(2024, 1, n + 1),
                "type": "expense",
            })
        target = await _shifted_target()

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        assert record.status == MigrationStatus.COMPLETED
        assert record.records_migrated == 1 + 3 + 5
        account_names = {a["id"]: a["name"] for a in await target.list(ACCOUNTS)}
        copied = await target.list(TRANSACTIONS)
        assert len(copied) == 5
        by_description = {t["description"]: account_names[t["account_id"]] for t in copied}
        assert by_description == {
            "t0": "Checking",
            "t1": "Savings",
            "t2": "Card",
            "t3": "Card",
            "t4": "Checking",
        }
        new_user = (await target.list(USERS, {"username": "asha"}))[0]
        assert all(t["user_id"] == new_user["id"] for t in copied)
        assert new_user["id"] != user["id"]

    @pytest.mark.asyncio
    async def test_full_data_set_without_dangling_references(self, storage_settings):
        source = InMemoryAdapter()
        counts = await seed_finance_data(source)
        target = await _shifted_target()
        before = {c: target.count(c) for c in EntityCollection}

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        assert record.status == MigrationStatus.COMPLETED
        assert record.error_message is None
        assert record.records_migrated == sum(counts.values())
        for collection in EntityCollection:
            assert target.count(collection) == before[collection] + counts[collection.value]
            assert record.migration_details["collections"][collection.value]["migrated"] == counts[collection.value]
        assert record.migration_details["failures"] == []
        assert await _dangling_references(target) == []

    @pytest.mark.asyncio
    async def test_category_parent_patched(self, storage_settings):
        source = InMemoryAdapter()
        await seed_finance_data(source)
        target = await _shifted_target()

        await _engine(source, target, storage_settings).migrate(make_target_config())

        food = (await target.list(CATEGORIES, {"name": "Food"}))[0]
        groceries = (await target.list(CATEGORIES, {"name": "Groceries"}))[0]
        assert food["parent_id"] is None
        assert groceries["parent_id"] == food["id"]

    @pytest.mark.asyncio
    async def test_conflicts_fail_the_run_but_copy_the_rest(self, storage_settings):
        """Test 2 of 5 products colliding on barcode leaves 3 copied."""
        source = InMemoryAdapter()
        for i in range(5):
            await source.insert(PRODUCTS, {"name": f"p{i}", "barcode": f"code-{i}"})
        target = InMemoryAdapter(name="target")
        await target.insert(PRODUCTS, {"name": "taken", "barcode": "code-1"})
        await target.insert(PRODUCTS, {"name": "taken", "barcode": "code-3"})

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        assert record.status == MigrationStatus.FAILED
        assert record.records_migrated == 3
        assert record.error_message.startswith("2 record(s) failed to migrate")
        failures = record.migration_details["failures"]
        assert sorted(f["source_id"] for f in failures) == [2, 4]
        assert all(f["collection"] == "products" for f in failures)
        assert target.count(PRODUCTS) == 5
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_error_message_previews_first_failures(self, storage_settings):
        storage_settings.migration_error_preview = 1
        source = InMemoryAdapter()
        target = InMemoryAdapter(name="target")
        for i in range(3):
            await source.insert(PRODUCTS, {"name": f"p{i}", "barcode": f"code-{i}"})
            await target.insert(PRODUCTS, {"name": "taken", "barcode": f"code-{i}"})

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        assert record.error_message.startswith("3 record(s) failed to migrate; first failures: products#")
        assert record.error_message.count("products#") == 1

    @pytest.mark.asyncio
    async def test_unresolved_reference_is_a_record_failure(self, storage_settings):
        source = InMemoryAdapter()
        user = await source.insert(USERS, {"username": "asha", "email": "a@example.com", "password_hash": "x"})
        await source.insert(TRANSACTIONS, {
            "user_id": user["id"],
            "account_id": 99,
            "amount": Decimal("5"),
            "description": "orphan",
            "date": date(2024, 1, 1),
            "type": "expense",
        })
        target = InMemoryAdapter(name="target")

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        assert record.status == MigrationStatus.FAILED
        assert record.records_migrated == 1
        assert "account_id references accounts record 99" in record.error_message
        assert target.count(TRANSACTIONS) == 0

    @pytest.mark.asyncio
    async def test_unreadable_collection_is_skipped(self, storage_settings):
        source = BrokenListAdapter()
        await seed_finance_data(source)
        target = InMemoryAdapter(name="target")

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        assert record.status == MigrationStatus.FAILED
        assert record.records_migrated == 10
        failures = record.migration_details["failures"]
        assert failures == [{
            "collection": "products",
            "source_id": None,
            "stage": "list",
            "error": "Could not list source collection: products timed out",
        }]
        assert target.count(TRANSACTIONS) == 1

    @pytest.mark.asyncio
    async def test_prepare_failure_is_fatal(self, storage_settings):
        source = InMemoryAdapter()
        await seed_finance_data(source)
        target = FailingPrepareAdapter(name="target")

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        assert record.status == MigrationStatus.FAILED
        assert record.records_migrated == 0
        assert record.error_message.startswith("Target schema preparation failed")
        assert target.count(USERS) == 0

    @pytest.mark.asyncio
    async def test_memory_to_sqlite(self, storage_settings, sqlite_config):
        source = InMemoryAdapter()
        counts = await seed_finance_data(source)
        engine = MigrationEngine(default_storage=source, settings=storage_settings)

        record = await engine.migrate(sqlite_config)

        assert record.status == MigrationStatus.COMPLETED, record.error_message
        assert record.to_provider == sqlite_config.provider
        assert record.from_provider is None

        target = create_adapter(sqlite_config, storage_settings)
        try:
            for collection in EntityCollection:
                assert len(await target.list(collection)) == counts[collection.value]
            transaction = (await target.list(TRANSACTIONS))[0]
            assert transaction["amount"] == Decimal("54.20")
            assert transaction["date"] == date(2024, 3, 2)
        finally:
            await target.close()


class TestMigrationFailures:
    """Tests for partial failures and how they are counted."""

    @pytest.mark.asyncio
    async def test_two_of_five_transactions_conflict(self, storage_settings):
        source = InMemoryAdapter()
        user = await source.insert(USERS, {"username": "asha", "email": "a@example.com", "password_hash": "x"})
        account = await source.insert(ACCOUNTS, {"user_id": user["id"], "name": "Checking", "type": "checking"})
        for i in range(5):
            await source.insert(TRANSACTIONS, {
                "user_id": user["id"],
                "account_id": account["id"],
                "amount": Decimal("10"),
                "description": f"t{i}",
                "date": date(2024, 1, i + 1),
                "type": "expense",
            })
        target = ConflictingTarget(rejected={"t1", "t3"})

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        assert record.status == MigrationStatus.FAILED
        assert record.records_migrated == 1 + 1 + 3
        assert record.error_message.startswith("2 record(s) failed to migrate")
        assert record.migration_details["collections"]["transactions"] == {
            "source": 5, "migrated": 3, "failed": 2, "patch_failed": 0,
        }
        assert sorted(f["source_id"] for f in record.migration_details["failures"]) == [2, 4]
        assert sorted(t["description"] for t in await target.list(TRANSACTIONS)) == ["t0", "t2", "t4"]

    @pytest.mark.asyncio
    async def test_failed_patch_is_not_counted_twice(self, storage_settings):
        source = InMemoryAdapter()
        await seed_finance_data(source)
        target = PatchRejectingTarget(name="target")

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        categories = record.migration_details["collections"]["categories"]
        assert categories == {"source": 2, "migrated": 2, "failed": 0, "patch_failed": 1}
        for stats in record.migration_details["collections"].values():
            assert stats["migrated"] + stats["failed"] == stats["source"]
        assert record.status == MigrationStatus.FAILED
        assert [f["stage"] for f in record.migration_details["failures"]] == ["patch"]


class TestFanOut:
    """Tests for how many inserts run at once."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target_limit,expected_peak", [
        (None, 4),
        (10, 4),
        (2, 2),
        (1, 1),
    ])
    async def test_bounded_by_settings_and_target(self, storage_settings, target_limit, expected_peak):
        storage_settings.migration_fan_out = 4
        source = InMemoryAdapter()
        for i in range(12):
            await source.insert(PRODUCTS, {"name": f"p{i}"})
        target = CountingTarget(max_concurrency=target_limit)

        record = await _engine(source, target, storage_settings).migrate(make_target_config())

        assert record.status == MigrationStatus.COMPLETED
        assert target.count(PRODUCTS) == 12
        assert target.peak == expected_peak


class TestMigrationLifecycle:
    """Tests for begin/run bookkeeping."""

    def test_untested_target_rejected(self, storage_settings):
        target_config = make_target_config()
        target_config.is_connected = False
        engine = _engine(InMemoryAdapter(), InMemoryAdapter(), storage_settings)

        with pytest.raises(NotConnectedError):
            engine.begin(target_config)
        assert engine.log.records() == []

    @pytest.mark.asyncio
    async def test_only_one_migration_at_a_time(self, storage_settings):
        engine = _engine(InMemoryAdapter(), InMemoryAdapter(name="target"), storage_settings)
        target_config = make_target_config()

        first = engine.begin(target_config)
        assert first.status == MigrationStatus.IN_PROGRESS
        with pytest.raises(MigrationInProgressError) as exc_info:
            engine.begin(target_config)
        assert exc_info.value.migration_id == first.id

        finished = await engine.run(first.id, target_config)
        assert finished.status == MigrationStatus.COMPLETED

        second = engine.begin(target_config)
        await engine.run(second, target_config)
        assert [r.id for r in engine.log.records()] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_log_tracks_the_live_record(self, storage_settings):
        source = InMemoryAdapter()
        await seed_finance_data(source)
        engine = _engine(source, InMemoryAdapter(name="target"), storage_settings)
        target_config = make_target_config()

        record = engine.begin(target_config)
        assert engine.log.running().id == record.id
        await engine.run(record, target_config)

        stored = engine.log.get(record.id)
        assert stored.status == MigrationStatus.COMPLETED
        assert stored.records_migrated == 11
        assert stored.migration_details["target_configuration_id"] == target_config.id
        assert stored.migration_details["source_configuration_id"] is None
        assert engine.log.running() is None

    @pytest.mark.asyncio
    async def test_audit_trail(self, storage_settings):
        audit_storage = InMemoryAuditStorage()
        engine = _engine(
            InMemoryAdapter(),
            InMemoryAdapter(name="target"),
            storage_settings,
            audit_logger=AuditLogger(audit_storage),
        )

        record = await engine.migrate(make_target_config())

        events = await audit_storage.get_events_by_entity("migration", record.id)
        assert [e.event_type for e in events] == [
            AuditEventType.MIGRATION_STARTED,
            AuditEventType.MIGRATION_COMPLETED,
        ]

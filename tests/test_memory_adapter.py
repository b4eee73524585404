"""Tests for in-memory storage."""

from uuid import uuid4

import pytest

from finance_db.models.audit import AuditEvent, AuditEventType
from finance_db.models.entities import EntityCollection
from finance_db.services.storage import (
    ConflictError,
    InMemoryAdapter,
    InMemoryAuditStorage,
    InvalidRecordError,
    NotFoundError,
)


USERS = EntityCollection.USERS
PRODUCTS = EntityCollection.PRODUCTS


def _user(name: str) -> dict:
    return {"username": name, "email": f"{name}@example.com", "password_hash": "x"}


class TestInMemoryAdapter:
    """Tests for the default entity storage."""

    @pytest.mark.asyncio
    async def test_ids_start_at_one_per_collection(self):
        adapter = InMemoryAdapter()
        first = await adapter.insert(USERS, _user("a"))
        second = await adapter.insert(USERS, _user("b"))
        product = await adapter.insert(PRODUCTS, {"name": "Milk"})

        assert (first["id"], second["id"], product["id"]) == (1, 2, 1)

    @pytest.mark.asyncio
    async def test_insert_ignores_given_id_and_fills_defaults(self):
        adapter = InMemoryAdapter()
        stored = await adapter.insert(USERS, {"id": 99, **_user("a")})

        assert stored["id"] == 1
        assert stored["role"] == "user"
        assert stored["is_active"] is True
        assert stored["first_name"] is None
        assert stored["created_at"] is not None

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self):
        adapter = InMemoryAdapter()
        with pytest.raises(InvalidRecordError):
            await adapter.insert(USERS, {**_user("a"), "nickname": "al"})

    @pytest.mark.asyncio
    async def test_unique_violation(self):
        adapter = InMemoryAdapter()
        await adapter.insert(PRODUCTS, {"name": "Milk", "barcode": "123"})
        with pytest.raises(ConflictError):
            await adapter.insert(PRODUCTS, {"name": "Other milk", "barcode": "123"})
        # Missing values never conflict
        await adapter.insert(PRODUCTS, {"name": "Bread"})
        await adapter.insert(PRODUCTS, {"name": "Eggs"})
        assert adapter.count(PRODUCTS) == 3

    @pytest.mark.asyncio
    async def test_get_update_delete(self):
        adapter = InMemoryAdapter()
        user = await adapter.insert(USERS, _user("a"))

        updated = await adapter.update(USERS, user["id"], {"first_name": "Asha"})
        assert updated["first_name"] == "Asha"
        assert (await adapter.get(USERS, str(user["id"])))["first_name"] == "Asha"

        await adapter.delete(USERS, user["id"])
        with pytest.raises(NotFoundError):
            await adapter.get(USERS, user["id"])
        with pytest.raises(NotFoundError):
            await adapter.delete(USERS, user["id"])

    @pytest.mark.asyncio
    async def test_update_to_duplicate_conflicts(self):
        adapter = InMemoryAdapter()
        await adapter.insert(USERS, _user("a"))
        b = await adapter.insert(USERS, _user("b"))
        with pytest.raises(ConflictError):
            await adapter.update(USERS, b["id"], {"username": "a"})
        # Re-saving its own value is fine
        await adapter.update(USERS, b["id"], {"username": "b"})

    @pytest.mark.asyncio
    async def test_non_numeric_id_not_found(self):
        with pytest.raises(NotFoundError):
            await InMemoryAdapter().get(USERS, "abc")

    @pytest.mark.asyncio
    async def test_list_filters_and_returns_copies(self):
        adapter = InMemoryAdapter()
        await adapter.insert(PRODUCTS, {"name": "Milk", "brand": "Farm"})
        await adapter.insert(PRODUCTS, {"name": "Cheese", "brand": "Farm"})
        await adapter.insert(PRODUCTS, {"name": "Bread", "brand": "Bakery"})

        farm = await adapter.list(PRODUCTS, {"brand": "Farm"})
        assert [p["name"] for p in farm] == ["Milk", "Cheese"]

        farm[0]["name"] = "changed"
        assert (await adapter.get(PRODUCTS, 1))["name"] == "Milk"

    @pytest.mark.asyncio
    async def test_unknown_filter_field_rejected(self):
        adapter = InMemoryAdapter()
        await adapter.insert(PRODUCTS, {"name": "Milk"})
        with pytest.raises(InvalidRecordError):
            await adapter.list(PRODUCTS, {"colour": "white"})

    @pytest.mark.asyncio
    async def test_has_every_collection(self):
        adapter = InMemoryAdapter()
        assert await adapter.existing_collections() == {c.value for c in EntityCollection}
        assert await adapter.ping() == "in-memory"


class TestInMemoryAuditStorage:
    """Tests for in-memory audit storage."""

    @pytest.mark.asyncio
    async def test_queries(self):
        storage = InMemoryAuditStorage()
        correlation_id = uuid4()
        for i in range(3):
            await storage.append_event(AuditEvent(
                event_type=AuditEventType.CONFIGURATION_UPDATED,
                correlation_id=correlation_id if i < 2 else None,
                entity_type="database_configuration",
                entity_id="cfg-1",
                description=f"update {i}",
            ))

        assert len(await storage.get_events_by_correlation_id(correlation_id)) == 2
        assert len(await storage.get_events_by_entity("database_configuration", "cfg-1")) == 3
        assert len(await storage.get_recent_events(limit=1)) == 1

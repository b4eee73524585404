"""
Shared Table Definitions

One SQLAlchemy Core MetaData describes every collection. The SQL adapter
creates and queries these tables on every dialect; the in-memory adapter
reads the same definitions for column sets, unique columns and defaults;
the migration engine derives its foreign-key map from them.

DESIGN DECISION: Foreign keys are declared once, here. Nothing else keeps
its own list of which column points where.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

from finance_db.models.entities import EntityCollection, Record


def _now() -> datetime:
    return datetime.now(timezone.utc)


metadata = MetaData()


def _id() -> Column:
    return Column("id", Integer, primary_key=True, autoincrement=True)


def _created_at() -> Column:
    return Column("created_at", DateTime(timezone=True), default=_now)


def _user_ref(nullable: bool = False) -> Column:
    return Column("user_id", Integer, ForeignKey("users.id"), nullable=nullable)


users = Table(
    "users", metadata,
    _id(),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("profile_image_url", String(1024)),
    Column("role", String(20), nullable=False, default="user"),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("is_email_verified", Boolean, nullable=False, default=False),
    Column("email_verification_token", String(255)),
    Column("password_reset_token", String(255)),
    Column("password_reset_expires", DateTime(timezone=True)),
    Column("last_login_at", DateTime(timezone=True)),
    _created_at(),
    Column("updated_at", DateTime(timezone=True), default=_now),
)

categories = Table(
    "categories", metadata,
    _id(),
    _user_ref(),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),  # income | expense
    Column("color", String(7), default="#0F766E"),
    Column("parent_id", Integer, ForeignKey("categories.id")),
    Column("is_default", Boolean, default=False),
)

accounts = Table(
    "accounts", metadata,
    _id(),
    _user_ref(),
    Column("name", String(255), nullable=False),
    Column("type", String(50), nullable=False),  # checking | savings | credit | investment
    Column("balance", Numeric(10, 2), nullable=False, default=0),
    Column("is_active", Boolean, default=True),
    _created_at(),
)

products = Table(
    "products", metadata,
    _id(),
    Column("name", String(255), nullable=False),
    Column("barcode", String(64), unique=True),
    Column("category", String(255)),
    Column("brand", String(255)),
    Column("last_price", Numeric(10, 2)),
    Column("average_price", Numeric(10, 2)),
    _created_at(),
)

transactions = Table(
    "transactions", metadata,
    _id(),
    _user_ref(),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("description", Text, nullable=False),
    Column("notes", Text),
    Column("date", Date, nullable=False),
    Column("type", String(20), nullable=False),  # income | expense | transfer
    _created_at(),
)

budgets = Table(
    "budgets", metadata,
    _id(),
    _user_ref(),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("period", String(20), nullable=False, default="monthly"),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("is_active", Boolean, default=True),
    _created_at(),
)

goals = Table(
    "goals", metadata,
    _id(),
    _user_ref(),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("target_amount", Numeric(10, 2), nullable=False),
    Column("current_amount", Numeric(10, 2), default=0),
    Column("target_date", Date),
    Column("is_completed", Boolean, default=False),
    _created_at(),
)

bills = Table(
    "bills", metadata,
    _id(),
    _user_ref(),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("name", String(255), nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("due_date", Date, nullable=False),
    Column("frequency", String(20), nullable=False),  # monthly | weekly | yearly | one-time
    Column("is_recurring", Boolean, default=True),
    Column("is_paid", Boolean, default=False),
    Column("notes", Text),
    _created_at(),
)

system_config = Table(
    "system_config", metadata,
    _id(),
    Column("key", String(255), nullable=False, unique=True),
    Column("value", Text),
    Column("description", Text),
    Column("category", String(50), nullable=False, default="general"),
    Column("is_public", Boolean, default=False),
    Column("updated_by", Integer, ForeignKey("users.id")),
    Column("updated_at", DateTime(timezone=True), default=_now),
)

activity_logs = Table(
    "activity_logs", metadata,
    _id(),
    _user_ref(nullable=True),
    Column("action", String(255), nullable=False),
    Column("resource", String(255)),
    Column("resource_id", String(255)),
    Column("details", Text),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    _created_at(),
)


TABLES: dict[EntityCollection, Table] = {
    collection: metadata.tables[collection.value]
    for collection in EntityCollection
}


def table_for(collection: EntityCollection) -> Table:
    return TABLES[EntityCollection(collection)]


def column_names(collection: EntityCollection) -> frozenset[str]:
    return frozenset(c.name for c in table_for(collection).columns)


def unique_columns(collection: EntityCollection) -> tuple[str, ...]:
    return tuple(c.name for c in table_for(collection).columns if c.unique)


def references(collection: EntityCollection) -> dict[str, EntityCollection]:
    """
    Foreign-key fields of a collection.

    Returns:
        Mapping of column name -> referenced collection
    """
    refs = {}
    for column in table_for(collection).columns:
        for fk in column.foreign_keys:
            refs[column.name] = EntityCollection(fk.column.table.name)
    return refs


def unknown_fields(collection: EntityCollection, record: Record) -> list[str]:
    """Keys of record that are not columns of the collection."""
    known = column_names(collection)
    return sorted(k for k in record if k not in known)


def apply_defaults(collection: EntityCollection, record: Record) -> Record:
    """
    Fill columns the record omits with their declared defaults.

    Columns without a default are set to None so every stored record
    carries the full column set.
    """
    filled: dict[str, Any] = dict(record)
    for column in table_for(collection).columns:
        if column.name == "id" or column.name in filled:
            continue
        default = column.default
        if default is None:
            filled[column.name] = None
        elif default.is_callable:
            filled[column.name] = default.arg(None)
        else:
            filled[column.name] = default.arg
    return filled

"""
Domain Entity Collections

The finance tracker stores ten collections. Records travel through the
adapters as plain dicts keyed by snake_case column name; the column sets
themselves live in finance_db.services.storage.schema.

DESIGN DECISION: Identifiers are provider-local. An `id` read from one
backend means nothing to another, which is why the migration engine
remaps every foreign key instead of copying it.
"""

from enum import Enum
from typing import Any, Union


# A stored record: column name -> value, always including "id".
Record = dict[str, Any]

# Provider-local identifier (serial integer in SQL, anything in REST).
RecordId = Union[int, str]


class EntityCollection(str, Enum):
    """Named record collections every adapter exposes."""
    USERS = "users"
    CATEGORIES = "categories"
    ACCOUNTS = "accounts"
    PRODUCTS = "products"
    TRANSACTIONS = "transactions"
    BUDGETS = "budgets"
    GOALS = "goals"
    BILLS = "bills"
    SYSTEM_CONFIG = "system_config"
    ACTIVITY_LOGS = "activity_logs"


# Dependency order: a collection only references collections before it
# (or itself, for category parents).
MIGRATION_ORDER: tuple[EntityCollection, ...] = (
    EntityCollection.USERS,
    EntityCollection.CATEGORIES,
    EntityCollection.ACCOUNTS,
    EntityCollection.PRODUCTS,
    EntityCollection.TRANSACTIONS,
    EntityCollection.BUDGETS,
    EntityCollection.GOALS,
    EntityCollection.BILLS,
    EntityCollection.SYSTEM_CONFIG,
    EntityCollection.ACTIVITY_LOGS,
)

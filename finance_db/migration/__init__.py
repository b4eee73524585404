"""
Migration Package

Copies all finance data from one database configuration (or the
in-process default storage) into another.
"""

from finance_db.migration.engine import (
    MigrationEngine,
    MigrationError,
    MigrationInProgressError,
)
from finance_db.migration.log import MigrationLog, MigrationNotFoundError
from finance_db.migration.remap import RemapTable, UnresolvedReferenceError

__all__ = [
    "MigrationEngine",
    "MigrationError",
    "MigrationInProgressError",
    "MigrationLog",
    "MigrationNotFoundError",
    "RemapTable",
    "UnresolvedReferenceError",
]

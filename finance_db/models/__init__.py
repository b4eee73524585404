"""
Data Models Package

This package contains the Pydantic models and enums used by the storage
subsystem. Domain records themselves are plain dicts (see entities.py).
"""

from finance_db.models.database import (
    ConnectionFailureKind,
    ConnectionTestResult,
    DatabaseConfiguration,
    DatabaseConfigurationCreate,
    DatabaseConfigurationUpdate,
    DatabaseProvider,
    MigrationRecord,
    MigrationStateError,
    MigrationStatus,
    SchemaCheckResult,
)
from finance_db.models.entities import (
    MIGRATION_ORDER,
    EntityCollection,
    Record,
    RecordId,
)
from finance_db.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Configuration and migration models
    "ConnectionFailureKind",
    "ConnectionTestResult",
    "DatabaseConfiguration",
    "DatabaseConfigurationCreate",
    "DatabaseConfigurationUpdate",
    "DatabaseProvider",
    "MigrationRecord",
    "MigrationStateError",
    "MigrationStatus",
    "SchemaCheckResult",
    # Entities
    "MIGRATION_ORDER",
    "EntityCollection",
    "Record",
    "RecordId",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

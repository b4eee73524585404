"""
Storage Services Package

Provides the abstract adapter interface and one implementation per backend
family: in-memory (the default storage), SQL (Postgres, MySQL, SQLite via
SQLAlchemy) and REST (Supabase via PostgREST).
"""

from finance_db.services.storage.interface import (
    AuditStorageInterface,
    ConflictError,
    InvalidRecordError,
    NotFoundError,
    ProviderAdapter,
    CredentialsRejectedError,
    StorageError,
    UnavailableError,
)
from finance_db.services.storage.memory import (
    InMemoryAdapter,
    InMemoryAuditStorage,
)
from finance_db.services.storage.rest import RestAdapter
from finance_db.services.storage.sql import SqlAlchemyAdapter

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "ProviderAdapter",
    # Exceptions
    "ConflictError",
    "CredentialsRejectedError",
    "InvalidRecordError",
    "NotFoundError",
    "StorageError",
    "UnavailableError",
    # Implementations
    "InMemoryAdapter",
    "InMemoryAuditStorage",
    "RestAdapter",
    "SqlAlchemyAdapter",
]

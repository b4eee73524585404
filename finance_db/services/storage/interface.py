"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run the same finance tracker against Postgres, MySQL, SQLite or a REST backend
2. Use in-memory storage as the default and for testing
3. Copy data between any two backends with one migration engine
4. Keep business logic decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
Records are plain dicts; each adapter is scoped to exactly one
configuration and never retries on its own.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional
from uuid import UUID

from finance_db.models.audit import AuditEvent
from finance_db.models.entities import EntityCollection, Record, RecordId


class ProviderAdapter(ABC):
    """
    Abstract interface for entity storage on one backend.

    Any storage implementation (SQL, REST, memory) must implement these
    methods and translate its native failures into the StorageError
    family below.
    """

    # Upper bound on concurrent operations the backend tolerates.
    # None means unbounded.
    max_concurrency: Optional[int] = None

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Short name used in logs and migration details."""
        pass

    @abstractmethod
    async def list(
        self,
        collection: EntityCollection,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[Record]:
        """
        List records in a collection.

        Args:
            collection: Collection to read
            filter: Optional equality filter (column -> value)

        Returns:
            Matching records ordered by id

        Raises:
            UnavailableError: Backend unreachable or timed out
            StorageError: Any other backend failure
        """
        pass

    @abstractmethod
    async def get(self, collection: EntityCollection, id: RecordId) -> Record:
        """
        Retrieve a record by its ID.

        Args:
            collection: Collection to read
            id: Provider-local identifier

        Returns:
            The record

        Raises:
            NotFoundError: If no record has this id
        """
        pass

    @abstractmethod
    async def insert(self, collection: EntityCollection, record: Record) -> Record:
        """
        Insert a record.

        Args:
            collection: Collection to write
            record: Column values; an "id" key, if present, is ignored

        Returns:
            The stored record including its newly assigned id

        Raises:
            ConflictError: A unique column already holds this value
            InvalidRecordError: The record carries unknown columns
            UnavailableError: Backend unreachable or timed out
        """
        pass

    @abstractmethod
    async def update(
        self,
        collection: EntityCollection,
        id: RecordId,
        changes: Record,
    ) -> Record:
        """
        Update an existing record.

        Args:
            collection: Collection to write
            id: Provider-local identifier
            changes: Columns to overwrite

        Returns:
            The record after the update

        Raises:
            NotFoundError: If no record has this id
            ConflictError: A unique column already holds a new value
        """
        pass

    @abstractmethod
    async def delete(self, collection: EntityCollection, id: RecordId) -> None:
        """
        Delete a record by ID.

        Raises:
            NotFoundError: If no record has this id
        """
        pass

    @abstractmethod
    async def ping(self) -> str:
        """
        Run a trivial round trip against the backend.

        Returns:
            A server version string (or a short description)

        Raises:
            UnavailableError: Backend unreachable, rejected credentials or timed out
        """
        pass

    @abstractmethod
    async def existing_collections(self) -> set[str]:
        """Names of the known collections that exist in the backend."""
        pass

    @abstractmethod
    async def prepare(self) -> None:
        """
        Make sure every collection exists in the backend.

        Raises:
            StorageError: If the schema cannot be created
        """
        pass

    async def close(self) -> None:
        """Release connections. Safe to call more than once."""
        return None


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one test-and-activate flow).

        Args:
            correlation_id: The correlation identifier

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'configuration', 'migration')
            entity_id: The entity's ID

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Args:
            limit: Maximum number of events to return

        Returns:
            List of recent events (newest first)
        """
        pass


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StorageError(Exception):
    """
    Base exception for storage operations.

    native_message carries the backend's own wording, untranslated.
    """

    def __init__(self, message: str, native_message: Optional[str] = None):
        super().__init__(message)
        self.native_message = native_message if native_message is not None else message


class NotFoundError(StorageError):
    """Record not found in storage."""

    def __init__(self, collection: str, id: RecordId):
        super().__init__(f"{collection} record {id!r} not found")
        self.collection = collection
        self.id = id


class ConflictError(StorageError):
    """Unique constraint violated."""
    pass


class UnavailableError(StorageError):
    """Could not reach the storage backend, or it timed out."""
    pass


class InvalidRecordError(StorageError):
    """Record does not fit the collection's columns."""
    pass


class CredentialsRejectedError(StorageError):
    """The backend answered but refused the credentials."""
    pass

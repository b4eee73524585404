"""
Database Configuration and Migration Models

These models define the records the storage subsystem keeps about itself:
- DatabaseConfiguration: a named, provider-typed connection descriptor
- ConnectionTestResult: outcome of validating and probing a configuration
- MigrationRecord: audit entry for one cross-database copy

DESIGN DECISION: Invariants that belong to a single record are enforced
here (max_connections clamping, forward-only migration status). Invariants
that span records (only one active configuration, one running migration)
are enforced by the registry and the migration engine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional
from uuid import uuid4

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator


MIN_CONNECTIONS = 1
MAX_CONNECTIONS = 100


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Opaque unique identifier."""
    return str(uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class DatabaseProvider(str, Enum):
    """
    Supported storage backends.

    neon / planetscale: managed (serverless) Postgres / MySQL
    supabase: backend-as-a-service reached over REST
    postgresql / mysql: self-hosted servers
    sqlite: embedded file database
    """
    NEON = "neon"
    PLANETSCALE = "planetscale"
    SUPABASE = "supabase"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"


class ConnectionFailureKind(str, Enum):
    """Why a connection test failed."""
    VALIDATION = "validation"    # Bad or missing fields, or credentials refused
    UNREACHABLE = "unreachable"  # Fields fine, backend did not answer


class MigrationStatus(str, Enum):
    """
    Migration lifecycle.

    pending -> in_progress -> completed | failed, never backwards.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[MigrationStatus, frozenset[MigrationStatus]] = {
    MigrationStatus.PENDING: frozenset({MigrationStatus.IN_PROGRESS, MigrationStatus.FAILED}),
    MigrationStatus.IN_PROGRESS: frozenset({MigrationStatus.COMPLETED, MigrationStatus.FAILED}),
    MigrationStatus.COMPLETED: frozenset(),
    MigrationStatus.FAILED: frozenset(),
}


class MigrationStateError(Exception):
    """Illegal migration status transition or counter update."""
    pass


# =============================================================================
# DATABASE CONFIGURATION
# =============================================================================

# Fields that describe how to reach the backend. Changing any of them
# invalidates the last connection test.
CREDENTIAL_FIELDS = frozenset({
    "provider",
    "connection_string",
    "supabase_url",
    "supabase_anon_key",
    "supabase_service_key",
    "host",
    "port",
    "database",
    "username",
    "password",
    "file_path",
    "ssl",
})


def _clamp_connections(v: Any) -> Any:
    if v is None:
        return 10
    if isinstance(v, bool):
        return v
    try:
        count = int(v)
    except (TypeError, ValueError):
        return v
    return max(MIN_CONNECTIONS, min(MAX_CONNECTIONS, count))


# Pool size, clamped into [1, 100] rather than rejected.
ConnectionCount = Annotated[int, BeforeValidator(_clamp_connections)]


class _ConfigurationFields(BaseModel):
    """Operator-editable fields shared by create, update and stored models."""

    model_config = ConfigDict(str_strip_whitespace=True)

    connection_string: Optional[str] = Field(default=None, repr=False)

    # Backend-as-a-service
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = Field(default=None, repr=False)
    supabase_service_key: Optional[str] = Field(default=None, repr=False)

    # Self-hosted servers
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)

    # Embedded file database
    file_path: Optional[str] = None

    @field_validator(
        "connection_string", "supabase_url", "supabase_anon_key",
        "supabase_service_key", "host", "database", "username",
        "password", "file_path",
        mode="after",
    )
    @classmethod
    def empty_string_is_missing(cls, v: Optional[str]) -> Optional[str]:
        """Forms send "" for untouched inputs; treat it as absent."""
        return v or None


class DatabaseConfigurationCreate(_ConfigurationFields):
    """Operator input for a new configuration."""

    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name"
    )
    provider: DatabaseProvider
    ssl: bool = True
    max_connections: ConnectionCount = Field(
        default=10,
        description="Connection pool size, clamped to 1-100"
    )


class DatabaseConfigurationUpdate(_ConfigurationFields):
    """
    Partial edit of a configuration.

    Only fields explicitly set are applied (model_dump(exclude_unset=True)).
    """

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    provider: Optional[DatabaseProvider] = None
    ssl: Optional[bool] = None
    max_connections: Optional[ConnectionCount] = None


class DatabaseConfiguration(_ConfigurationFields):
    """
    A stored database configuration.

    At most one configuration across the registry has is_active=True.
    is_connected reflects the last connection test and gates activation.
    """

    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1, max_length=100)
    provider: DatabaseProvider

    is_active: bool = False
    is_connected: bool = False
    last_connection_test: Optional[datetime] = None

    ssl: bool = True
    max_connections: ConnectionCount = 10

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# CONNECTION TESTING
# =============================================================================

class ConnectionTestResult(BaseModel):
    """
    Outcome of a connection test.

    failure_kind tells callers whether to fix the configuration
    (VALIDATION) or the network/server (UNREACHABLE).
    """

    success: bool
    failure_kind: Optional[ConnectionFailureKind] = None
    error: Optional[str] = None
    errors: list[str] = Field(default_factory=list)
    latency_ms: Optional[float] = None
    tested_at: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_validation_failure(self) -> bool:
        return self.failure_kind == ConnectionFailureKind.VALIDATION

    @property
    def is_unreachable(self) -> bool:
        return self.failure_kind == ConnectionFailureKind.UNREACHABLE


class SchemaCheckResult(BaseModel):
    """Which required collections exist in a backend."""

    has_schema: bool
    missing_collections: list[str] = Field(default_factory=list)
    error: Optional[str] = None


# =============================================================================
# MIGRATION RECORD
# =============================================================================

class MigrationRecord(BaseModel):
    """
    Audit entry for one migration attempt.

    Mutate only through start(), add_migrated(), complete() and fail();
    they enforce the forward-only lifecycle.
    """

    id: str = Field(default_factory=new_id)
    from_provider: Optional[DatabaseProvider] = Field(
        default=None,
        description="None means the in-process default storage"
    )
    to_provider: DatabaseProvider
    status: MigrationStatus = MigrationStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    records_migrated: int = Field(default=0, ge=0)
    error_message: Optional[str] = None
    migration_details: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (MigrationStatus.COMPLETED, MigrationStatus.FAILED)

    def _transition(self, new_status: MigrationStatus) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise MigrationStateError(
                f"Cannot move migration {self.id} from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def start(self) -> None:
        """pending -> in_progress."""
        self._transition(MigrationStatus.IN_PROGRESS)

    def add_migrated(self, count: int = 1) -> None:
        """Count successfully inserted records."""
        if self.status != MigrationStatus.IN_PROGRESS:
            raise MigrationStateError(
                f"Migration {self.id} is {self.status.value}; counters are frozen"
            )
        if count < 0:
            raise MigrationStateError("records_migrated can only increase")
        self.records_migrated += count

    def complete(self) -> None:
        """in_progress -> completed."""
        self._transition(MigrationStatus.COMPLETED)
        self.completed_at = utcnow()

    def fail(self, message: str) -> None:
        """pending|in_progress -> failed."""
        self._transition(MigrationStatus.FAILED)
        self.error_message = message
        self.completed_at = utcnow()

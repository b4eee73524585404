"""
Audit Models for Finance DB

Every administrative action on the storage subsystem is logged for audit
purposes: which configuration was created, tested, activated or removed,
and how every migration went.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Configuration registry
    CONFIGURATION_CREATED = "configuration_created"
    CONFIGURATION_UPDATED = "configuration_updated"
    CONFIGURATION_DELETED = "configuration_deleted"
    CONFIGURATION_ACTIVATED = "configuration_activated"

    # Connection testing
    CONNECTION_TEST_PASSED = "connection_test_passed"
    CONNECTION_TEST_FAILED = "connection_test_failed"

    # Migration
    MIGRATION_STARTED = "migration_started"
    MIGRATION_COMPLETED = "migration_completed"
    MIGRATION_FAILED = "migration_failed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'configuration', 'migration')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., test then activate)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by an operator?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.configuration_created(config_id, name, provider)
        event = AuditEventBuilder.migration_completed(migration_id, count)
    """

    @staticmethod
    def configuration_created(
        config_id: str,
        name: str,
        provider: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFIGURATION_CREATED,
            entity_type="configuration",
            entity_id=config_id,
            correlation_id=correlation_id,
            description=f"Database configuration created: {name} ({provider})",
            details={
                "name": name,
                "provider": provider,
            },
            is_user_action=True,
        )

    @staticmethod
    def configuration_updated(
        config_id: str,
        changed_fields: list[str],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFIGURATION_UPDATED,
            entity_type="configuration",
            entity_id=config_id,
            correlation_id=correlation_id,
            description=f"Database configuration updated ({len(changed_fields)} fields)",
            details={
                "changed_fields": sorted(changed_fields),
            },
            is_user_action=True,
        )

    @staticmethod
    def configuration_deleted(
        config_id: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFIGURATION_DELETED,
            entity_type="configuration",
            entity_id=config_id,
            correlation_id=correlation_id,
            description="Database configuration deleted",
            is_user_action=True,
        )

    @staticmethod
    def configuration_activated(
        config_id: str,
        provider: str,
        previous_id: Optional[str],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONFIGURATION_ACTIVATED,
            severity=AuditSeverity.WARNING,
            entity_type="configuration",
            entity_id=config_id,
            correlation_id=correlation_id,
            description=f"Active database switched to {provider}",
            details={
                "provider": provider,
                "previous_configuration_id": previous_id,
            },
            is_user_action=True,
        )

    @staticmethod
    def connection_tested(
        config_id: str,
        success: bool,
        latency_ms: Optional[float],
        error: Optional[str],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        if success:
            return AuditEvent(
                event_type=AuditEventType.CONNECTION_TEST_PASSED,
                entity_type="configuration",
                entity_id=config_id,
                correlation_id=correlation_id,
                description=f"Connection test passed in {latency_ms or 0:.0f} ms",
                details={"latency_ms": latency_ms},
            )
        return AuditEvent(
            event_type=AuditEventType.CONNECTION_TEST_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="configuration",
            entity_id=config_id,
            correlation_id=correlation_id,
            description="Connection test failed",
            error_message=error,
        )

    @staticmethod
    def migration_started(
        migration_id: str,
        from_provider: Optional[str],
        to_provider: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MIGRATION_STARTED,
            entity_type="migration",
            entity_id=migration_id,
            correlation_id=correlation_id,
            description=f"Migration started: {from_provider or 'memory'} -> {to_provider}",
            details={
                "from_provider": from_provider,
                "to_provider": to_provider,
            },
            is_user_action=True,
        )

    @staticmethod
    def migration_completed(
        migration_id: str,
        records_migrated: int,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MIGRATION_COMPLETED,
            entity_type="migration",
            entity_id=migration_id,
            correlation_id=correlation_id,
            description=f"Migration completed: {records_migrated} records copied",
            details={
                "records_migrated": records_migrated,
            },
        )

    @staticmethod
    def migration_failed(
        migration_id: str,
        records_migrated: int,
        error_message: Optional[str],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MIGRATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="migration",
            entity_id=migration_id,
            correlation_id=correlation_id,
            description=f"Migration failed after {records_migrated} records",
            error_message=error_message,
            details={
                "records_migrated": records_migrated,
            },
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

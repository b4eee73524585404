"""
Audit Logger

DESIGN DECISION: Every administrative action on the storage subsystem is
logged. This provides:
1. Complete traceability (who switched databases, when)
2. Debugging capability for failed tests and migrations
3. Operators can see the history of their configurations

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from finance_db.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from finance_db.models.database import ConnectionTestResult, DatabaseConfiguration, MigrationRecord
from finance_db.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An audit storage backend (for persistence), if configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        # Always log locally
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        # Persist to storage if available
        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_configuration_created(
        self,
        config: DatabaseConfiguration,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a new database configuration."""
        event = AuditEventBuilder.configuration_created(
            config_id=config.id,
            name=config.name,
            provider=config.provider.value,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_configuration_updated(
        self,
        config_id: str,
        changed_fields: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an edit; only field names are recorded, never values."""
        event = AuditEventBuilder.configuration_updated(
            config_id=config_id,
            changed_fields=changed_fields,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_configuration_deleted(
        self,
        config_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.configuration_deleted(
            config_id=config_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_configuration_activated(
        self,
        config: DatabaseConfiguration,
        previous_id: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a switch of the active database."""
        event = AuditEventBuilder.configuration_activated(
            config_id=config.id,
            provider=config.provider.value,
            previous_id=previous_id,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_connection_tested(
        self,
        config_id: str,
        result: ConnectionTestResult,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.connection_tested(
            config_id=config_id,
            success=result.success,
            latency_ms=result.latency_ms,
            error=result.error,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_migration_started(
        self,
        record: MigrationRecord,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.migration_started(
            migration_id=record.id,
            from_provider=record.from_provider.value if record.from_provider else None,
            to_provider=record.to_provider.value,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_migration_finished(
        self,
        record: MigrationRecord,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log the terminal state of a migration (completed or failed)."""
        if record.error_message is None:
            event = AuditEventBuilder.migration_completed(
                migration_id=record.id,
                records_migrated=record.records_migrated,
                correlation_id=correlation_id,
            )
        else:
            event = AuditEventBuilder.migration_failed(
                migration_id=record.id,
                records_migrated=record.records_migrated,
                error_message=record.error_message,
                correlation_id=correlation_id,
            )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new operator action (e.g., test then activate).
    Pass it through all subsequent operations.
    """
    return uuid4()

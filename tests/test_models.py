"""
Tests for Finance DB models

Test strategy:
1. Unit tests for individual components (models, adapters, variants)
2. Integration tests for flows (with in-memory or SQLite storage)
3. No real network calls in tests
"""

import pytest
from pydantic import ValidationError

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
)
from finance_db.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)


class TestDatabaseConfiguration:
    """Tests for configuration models."""

    def test_defaults(self):
        """Test a new configuration is inactive, untested, SSL on, pool 10."""
        config = DatabaseConfiguration(name="Local", provider=DatabaseProvider.SQLITE)
        assert config.is_active is False
        assert config.is_connected is False
        assert config.last_connection_test is None
        assert config.ssl is True
        assert config.max_connections == 10
        assert config.id

    @pytest.mark.parametrize("given,expected", [
        (0, 1),
        (-5, 1),
        (1, 1),
        (55, 55),
        (100, 100),
        (500, 100),
        (None, 10),
        ("500", 100),
        ("0", 1),
        (" 20 ", 20),
    ])
    def test_max_connections_is_clamped(self, given, expected):
        """Test max_connections is clamped into [1, 100] instead of rejected."""
        config = DatabaseConfigurationCreate(
            name="Pool",
            provider=DatabaseProvider.POSTGRESQL,
            max_connections=given,
        )
        assert config.max_connections == expected

    def test_non_numeric_max_connections_rejected(self):
        """Test a value that is not a number is still a validation error."""
        with pytest.raises(ValidationError):
            DatabaseConfigurationCreate(
                name="Pool",
                provider=DatabaseProvider.POSTGRESQL,
                max_connections="lots",
            )

    def test_update_clamps_max_connections(self):
        """Test partial edits are clamped too."""
        assert DatabaseConfigurationUpdate(max_connections=1000).max_connections == 100
        assert DatabaseConfigurationUpdate(max_connections="1000").max_connections == 100
        assert DatabaseConfigurationUpdate().max_connections is None

    def test_blank_fields_become_none(self):
        """Test empty form inputs are treated as missing."""
        config = DatabaseConfigurationCreate(
            name="Neon",
            provider=DatabaseProvider.NEON,
            connection_string="   ",
            host="",
        )
        assert config.connection_string is None
        assert config.host is None

    def test_secrets_hidden_from_repr(self):
        """Test passwords and keys do not leak into logs via repr."""
        config = DatabaseConfiguration(
            name="Prod",
            provider=DatabaseProvider.POSTGRESQL,
            password="hunter2",
            supabase_service_key="service-role-secret",
        )
        assert "hunter2" not in repr(config)
        assert "service-role-secret" not in repr(config)

    def test_name_required(self):
        """Test an empty name is rejected."""
        with pytest.raises(ValueError):
            DatabaseConfigurationCreate(name="", provider=DatabaseProvider.SQLITE)

    def test_unknown_provider_rejected(self):
        """Test only supported providers are accepted."""
        with pytest.raises(ValueError):
            DatabaseConfigurationCreate(name="Oracle", provider="oracle")


class TestConnectionTestResult:
    """Tests for connection test results."""

    def test_failure_kind_helpers(self):
        result = ConnectionTestResult(
            success=False,
            failure_kind=ConnectionFailureKind.UNREACHABLE,
            error="timeout",
        )
        assert result.is_unreachable
        assert not result.is_validation_failure


class TestMigrationRecord:
    """Tests for the forward-only migration lifecycle."""

    def _record(self) -> MigrationRecord:
        return MigrationRecord(to_provider=DatabaseProvider.SQLITE)

    def test_starts_pending(self):
        record = self._record()
        assert record.status == MigrationStatus.PENDING
        assert record.from_provider is None
        assert record.records_migrated == 0

    def test_happy_path(self):
        """Test pending -> in_progress -> completed."""
        record = self._record()
        record.start()
        record.add_migrated()
        record.add_migrated(2)
        record.complete()
        assert record.status == MigrationStatus.COMPLETED
        assert record.records_migrated == 3
        assert record.completed_at is not None
        assert record.is_terminal

    def test_fail_sets_message_and_completion_time(self):
        record = self._record()
        record.start()
        record.fail("boom")
        assert record.status == MigrationStatus.FAILED
        assert record.error_message == "boom"
        assert record.completed_at is not None

    def test_cannot_complete_from_pending(self):
        with pytest.raises(MigrationStateError):
            self._record().complete()

    def test_terminal_state_is_final(self):
        """Test a finished migration cannot change status again."""
        record = self._record()
        record.start()
        record.complete()
        with pytest.raises(MigrationStateError):
            record.fail("late failure")
        with pytest.raises(MigrationStateError):
            record.start()
        assert record.status == MigrationStatus.COMPLETED

    def test_counter_frozen_outside_in_progress(self):
        record = self._record()
        with pytest.raises(MigrationStateError):
            record.add_migrated()
        record.start()
        record.complete()
        with pytest.raises(MigrationStateError):
            record.add_migrated()

    def test_counter_only_increases(self):
        record = self._record()
        record.start()
        with pytest.raises(MigrationStateError):
            record.add_migrated(-1)


class TestAuditModels:
    """Tests for audit models."""

    def test_audit_event_creation(self):
        """Test AuditEvent creation."""
        event = AuditEvent(
            event_type=AuditEventType.CONFIGURATION_CREATED,
            description="Configuration created",
        )
        assert event.event_type == AuditEventType.CONFIGURATION_CREATED
        assert event.severity == AuditSeverity.INFO
        assert event.event_id is not None

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        event = AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description="Test error",
            error_message="Something went wrong",
        )
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "system_error"
        assert log_dict["severity"] == "error"
        assert log_dict["error_message"] == "Something went wrong"

    def test_activation_is_a_warning(self):
        """Test switching databases stands out in the audit trail."""
        event = AuditEventBuilder.configuration_activated(
            config_id="cfg-1",
            provider="neon",
            previous_id=None,
        )
        assert event.severity == AuditSeverity.WARNING
        assert event.entity_id == "cfg-1"
        assert event.details["provider"] == "neon"

    def test_connection_tested_pass_and_fail(self):
        passed = AuditEventBuilder.connection_tested("cfg-1", True, 12.5, None)
        failed = AuditEventBuilder.connection_tested("cfg-1", False, None, "refused")
        assert passed.event_type == AuditEventType.CONNECTION_TEST_PASSED
        assert failed.event_type == AuditEventType.CONNECTION_TEST_FAILED
        assert failed.error_message == "refused"

    def test_migration_failed_event(self):
        event = AuditEventBuilder.migration_failed("mig-1", 3, "2 record(s) failed to migrate")
        assert event.severity == AuditSeverity.ERROR
        assert event.details["records_migrated"] == 3

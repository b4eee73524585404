"""
Main Orchestrator for Finance DB

This module ties together all the components and defines the
administrative flows the HTTP layer calls:
1. Configuration management (create → test → activate)
2. Migration (begin → copy in background → poll)
3. Startup (load environment configurations → resolve active adapter)

DESIGN DECISION: The orchestrator owns the active adapter. There is no
module-level "current database"; entity routes receive the adapter from
here, and activate() swaps it only after the registry has switched.
- Nothing is activated without a passing connection test
- Only one migration runs at a time
- Every step is audited

This is the "glue" that ensures the system works correctly
even when individual components might behave unexpectedly.
"""

import asyncio
from typing import Callable, Optional
from uuid import UUID

import structlog

from finance_db.audit import AuditLogger, create_correlation_id
from finance_db.config import Settings, get_settings
from finance_db.migration import MigrationEngine, MigrationLog
from finance_db.models.database import (
    ConnectionTestResult,
    DatabaseConfiguration,
    DatabaseConfigurationCreate,
    DatabaseConfigurationUpdate,
    MigrationRecord,
    SchemaCheckResult,
)
from finance_db.services.connection_tester import ConnectionTester
from finance_db.services.providers import create_adapter
from finance_db.services.registry import (
    ENV_DATABASE_ID,
    ENV_SUPABASE_ID,
    ConfigurationRegistry,
    RegistryError,
)
from finance_db.services.storage import (
    InMemoryAdapter,
    InMemoryAuditStorage,
    ProviderAdapter,
)


logger = structlog.get_logger(__name__)

AdapterFactory = Callable[[DatabaseConfiguration], ProviderAdapter]


class DatabaseAdminFlow:
    """
    Orchestrates database administration.

    Flow:
    1. Create  → Validate provider fields, store inactive and untested
    2. Test    → Ping the backend, record is_connected
    3. Activate → Single active configuration, adapter swapped
    4. Migrate → Copy data into a tested configuration in the background

    A configuration can only be activated after its test passed (step 2).
    """

    def __init__(
        self,
        registry: ConfigurationRegistry,
        tester: ConnectionTester,
        engine: MigrationEngine,
        default_storage: ProviderAdapter,
        settings: Optional[Settings] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._registry = registry
        self._tester = tester
        self._engine = engine
        self._default_storage = default_storage
        self._settings = settings or get_settings()
        self._adapter_factory = adapter_factory or (
            lambda config: create_adapter(config, self._settings.storage)
        )
        self._audit_logger = audit_logger
        self._active_adapter: ProviderAdapter = default_storage
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def active_adapter(self) -> ProviderAdapter:
        """The adapter entity routes should use right now."""
        return self._active_adapter

    @property
    def default_storage(self) -> ProviderAdapter:
        return self._default_storage

    @property
    def registry(self) -> ConfigurationRegistry:
        return self._registry

    # =========================================================================
    # CONFIGURATIONS
    # =========================================================================

    def list_configurations(self) -> list[DatabaseConfiguration]:
        return self._registry.configurations()

    def get_configuration(self, config_id: str) -> DatabaseConfiguration:
        return self._registry.get(config_id)

    async def create_configuration(
        self,
        data: DatabaseConfigurationCreate,
        correlation_id: Optional[UUID] = None,
    ) -> DatabaseConfiguration:
        """
        Store a new configuration (inactive, untested).

        Raises:
            ConfigurationValidationError: Provider fields missing or malformed
        """
        config = self._registry.create(data)

        if self._audit_logger:
            await self._audit_logger.log_configuration_created(
                config,
                correlation_id=correlation_id,
            )
        return config

    async def update_configuration(
        self,
        config_id: str,
        changes: DatabaseConfigurationUpdate,
        correlation_id: Optional[UUID] = None,
    ) -> DatabaseConfiguration:
        config = self._registry.update(config_id, changes)

        if self._audit_logger:
            await self._audit_logger.log_configuration_updated(
                config_id,
                changed_fields=list(changes.model_dump(exclude_unset=True)),
                correlation_id=correlation_id,
            )
        return config

    async def delete_configuration(
        self,
        config_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Raises:
            ConfigurationActiveError: If it is the active configuration
        """
        self._registry.delete(config_id)

        if self._audit_logger:
            await self._audit_logger.log_configuration_deleted(
                config_id,
                correlation_id=correlation_id,
            )

    async def test_configuration(
        self,
        config_id: str,
        retry: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> ConnectionTestResult:
        """
        Test a stored configuration and record the outcome.

        Args:
            config_id: Configuration to test
            retry: Retry while the backend is unreachable
        """
        config = self._registry.get(config_id)

        if retry:
            result = await self._tester.test_with_retry(config)
        else:
            result = await self._tester.test(config)

        self._registry.record_test_result(config_id, result, tested=config)

        if self._audit_logger:
            await self._audit_logger.log_connection_tested(
                config_id,
                result,
                correlation_id=correlation_id,
            )
        return result

    async def check_schema(self, config_id: str) -> SchemaCheckResult:
        return await self._tester.check_schema(self._registry.get(config_id))

    async def activate(
        self,
        config_id: str,
        correlation_id: Optional[UUID] = None,
    ) -> DatabaseConfiguration:
        """
        Make a configuration active and route entity storage to it.

        Raises:
            ConfigurationNotFoundError: If the id is unknown
            NotConnectedError: If its last test did not pass
        """
        correlation_id = correlation_id or create_correlation_id()
        previous = self._registry.active()

        adapter = self._adapter_factory(self._registry.get(config_id))
        try:
            config = self._registry.activate(config_id)
        except RegistryError:
            await adapter.close()
            raise
        await self._swap_adapter(adapter)

        if self._audit_logger:
            await self._audit_logger.log_configuration_activated(
                config,
                previous_id=previous.id if previous else None,
                correlation_id=correlation_id,
            )
        return config

    async def _swap_adapter(self, adapter: ProviderAdapter) -> None:
        old = self._active_adapter
        self._active_adapter = adapter
        if old is not self._default_storage and old is not adapter:
            await old.close()

    # =========================================================================
    # MIGRATIONS
    # =========================================================================

    async def start_migration(
        self,
        from_id: Optional[str],
        to_id: str,
    ) -> str:
        """
        Start copying data into a configuration.

        Returns the migration id at once; the copy runs as a background
        task. Poll get_migration() or await wait_for_migration().

        Args:
            from_id: Source configuration, or None for the default storage
            to_id: Target configuration (must be tested)

        Raises:
            ConfigurationNotFoundError: Unknown source or target
            NotConnectedError: Target not tested
            MigrationInProgressError: Another migration is running
        """
        target = self._registry.get(to_id)
        source = self._registry.get(from_id) if from_id else None

        record = self._engine.begin(target, source)
        task = asyncio.create_task(self._engine.run(record.id, target, source))
        self._tasks[record.id] = task
        task.add_done_callback(lambda done: self._task_finished(record.id, done))
        return record.id

    def _task_finished(self, migration_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(migration_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("migration_task_crashed", migration_id=migration_id, error=str(error))

    async def wait_for_migration(self, migration_id: str) -> MigrationRecord:
        """Wait until a migration started here is terminal."""
        task = self._tasks.get(migration_id)
        if task is not None:
            await task
        return self._engine.log.get(migration_id)

    def get_migration(self, migration_id: str) -> MigrationRecord:
        return self._engine.log.get(migration_id)

    def list_migrations(self) -> list[MigrationRecord]:
        return self._engine.log.records()

    # =========================================================================
    # STARTUP / SHUTDOWN
    # =========================================================================

    async def bootstrap(self, load_environment: bool = True) -> ProviderAdapter:
        """
        Resolve the active adapter at startup.

        If a configuration is already active, use it. Otherwise register
        environment-provided configurations and activate the first one
        whose connection test passes. With none, stay on default storage.
        """
        if load_environment:
            self._registry.load_from_environment(self._settings)

        active = self._registry.active()
        if active is not None:
            await self._swap_adapter(self._adapter_factory(active))
            logger.info("bootstrap_active_configuration", config_id=active.id)
            return self._active_adapter

        for config_id in (ENV_SUPABASE_ID, ENV_DATABASE_ID):
            if not any(c.id == config_id for c in self._registry.configurations()):
                continue
            result = await self.test_configuration(config_id)
            if result.success:
                await self.activate(config_id)
                logger.info("bootstrap_environment_activated", config_id=config_id)
                return self._active_adapter
            logger.warning(
                "bootstrap_environment_unreachable",
                config_id=config_id,
                error=result.error,
            )

        logger.info("bootstrap_default_storage")
        return self._active_adapter

    async def close(self) -> None:
        """Finish background migrations and release the active adapter."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self._swap_adapter(self._default_storage)


def create_app_components(
    settings: Optional[Settings] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> DatabaseAdminFlow:
    """
    Factory function to create all application components.

    Args:
        settings: Settings to use (defaults to get_settings())
        audit_logger: Audit logger; defaults to one backed by in-memory storage

    Returns:
        A DatabaseAdminFlow running on default storage; call bootstrap()
    """
    settings = settings or get_settings()
    storage_settings = settings.storage

    default_storage = InMemoryAdapter()
    audit_logger = audit_logger or AuditLogger(InMemoryAuditStorage())

    registry = ConfigurationRegistry(storage_settings.registry_path)
    tester = ConnectionTester(storage_settings)
    engine = MigrationEngine(
        default_storage=default_storage,
        log=MigrationLog(),
        settings=storage_settings,
        audit_logger=audit_logger,
    )

    return DatabaseAdminFlow(
        registry=registry,
        tester=tester,
        engine=engine,
        default_storage=default_storage,
        settings=settings,
        audit_logger=audit_logger,
    )

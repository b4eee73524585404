"""
Configuration Registry

Holds every named database configuration and knows which one is active.

DESIGN DECISION: One lock guards all registry state. activate() flips the
active flag on every configuration inside that lock, so no reader ever
sees zero-then-one or two active configurations mid-switch. The lock only
covers memory and the local JSON file; nothing here touches the network.
Each change is written to disk before it replaces the in-memory state, so
a failed write leaves both as they were.

Configurations are handed out as copies. The only way to change stored
state is through the methods below, which keep the invariants:
- at most one configuration is active
- only a configuration whose last test passed can be activated
- the active configuration cannot be deleted
- editing credentials forgets the last test result
"""

import json
import os
import threading
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from finance_db.config.settings import Settings
from finance_db.models.database import (
    CREDENTIAL_FIELDS,
    ConnectionTestResult,
    DatabaseConfiguration,
    DatabaseConfigurationCreate,
    DatabaseConfigurationUpdate,
    DatabaseProvider,
    utcnow,
)
from finance_db.services.environment import detect_provider
from finance_db.services.providers import ConfigurationValidationError, validate_configuration


logger = structlog.get_logger(__name__)

ENV_SUPABASE_ID = "env-supabase"
ENV_DATABASE_ID = "env-database"


def credentials_of(config: DatabaseConfiguration) -> dict:
    """The fields a connection test actually exercised."""
    return {field: getattr(config, field) for field in sorted(CREDENTIAL_FIELDS)}


class ConfigurationRegistry:
    """
    Named database configurations with a single active one.

    Args:
        path: JSON file to persist to; None keeps everything in memory
    """

    def __init__(self, path: Optional[str] = None):
        self._path = Path(path) if path else None
        self._lock = threading.RLock()
        self._configs: dict[str, DatabaseConfiguration] = {}
        if self._path is not None and self._path.exists():
            self._load()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            configs = [DatabaseConfiguration.model_validate(item) for item in raw]
        except (OSError, ValueError) as e:
            raise RegistryError(f"Cannot read configuration file {self._path}: {e}") from e

        self._configs = {config.id: config for config in configs}
        logger.info("registry_loaded", path=str(self._path), count=len(configs))

    def _save(self, configs: dict[str, DatabaseConfiguration]) -> None:
        if self._path is None:
            return
        payload = [config.model_dump(mode="json") for config in configs.values()]
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise RegistryError(f"Cannot write configuration file {self._path}: {e}") from e

    def _commit(self, configs: dict[str, DatabaseConfiguration]) -> None:
        """Persist a new state, then make it current. Caller holds the lock."""
        self._save(configs)
        self._configs = configs

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _require(self, config_id: str) -> DatabaseConfiguration:
        try:
            return self._configs[config_id]
        except KeyError:
            raise ConfigurationNotFoundError(config_id) from None

    def get(self, config_id: str) -> DatabaseConfiguration:
        """
        Get a configuration by id.

        Raises:
            ConfigurationNotFoundError: If the id is unknown
        """
        with self._lock:
            return self._require(config_id).model_copy(deep=True)

    def configurations(self) -> list[DatabaseConfiguration]:
        """All configurations, oldest first."""
        with self._lock:
            configs = sorted(self._configs.values(), key=lambda c: c.created_at)
            return [config.model_copy(deep=True) for config in configs]

    def active(self) -> Optional[DatabaseConfiguration]:
        """The active configuration, or None while running on default storage."""
        with self._lock:
            for config in self._configs.values():
                if config.is_active:
                    return config.model_copy(deep=True)
            return None

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def create(
        self,
        data: DatabaseConfigurationCreate,
        config_id: Optional[str] = None,
    ) -> DatabaseConfiguration:
        """
        Validate and store a new configuration.

        The new configuration is inactive and untested.

        Raises:
            ConfigurationValidationError: Provider fields missing or malformed
            RegistryError: config_id is already taken
        """
        validate_configuration(data)

        fields = data.model_dump()
        if config_id is not None:
            fields["id"] = config_id
        config = DatabaseConfiguration(**fields)

        with self._lock:
            if config.id in self._configs:
                raise RegistryError(f"Configuration id {config.id!r} already exists")
            self._commit({**self._configs, config.id: config})

        logger.info(
            "configuration_created",
            config_id=config.id,
            provider=config.provider.value,
        )
        return config.model_copy(deep=True)

    def update(
        self,
        config_id: str,
        changes: DatabaseConfigurationUpdate,
    ) -> DatabaseConfiguration:
        """
        Apply a partial edit.

        Changing any credential field resets is_connected, so the
        configuration must be tested again before it can be activated.

        Raises:
            ConfigurationNotFoundError: If the id is unknown
            ConfigurationValidationError: The result lacks required fields
        """
        edits = changes.model_dump(exclude_unset=True)

        with self._lock:
            current = self._require(config_id)
            merged = current.model_dump()
            merged.update(edits)
            try:
                updated = DatabaseConfiguration.model_validate(merged)
            except ValidationError as e:
                raise ConfigurationValidationError(
                    [err["msg"] for err in e.errors()]
                ) from e
            validate_configuration(updated)

            changed = {
                field for field in edits
                if getattr(current, field) != getattr(updated, field)
            }
            if changed & CREDENTIAL_FIELDS:
                updated.is_connected = False
            updated.updated_at = utcnow()

            self._commit({**self._configs, config_id: updated})

        logger.info(
            "configuration_updated",
            config_id=config_id,
            changed_fields=sorted(changed),
        )
        return updated.model_copy(deep=True)

    def delete(self, config_id: str) -> None:
        """
        Remove a configuration.

        Raises:
            ConfigurationNotFoundError: If the id is unknown
            ConfigurationActiveError: If it is the active configuration
        """
        with self._lock:
            config = self._require(config_id)
            if config.is_active:
                raise ConfigurationActiveError(config_id)
            self._commit({k: v for k, v in self._configs.items() if k != config_id})

        logger.info("configuration_deleted", config_id=config_id)

    def activate(self, config_id: str) -> DatabaseConfiguration:
        """
        Make a configuration the single active one.

        Every other configuration is deactivated in the same critical
        section.

        Raises:
            ConfigurationNotFoundError: If the id is unknown
            NotConnectedError: If its last connection test did not pass
        """
        with self._lock:
            target = self._require(config_id)
            if not target.is_connected:
                raise NotConnectedError(config_id)

            now = utcnow()
            configs = {}
            for key, config in self._configs.items():
                should_be_active = key == config_id
                if config.is_active != should_be_active:
                    config = config.model_copy(
                        update={"is_active": should_be_active, "updated_at": now}
                    )
                configs[key] = config
            self._commit(configs)
            activated = configs[config_id].model_copy(deep=True)

        logger.info(
            "configuration_activated",
            config_id=config_id,
            provider=activated.provider.value,
        )
        return activated

    def record_test_result(
        self,
        config_id: str,
        result: ConnectionTestResult,
        tested: Optional[DatabaseConfiguration] = None,
    ) -> DatabaseConfiguration:
        """
        Store the outcome of a connection test.

        Args:
            config_id: Configuration the test belongs to
            result: Outcome of the test
            tested: The configuration as it was when the test started. If
                its credentials no longer match the stored ones, the
                result describes credentials nobody tested and is dropped.

        Raises:
            ConfigurationNotFoundError: If the id is unknown
        """
        with self._lock:
            config = self._require(config_id)
            if tested is not None and credentials_of(tested) != credentials_of(config):
                logger.info("connection_test_result_stale", config_id=config_id)
                return config.model_copy(deep=True)

            updated = config.model_copy(update={
                "is_connected": result.success,
                "last_connection_test": result.tested_at,
                "updated_at": utcnow(),
            })
            self._commit({**self._configs, config_id: updated})
            return updated.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Environment bootstrap
    # -------------------------------------------------------------------------

    def _upsert(self, config_id: str, data: DatabaseConfigurationCreate) -> Optional[DatabaseConfiguration]:
        try:
            with self._lock:
                exists = config_id in self._configs
                if not exists:
                    return self.create(data, config_id=config_id)
            changes = DatabaseConfigurationUpdate(
                **data.model_dump(exclude={"name", "ssl", "max_connections"})
            )
            return self.update(config_id, changes)
        except ConfigurationValidationError as e:
            logger.warning(
                "environment_configuration_invalid",
                config_id=config_id,
                errors=e.errors,
            )
            return None

    def load_from_environment(self, settings: Settings) -> list[DatabaseConfiguration]:
        """
        Register configurations described by environment variables.

        SUPABASE_URL / SUPABASE_ANON_KEY / SUPABASE_SERVICE_KEY become
        "env-supabase"; DATABASE_URL becomes "env-database" with the
        provider detected from the URL. Both are stored inactive and
        untested. Invalid ones are logged and skipped.

        Returns:
            The configurations registered or refreshed
        """
        loaded = []

        try:
            supabase = settings.supabase
        except ValidationError:
            supabase = None
        if supabase is not None:
            config = self._upsert(
                ENV_SUPABASE_ID,
                DatabaseConfigurationCreate(
                    name="Supabase (environment)",
                    provider=DatabaseProvider.SUPABASE,
                    supabase_url=supabase.url,
                    supabase_anon_key=supabase.anon_key,
                    supabase_service_key=supabase.service_key,
                ),
            )
            if config is not None:
                loaded.append(config)

        try:
            database_url = settings.database_url.database_url
        except ValidationError:
            database_url = None
        if database_url:
            provider = detect_provider({"DATABASE_URL": database_url})
            if provider is None:
                logger.warning("environment_database_url_unrecognized")
            else:
                config = self._upsert(
                    ENV_DATABASE_ID,
                    DatabaseConfigurationCreate(
                        name=f"{provider.value} (environment)",
                        provider=provider,
                        connection_string=database_url,
                    ),
                )
                if config is not None:
                    loaded.append(config)

        logger.info("environment_configurations_loaded", count=len(loaded))
        return loaded


# =============================================================================
# EXCEPTIONS
# =============================================================================

class RegistryError(Exception):
    """Base exception for configuration registry operations."""
    pass


class ConfigurationNotFoundError(RegistryError):
    """No configuration has this id."""

    def __init__(self, config_id: str):
        super().__init__(f"Database configuration {config_id!r} not found")
        self.config_id = config_id


class NotConnectedError(RegistryError):
    """The configuration's last connection test did not pass."""

    def __init__(self, config_id: str):
        super().__init__(
            f"Database configuration {config_id!r} is not connected; test it first"
        )
        self.config_id = config_id


class ConfigurationActiveError(RegistryError):
    """The active configuration cannot be deleted."""

    def __init__(self, config_id: str):
        super().__init__(
            f"Database configuration {config_id!r} is active; activate another one first"
        )
        self.config_id = config_id

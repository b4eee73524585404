"""
Database Provider Variants

Every provider the finance tracker can run on is one ProviderVariant
subclass. A variant knows four things about its provider:
1. Which configuration fields it requires (validate)
2. How to build the application-level connection URL (connection_url)
3. How to open a storage adapter for it (create_adapter)
4. Which environment variables describe it (environment_template)

DESIGN DECISION: The set of providers is closed and lives in PROVIDERS.
Call sites look the variant up and never branch on the provider value
themselves, so adding a provider means adding one class here.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Union
from urllib.parse import quote

from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from finance_db.config.settings import StorageSettings
from finance_db.models.database import (
    DatabaseConfiguration,
    DatabaseConfigurationCreate,
    DatabaseProvider,
)
from finance_db.services.storage import (
    ProviderAdapter,
    RestAdapter,
    SqlAlchemyAdapter,
)


ConfigLike = Union[DatabaseConfiguration, DatabaseConfigurationCreate]

DEFAULT_SQLITE_PATH = "./data/finance.db"


class ConfigurationValidationError(Exception):
    """
    A configuration is missing or has malformed provider fields.

    errors holds every problem found, not just the first.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid database configuration")


def _quoted(value: Optional[str]) -> str:
    return quote(value or "", safe="")


def _has_scheme(url: str, *schemes: str) -> bool:
    return any(url.startswith(f"{scheme}://") for scheme in schemes)


class ProviderVariant(ABC):
    """Provider-specific behavior for one DatabaseProvider value."""

    provider: DatabaseProvider
    label: str

    @abstractmethod
    def validate(self, config: ConfigLike) -> list[str]:
        """
        Static validation, no I/O.

        Returns:
            Human-readable problems; empty when the configuration is usable
        """
        pass

    @abstractmethod
    def connection_url(self, config: ConfigLike) -> str:
        """Application-level connection URL (what DATABASE_URL would hold)."""
        pass

    @abstractmethod
    def create_adapter(
        self,
        config: ConfigLike,
        settings: StorageSettings,
    ) -> ProviderAdapter:
        """Open a storage adapter scoped to this configuration."""
        pass

    @abstractmethod
    def environment_template(self, config: ConfigLike, docker: bool = False) -> dict[str, str]:
        """
        Environment variables describing this configuration.

        Args:
            config: The configuration
            docker: Point self-hosted servers at their compose service host
        """
        pass

    def describe(self, config: ConfigLike) -> dict[str, Any]:
        """Non-secret facts reported alongside a connection test."""
        return {
            "provider": self.provider.value,
            "host": config.host,
            "database": config.database,
            "ssl": config.ssl,
        }


# =============================================================================
# SQL SERVER FAMILIES
# =============================================================================

class _ServerVariant(ProviderVariant):
    """Shared logic for Postgres and MySQL flavored providers."""

    family: str
    driver: str
    schemes: tuple[str, ...]
    default_port: int
    docker_host: str
    ssl_suffix: str
    env_prefix: str
    env_database_key: str

    def _sqlalchemy_url(self, config: ConfigLike) -> URL:
        url = make_url(self.connection_url(config))
        return url.set(drivername=self.driver)

    def _connect_args(self, config: ConfigLike) -> dict[str, Any]:
        return {}

    def _adapter_url(self, config: ConfigLike) -> URL:
        return self._sqlalchemy_url(config)

    def _built_url(self, config: ConfigLike, host: Optional[str], port: Optional[int]) -> str:
        return (
            f"{self.schemes[0]}://{_quoted(config.username)}:{_quoted(config.password)}"
            f"@{host}:{port or self.default_port}/{config.database}"
            f"{self.ssl_suffix if config.ssl else ''}"
        )

    def connection_url(self, config: ConfigLike) -> str:
        if config.connection_string:
            return config.connection_string
        return self._built_url(config, config.host, config.port)

    def create_adapter(
        self,
        config: ConfigLike,
        settings: StorageSettings,
    ) -> ProviderAdapter:
        return SqlAlchemyAdapter(
            self._adapter_url(config).render_as_string(hide_password=False),
            provider_name=self.provider.value,
            max_connections=config.max_connections,
            operation_timeout=settings.operation_timeout_seconds,
            connect_args=self._connect_args(config),
        )

    def describe(self, config: ConfigLike) -> dict[str, Any]:
        details = super().describe(config)
        if config.connection_string:
            try:
                url = make_url(config.connection_string)
            except (ArgumentError, ValueError):
                return details
            details["host"] = url.host
            details["database"] = url.database
        return details

    def _scheme_errors(self, config: ConfigLike) -> list[str]:
        if config.connection_string and not _has_scheme(config.connection_string, *self.schemes):
            return [f"{self.label} connection string must be a {self.family} URL"]
        return []

    def _parts_errors(self, config: ConfigLike) -> list[str]:
        errors = []
        if not config.host:
            errors.append(f"{self.label} host is required")
        if not config.database:
            errors.append(f"{self.label} database name is required")
        if not config.username:
            errors.append(f"{self.label} username is required")
        if not config.password:
            errors.append(f"{self.label} password is required")
        return errors

    def environment_template(self, config: ConfigLike, docker: bool = False) -> dict[str, str]:
        if config.connection_string:
            return {"DATABASE_URL": config.connection_string}

        if docker:
            database_url = self._built_url(config, self.docker_host, self.default_port)
        else:
            database_url = self.connection_url(config)

        prefix = self.env_prefix
        return {
            "DATABASE_URL": database_url,
            f"{prefix}_HOST": config.host or "",
            f"{prefix}_PORT": str(config.port or self.default_port),
            self.env_database_key: config.database or "",
            f"{prefix}_USER": config.username or "",
            f"{prefix}_PASSWORD": config.password or "",
        }


class _PostgresFamily(_ServerVariant):
    family = "PostgreSQL"
    driver = "postgresql+psycopg2"
    schemes = ("postgresql", "postgres")
    default_port = 5432
    docker_host = "postgres"
    ssl_suffix = "?sslmode=require"
    env_prefix = "POSTGRES"
    env_database_key = "POSTGRES_DB"

    def _adapter_url(self, config: ConfigLike) -> URL:
        url = self._sqlalchemy_url(config)
        if config.ssl and "sslmode" not in url.query:
            url = url.update_query_dict({"sslmode": "require"})
        return url


class _MySQLFamily(_ServerVariant):
    family = "MySQL"
    driver = "mysql+pymysql"
    schemes = ("mysql",)
    default_port = 3306
    docker_host = "mysql"
    ssl_suffix = "?ssl=true"
    env_prefix = "MYSQL"
    env_database_key = "MYSQL_DATABASE"

    # Query options used by JavaScript drivers; PyMySQL takes SSL via connect_args.
    _SSL_QUERY_KEYS = ("ssl", "sslaccept", "ssl-mode", "sslmode")

    def _adapter_url(self, config: ConfigLike) -> URL:
        url = self._sqlalchemy_url(config)
        return url.difference_update_query(self._SSL_QUERY_KEYS)

    def _connect_args(self, config: ConfigLike) -> dict[str, Any]:
        if config.ssl:
            return {"ssl": {"ssl": True}}
        return {}


class NeonVariant(_PostgresFamily):
    """Managed serverless Postgres; only a connection string is accepted."""

    provider = DatabaseProvider.NEON
    label = "Neon"

    def validate(self, config: ConfigLike) -> list[str]:
        if not config.connection_string:
            return ["Neon connection string is required"]
        return self._scheme_errors(config)

    def environment_template(self, config: ConfigLike, docker: bool = False) -> dict[str, str]:
        return {"DATABASE_URL": config.connection_string or ""}


class PostgreSQLVariant(_PostgresFamily):
    """Self-hosted Postgres: a connection string or host/database/user/password."""

    provider = DatabaseProvider.POSTGRESQL
    label = "PostgreSQL"

    def validate(self, config: ConfigLike) -> list[str]:
        if config.connection_string:
            return self._scheme_errors(config)
        return self._parts_errors(config)


class PlanetScaleVariant(_MySQLFamily):
    """Managed serverless MySQL; only a connection string is accepted."""

    provider = DatabaseProvider.PLANETSCALE
    label = "PlanetScale"

    def validate(self, config: ConfigLike) -> list[str]:
        if not config.connection_string:
            return ["PlanetScale connection string is required"]
        return self._scheme_errors(config)

    def environment_template(self, config: ConfigLike, docker: bool = False) -> dict[str, str]:
        return {"DATABASE_URL": config.connection_string or ""}


class MySQLVariant(_MySQLFamily):
    """Self-hosted MySQL: a connection string or host/database/user/password."""

    provider = DatabaseProvider.MYSQL
    label = "MySQL"

    def validate(self, config: ConfigLike) -> list[str]:
        if config.connection_string:
            return self._scheme_errors(config)
        return self._parts_errors(config)


# =============================================================================
# BACKEND-AS-A-SERVICE
# =============================================================================

class SupabaseVariant(ProviderVariant):
    """Supabase, reached through its PostgREST HTTP API."""

    provider = DatabaseProvider.SUPABASE
    label = "Supabase"

    def validate(self, config: ConfigLike) -> list[str]:
        errors = []
        if not config.supabase_url:
            errors.append("Supabase URL is required")
        if not config.supabase_anon_key:
            errors.append("Supabase Anonymous Key is required")
        if not config.supabase_service_key:
            errors.append("Supabase Service Role Key is required")
        if config.supabase_url and not config.supabase_url.startswith("https://"):
            errors.append("Supabase URL must start with https://")
        return errors

    def connection_url(self, config: ConfigLike) -> str:
        return config.supabase_url or ""

    def create_adapter(
        self,
        config: ConfigLike,
        settings: StorageSettings,
    ) -> ProviderAdapter:
        return RestAdapter(
            base_url=config.supabase_url,
            service_key=config.supabase_service_key,
            max_connections=config.max_connections,
            operation_timeout=settings.operation_timeout_seconds,
            provider_name=self.provider.value,
        )

    def environment_template(self, config: ConfigLike, docker: bool = False) -> dict[str, str]:
        return {
            "SUPABASE_URL": config.supabase_url or "",
            "SUPABASE_ANON_KEY": config.supabase_anon_key or "",
            "SUPABASE_SERVICE_KEY": config.supabase_service_key or "",
        }

    def describe(self, config: ConfigLike) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "host": config.supabase_url,
            "database": None,
            "ssl": True,
        }


# =============================================================================
# EMBEDDED
# =============================================================================

class SQLiteVariant(ProviderVariant):
    """Embedded file database; nothing is required."""

    provider = DatabaseProvider.SQLITE
    label = "SQLite"

    @staticmethod
    def database_path(config: ConfigLike, default: str = DEFAULT_SQLITE_PATH) -> str:
        return config.file_path or default

    def validate(self, config: ConfigLike) -> list[str]:
        return []

    def connection_url(self, config: ConfigLike) -> str:
        return f"sqlite:{self.database_path(config)}"

    def create_adapter(
        self,
        config: ConfigLike,
        settings: StorageSettings,
    ) -> ProviderAdapter:
        path = self.database_path(config, settings.sqlite_database_path)
        return SqlAlchemyAdapter(
            f"sqlite:///{path}",
            provider_name=self.provider.value,
            operation_timeout=settings.operation_timeout_seconds,
        )

    def environment_template(self, config: ConfigLike, docker: bool = False) -> dict[str, str]:
        return {"SQLITE_DATABASE_PATH": self.database_path(config)}

    def describe(self, config: ConfigLike) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "host": None,
            "database": self.database_path(config),
            "ssl": False,
        }


PROVIDERS: dict[DatabaseProvider, ProviderVariant] = {
    variant.provider: variant
    for variant in (
        NeonVariant(),
        PlanetScaleVariant(),
        SupabaseVariant(),
        PostgreSQLVariant(),
        MySQLVariant(),
        SQLiteVariant(),
    )
}


def get_variant(provider: Union[DatabaseProvider, str]) -> ProviderVariant:
    """Look up the variant for a provider value."""
    try:
        return PROVIDERS[DatabaseProvider(provider)]
    except ValueError:
        raise ConfigurationValidationError([f"Unsupported database provider: {provider}"]) from None


def validate_configuration(config: ConfigLike) -> None:
    """
    Raise if the configuration lacks its provider's required fields.

    Raises:
        ConfigurationValidationError: With every problem found
    """
    errors = get_variant(config.provider).validate(config)
    if errors:
        raise ConfigurationValidationError(errors)


def create_adapter(
    config: ConfigLike,
    settings: Optional[StorageSettings] = None,
) -> ProviderAdapter:
    """Open the storage adapter for a configuration."""
    return get_variant(config.provider).create_adapter(config, settings or StorageSettings())

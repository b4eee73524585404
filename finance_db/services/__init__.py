"""Services package."""

from finance_db.services.storage import (
    AuditStorageInterface,
    ConflictError,
    InMemoryAdapter,
    InMemoryAuditStorage,
    InvalidRecordError,
    NotFoundError,
    ProviderAdapter,
    RestAdapter,
    SqlAlchemyAdapter,
    StorageError,
    UnavailableError,
)
from finance_db.services.providers import (
    PROVIDERS,
    ConfigurationValidationError,
    ProviderVariant,
    create_adapter,
    get_variant,
    validate_configuration,
)
from finance_db.services.connection_tester import ConnectionTester, raise_for_failure
from finance_db.services.environment import (
    detect_provider,
    docker_compose_template,
    environment_template,
    parse_env_file,
    render_env_file,
)
from finance_db.services.registry import (
    ConfigurationActiveError,
    ConfigurationNotFoundError,
    ConfigurationRegistry,
    NotConnectedError,
    RegistryError,
)

__all__ = [
    # Storage
    "AuditStorageInterface",
    "ConflictError",
    "InMemoryAdapter",
    "InMemoryAuditStorage",
    "InvalidRecordError",
    "NotFoundError",
    "ProviderAdapter",
    "RestAdapter",
    "SqlAlchemyAdapter",
    "StorageError",
    "UnavailableError",
    # Providers
    "PROVIDERS",
    "ConfigurationValidationError",
    "ProviderVariant",
    "create_adapter",
    "get_variant",
    "validate_configuration",
    # Connection testing
    "ConnectionTester",
    "raise_for_failure",
    # Environment templates
    "detect_provider",
    "docker_compose_template",
    "environment_template",
    "parse_env_file",
    "render_env_file",
    # Registry
    "ConfigurationActiveError",
    "ConfigurationNotFoundError",
    "ConfigurationRegistry",
    "NotConnectedError",
    "RegistryError",
]

"""
Configuration Management for Finance DB

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Provider credentials that arrive through the environment (SUPABASE_*,
DATABASE_URL) are read here too, so the registry can turn them into
regular database configurations at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseSettings):
    """Storage subsystem tuning and bootstrap locations."""

    model_config = SettingsConfigDict(
        env_prefix="FINANCE_DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    registry_path: Optional[str] = Field(
        default="./data/database-configs.json",
        description="JSON file holding database configurations (empty = memory only)"
    )
    sqlite_database_path: str = Field(
        default="./data/finance.db",
        description="Default file for the embedded database"
    )

    # Per-operation limits
    operation_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=300.0,
        description="Timeout applied to every adapter operation"
    )

    # Migration
    migration_fan_out: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Maximum concurrent inserts within one collection"
    )
    migration_error_preview: int = Field(
        default=5,
        ge=1,
        le=50,
        description="How many record failures are quoted in the error message"
    )

    # Connection tester
    tester_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts made by the retrying connection test"
    )

    @field_validator("registry_path")
    @classmethod
    def blank_path_means_memory(cls, v: Optional[str]) -> Optional[str]:
        """An empty path disables file persistence."""
        if v is not None and not v.strip():
            return None
        return v


class SupabaseSettings(BaseSettings):
    """Backend-as-a-service credentials supplied by the deployment."""

    model_config = SettingsConfigDict(
        env_prefix="SUPABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        ...,
        description="Service URL (https://<project>.supabase.co)"
    )
    anon_key: str = Field(
        ...,
        description="Anonymous (public) API key"
    )
    service_key: str = Field(
        ...,
        description="Service-role API key"
    )


class DatabaseUrlSettings(BaseSettings):
    """Connection string supplied by the deployment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    database_url: str = Field(
        ...,
        min_length=1,
        description="Database connection URL"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily: a deployment without Supabase
    # credentials or DATABASE_URL is perfectly valid.

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def supabase(self) -> SupabaseSettings:
        return SupabaseSettings()

    @property
    def database_url(self) -> DatabaseUrlSettings:
        return DatabaseUrlSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("storage", "supabase", "database_url", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results

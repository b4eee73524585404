"""Configuration package."""

from finance_db.config.settings import (
    AppSettings,
    DatabaseUrlSettings,
    Settings,
    StorageSettings,
    SupabaseSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseUrlSettings",
    "Settings",
    "StorageSettings",
    "SupabaseSettings",
    "get_settings",
    "validate_all_settings",
]

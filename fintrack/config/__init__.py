"""Configuration package."""

from fintrack.config.settings import (
    MigrationSettings,
    RuntimeSettings,
    Settings,
    StorageSettings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "MigrationSettings",
    "RuntimeSettings",
    "Settings",
    "StorageSettings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]

"""
Configuration Management for FinTrack

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Each concern (storage, migration, sync) has its own settings group with its
own environment prefix, so a deployment without cloud credentials can still
run the local storage core.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeSettings(BaseSettings):
    """
    Process-level settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="FINTRACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for structured logs"
    )

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class StorageSettings(BaseSettings):
    """Local storage configuration (both backends)."""

    model_config = SettingsConfigDict(
        env_prefix="FINTRACK_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    data_dir: str = Field(
        default=".fintrack",
        description="Directory holding the database file and flat slots"
    )
    database_filename: str = Field(
        default="fintrack.db",
        description="SQLite file used by the structured backend"
    )
    flat_dirname: str = Field(
        default="flat",
        description="Sub-directory of data_dir holding one file per slot"
    )
    flat_quota_bytes: Optional[int] = Field(
        default=5 * 1024 * 1024,
        ge=1024,
        description="Total size limit of the flat store (None disables the check)"
    )

    # Slot names for the flat backend
    transactions_key: str = Field(default="fintrack_transactions")
    budgets_key: str = Field(default="fintrack_budgets")
    recurring_key: str = Field(default="fintrack_recurring")
    settings_key: str = Field(default="fintrack_settings")

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / self.database_filename

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.database_path}"

    @property
    def flat_path(self) -> Path:
        return Path(self.data_dir) / self.flat_dirname


class MigrationSettings(BaseSettings):
    """Flat-to-structured migration configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FINTRACK_MIGRATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    flag_key: str = Field(default="monera_migration_status")
    backup_key: str = Field(default="monera_migration_backup")
    date_key: str = Field(default="monera_migration_date")
    lease_key: str = Field(default="fintrack_lease")

    backup_retention_days: int = Field(
        default=30,
        ge=0,
        description="Days to keep the pre-migration backup"
    )
    auto_migrate: bool = Field(
        default=True,
        description="Run forward migration on startup when flat data is found"
    )
    lease_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Expiry of the cross-process advisory lease"
    )


class SyncSettings(BaseSettings):
    """Cloud sync configuration (Supabase REST endpoint)."""

    model_config = SettingsConfigDict(
        env_prefix="FINTRACK_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    supabase_url: str = Field(
        ...,
        description="Base URL of the Supabase project"
    )
    supabase_key: str = Field(
        ...,
        description="Anon or service key sent as apikey header"
    )
    access_token: Optional[str] = Field(
        default=None,
        description="User JWT; falls back to the key when absent"
    )

    transactions_table: str = Field(default="transactions")
    recurring_table: str = Field(default="recurring_transactions")
    budgets_table: str = Field(default="budgets")
    last_sync_key: str = Field(default="monera-last-sync")

    request_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Timeout for one HTTP request"
    )
    sync_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound for a whole sync pass"
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per request on transport errors"
    )

    @field_validator('supabase_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Supabase URL must be http(s): {v}")
        return v.rstrip("/")


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

    # Sub-settings are loaded lazily so that missing sync credentials
    # do not prevent the local core from starting.

    @property
    def runtime(self) -> RuntimeSettings:
        return RuntimeSettings()

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def migration(self) -> MigrationSettings:
        return MigrationSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings groups.

    Returns a dict of {group_name: is_valid}, plus "<group>_error"
    entries for groups that failed to load.
    """
    results = {}
    settings = get_settings()

    for name in ("runtime", "storage", "migration", "sync"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results

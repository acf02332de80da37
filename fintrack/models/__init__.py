"""
Data Models Package

This package contains all Pydantic models used by FinTrack.
All data flowing through storage, migration and sync must conform to these
schemas.
"""

from fintrack.models.entities import (
    ALL_CATEGORIES,
    DEFAULT_SETTINGS,
    EXPENSE_CATEGORIES,
    INCOME_CATEGORIES,
    SAVINGS_CATEGORIES,
    SNAPSHOT_VERSION,
    AppSettings,
    Budget,
    Currency,
    CurrencyPair,
    DataSnapshot,
    Frequency,
    Language,
    RecurringTemplate,
    StorageStats,
    Theme,
    Transaction,
    TransactionType,
)
from fintrack.models.state import (
    CleanupResult,
    CleanupSummary,
    ImportReport,
    MaterializationReport,
    MigrationErrorKind,
    MigrationInfo,
    MigrationResult,
    MigrationState,
    MigrationStatus,
    SyncPartialFailure,
    SyncResult,
    SyncStatus,
)
from fintrack.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Entity models
    "ALL_CATEGORIES",
    "DEFAULT_SETTINGS",
    "EXPENSE_CATEGORIES",
    "INCOME_CATEGORIES",
    "SAVINGS_CATEGORIES",
    "SNAPSHOT_VERSION",
    "AppSettings",
    "Budget",
    "Currency",
    "CurrencyPair",
    "DataSnapshot",
    "Frequency",
    "Language",
    "RecurringTemplate",
    "StorageStats",
    "Theme",
    "Transaction",
    "TransactionType",
    # State models
    "CleanupResult",
    "CleanupSummary",
    "ImportReport",
    "MaterializationReport",
    "MigrationErrorKind",
    "MigrationInfo",
    "MigrationResult",
    "MigrationState",
    "MigrationStatus",
    "SyncPartialFailure",
    "SyncResult",
    "SyncStatus",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

"""Flat-to-structured migration package."""

from fintrack.migration.coordinator import (
    MigrationCoordinator,
    MigrationStateStore,
    MigrationVerificationError,
)

__all__ = [
    "MigrationCoordinator",
    "MigrationStateStore",
    "MigrationVerificationError",
]

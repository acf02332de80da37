"""
Cloud Sync Package

Push-then-pull reconciliation between the local structured store and a
remote Supabase project, plus maintenance cleanup of duplicate rows.
"""

from fintrack.services.sync.remote import (
    IdentityProvider,
    RemoteError,
    RemoteStore,
    StaticIdentity,
    SupabaseRemoteStore,
)
from fintrack.services.sync.engine import SyncEngine
from fintrack.services.sync.cleanup import DuplicateCleaner

__all__ = [
    "DuplicateCleaner",
    "IdentityProvider",
    "RemoteError",
    "RemoteStore",
    "StaticIdentity",
    "SupabaseRemoteStore",
    "SyncEngine",
]

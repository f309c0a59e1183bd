"""Persistence: async database for credentials and preferences, and the
SQLite-backed on-device calendar store."""

from ketchup_calendar.database.connection import close_db, get_db, init_db
from ketchup_calendar.database.local_store import (
    AuthorizationStatus,
    LocalCalendarRecord,
    LocalEventRecord,
    SqliteCalendarStore,
)
from ketchup_calendar.database.models import Base, Preference, StoredCredential

__all__ = [
    "AuthorizationStatus",
    "Base",
    "LocalCalendarRecord",
    "LocalEventRecord",
    "Preference",
    "SqliteCalendarStore",
    "StoredCredential",
    "close_db",
    "get_db",
    "init_db",
]

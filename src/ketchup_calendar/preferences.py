"""Key-value preference storage.

The engine persists exactly one preference, the default calendar backend,
under the key `default_calendar_type`. Everything else about the store is
generic so the surrounding app can keep its own settings in it.
"""

from __future__ import annotations

import logging
from typing import Protocol

from ketchup_calendar.database.connection import get_db
from ketchup_calendar.database.models import Preference
from ketchup_calendar.models.event import BackendType

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_TYPE_KEY = "default_calendar_type"


class PreferenceStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryPreferenceStore:
    def __init__(self, initial: dict[str, str] | None = None):
        self._values = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


class DatabasePreferenceStore:
    """Preferences kept in the `preferences` table."""

    async def get(self, key: str) -> str | None:
        async with get_db() as db:
            row = await db.get(Preference, key)
            return row.value if row else None

    async def set(self, key: str, value: str) -> None:
        async with get_db() as db:
            row = await db.get(Preference, key)
            if row is None:
                db.add(Preference(key=key, value=value))
            else:
                row.value = value
            await db.commit()

    async def delete(self, key: str) -> None:
        async with get_db() as db:
            row = await db.get(Preference, key)
            if row is not None:
                await db.delete(row)
                await db.commit()


async def load_preference(store: PreferenceStore) -> BackendType | None:
    """Read the default backend. Unknown stored values read as unset."""
    value = await store.get(DEFAULT_CALENDAR_TYPE_KEY)
    if value is None:
        return None
    try:
        return BackendType(value)
    except ValueError:
        logger.warning(f"Ignoring unknown {DEFAULT_CALENDAR_TYPE_KEY} value: {value!r}")
        return None


async def save_preference(store: PreferenceStore, backend: BackendType | None) -> None:
    if backend is None:
        await store.delete(DEFAULT_CALENDAR_TYPE_KEY)
    else:
        await store.set(DEFAULT_CALENDAR_TYPE_KEY, backend.value)

"""Per-day cache of merged event lists.

One entry per calendar day (in the user's zone). An entry is fresh while
`now - fetched_at < ttl`; `get()` treats stale entries as absent. Entries
are replaced whole, never patched.

Concurrent fetches for the same day are serialized through `lock(day)`.
Each day also carries a generation number that every invalidation bumps. A
fetch records the generation before it starts and hands it to `put()`; if an
invalidation happened in between, the result is dropped rather than stored,
so an older read can never overwrite a newer invalidation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from ketchup_calendar.clock import Clock, utc_now
from ketchup_calendar.models.event import CalendarEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Merged, start-ordered events for one day."""

    day: date
    events: tuple[CalendarEvent, ...]
    fetched_at: datetime
    errors: tuple[str, ...] = ()

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.fetched_at < ttl


class EventCache:
    """In-memory cache keyed by calendar day."""

    def __init__(self, ttl: timedelta = timedelta(minutes=5), clock: Clock = utc_now):
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[date, CacheEntry] = {}
        self._locks: dict[date, asyncio.Lock] = {}
        self._generations: dict[date, int] = {}
        self._epoch = 0

    def __len__(self) -> int:
        return len(self._entries)

    def lock(self, day: date) -> asyncio.Lock:
        """Lock serializing fetch-and-store for one day."""
        lock = self._locks.get(day)
        if lock is None:
            lock = self._locks[day] = asyncio.Lock()
        return lock

    def generation(self, day: date) -> tuple[int, int]:
        return (self._epoch, self._generations.get(day, 0))

    def get(self, day: date) -> CacheEntry | None:
        """The fresh entry for `day`, or None if absent or stale."""
        entry = self._entries.get(day)
        if entry is None:
            logger.debug(f"Cache miss for {day}")
            return None
        if not entry.is_fresh(self.clock(), self.ttl):
            logger.debug(f"Cache entry for {day} is stale")
            return None
        logger.debug(f"Cache hit for {day}")
        return entry

    def peek(self, day: date) -> CacheEntry | None:
        """The entry for `day` whether fresh or stale."""
        return self._entries.get(day)

    def days(self) -> list[date]:
        """Days that currently have an entry, fresh or stale."""
        return list(self._entries)

    def fetching_days(self) -> list[date]:
        """Days with a fetch currently holding their lock."""
        return [day for day, lock in self._locks.items() if lock.locked()]

    def put(
        self,
        day: date,
        events: list[CalendarEvent],
        errors: list[str] | None = None,
        generation: tuple[int, int] | None = None,
    ) -> CacheEntry | None:
        """Replace the entry for `day` with a freshly stamped one.

        Args:
            generation: Value of `generation(day)` taken before fetching; if
                the day was invalidated since, nothing is stored

        Returns:
            The stored entry, or None if it was dropped
        """
        entry = CacheEntry(
            day=day,
            events=tuple(events),
            fetched_at=self.clock(),
            errors=tuple(errors or ()),
        )
        if generation is not None and generation != self.generation(day):
            logger.debug(f"Dropping fetch for {day}: invalidated while in flight")
            return None
        self._entries[day] = entry
        return entry

    def invalidate(self, day: date) -> bool:
        """Drop the entry for `day`. Returns whether one was present."""
        self._generations[day] = self._generations.get(day, 0) + 1
        removed = self._entries.pop(day, None) is not None
        logger.debug(f"Invalidated cache for {day}")
        return removed

    def invalidate_all(self) -> None:
        self._epoch += 1
        self._entries.clear()
        logger.debug("Invalidated entire event cache")

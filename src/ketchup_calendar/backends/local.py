"""Adapter for the on-device calendar store.

The store API is synchronous; each call runs in a worker thread through
`asyncio.to_thread` so the event loop is never blocked. A store write is a
single operation, so a local create either fully happens or not at all.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from ketchup_calendar.auth.base import CredentialSession
from ketchup_calendar.backends.base import CalendarBackendAdapter, event_notes
from ketchup_calendar.database.local_store import (
    AuthorizationStatus,
    LocalCalendarRecord,
    LocalEventRecord,
)
from ketchup_calendar.errors import (
    CalendarError,
    EventCreationFailed,
    EventDeletionFailed,
    EventNotFound,
    EventUpdateFailed,
)
from ketchup_calendar.models.event import (
    BackendType,
    CalendarEvent,
    CalendarEventResult,
    ConnectedCalendar,
    DayRange,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocalCalendarStore(Protocol):
    """What the engine needs from an on-device calendar database."""

    def authorization_status(self) -> AuthorizationStatus: ...

    def request_access(self) -> bool: ...

    def list_calendars(self) -> list[LocalCalendarRecord]: ...

    def default_calendar_id(self) -> str | None: ...

    def events_between(
        self,
        start: datetime,
        end: datetime,
        calendar_ids: list[str] | None = None,
    ) -> list[LocalEventRecord]: ...

    def get_event(self, event_id: str) -> LocalEventRecord | None: ...

    def save_event(self, record: LocalEventRecord) -> LocalEventRecord: ...

    def remove_event(self, event_id: str) -> bool: ...

    def add_change_listener(self, listener: Callable[[], None]) -> Callable[[], None]: ...


def _to_event(record: LocalEventRecord) -> CalendarEvent:
    return CalendarEvent(
        source=BackendType.LOCAL,
        provider_event_id=record.id or "",
        calendar_id=record.calendar_id,
        title=record.title or "Untitled Event",
        location=record.location,
        start=record.start,
        end=record.end,
        all_day=record.all_day,
        is_app_event=record.app_marker,
    )


class LocalCalendarAdapter(CalendarBackendAdapter):
    """Backend adapter over a `LocalCalendarStore`.

    Args:
        session: Local permission session
        store: The on-device store
        calendar_ids: Calendars to read (None reads all of them)
    """

    backend = BackendType.LOCAL

    def __init__(
        self,
        session: CredentialSession,
        store: LocalCalendarStore,
        calendar_ids: list[str] | None = None,
    ):
        super().__init__(session)
        self.store = store
        self.calendar_ids = calendar_ids

    async def _read(self, func: Callable[..., T], *args) -> T:
        """Run a store read off the loop; store failures become `CalendarError`."""
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as e:
            raise CalendarError(
                f"Could not read on-device calendar: {e}", backend=self.backend
            ) from e

    async def list_calendars(self) -> list[ConnectedCalendar]:
        await self._authorized()
        records = await self._read(self.store.list_calendars)
        return [
            ConnectedCalendar(
                id=record.id,
                backend=BackendType.LOCAL,
                name=record.title,
                is_enabled=self.calendar_ids is None or record.id in self.calendar_ids,
                is_primary=record.is_default,
            )
            for record in records
        ]

    async def fetch_events(self, day: DayRange) -> list[CalendarEvent]:
        await self._authorized()
        records = await self._read(
            self.store.events_between, day.start, day.end, self.calendar_ids
        )
        logger.debug(f"Fetched {len(records)} local events for {day.day}")
        return [_to_event(record) for record in records]

    async def fetch_event(self, event_id: str) -> CalendarEvent:
        await self._authorized()
        record = await self._read(self.store.get_event, event_id)
        if record is None:
            raise EventNotFound(event_id, backend=self.backend)
        return _to_event(record)

    async def create_event(
        self,
        activity: str,
        location: str | None,
        start: datetime,
        duration: timedelta,
        attendee_emails: list[str] | None = None,
    ) -> CalendarEventResult:
        await self._authorized()

        record = LocalEventRecord(
            id=None,
            calendar_id=None,
            title=activity,
            location=location,
            notes=event_notes(attendee_emails),
            start=start,
            end=start + duration,
            app_marker=True,
        )
        try:
            stored = await asyncio.to_thread(self.store.save_event, record)
        except (KeyError, ValueError, SQLAlchemyError) as e:
            raise EventCreationFailed(
                f"Could not save event to on-device calendar: {e}", backend=self.backend
            ) from e

        logger.info(f"Created on-device event {stored.id}")
        return CalendarEventResult(
            event_id=stored.id,
            backends=(BackendType.LOCAL,),
            local_event_id=stored.id,
        )

    async def update_event(
        self,
        event_id: str,
        title: str | None = None,
        location: str | None = None,
        start: datetime | None = None,
        duration: timedelta | None = None,
        attendee_emails: list[str] | None = None,
    ) -> CalendarEventResult:
        await self._authorized()

        current = await self._read(self.store.get_event, event_id)
        if current is None:
            raise EventNotFound(event_id, backend=self.backend)

        new_start = start or current.start
        new_duration = duration if duration is not None else current.end - current.start
        changes: dict = {"start": new_start, "end": new_start + new_duration}
        if title is not None:
            changes["title"] = title
        if location is not None:
            changes["location"] = location
        if attendee_emails is not None:
            changes["notes"] = event_notes(attendee_emails)

        try:
            stored = await asyncio.to_thread(self.store.save_event, replace(current, **changes))
        except KeyError as e:
            raise EventNotFound(event_id, backend=self.backend) from e
        except (ValueError, SQLAlchemyError) as e:
            raise EventUpdateFailed(
                f"Could not update on-device event: {e}", backend=self.backend
            ) from e

        return CalendarEventResult(
            event_id=stored.id,
            backends=(BackendType.LOCAL,),
            local_event_id=stored.id,
        )

    async def delete_event(self, event_id: str) -> None:
        await self._authorized()
        try:
            removed = await asyncio.to_thread(self.store.remove_event, event_id)
        except SQLAlchemyError as e:
            raise EventDeletionFailed(
                f"Could not delete on-device event: {e}", backend=self.backend
            ) from e
        if not removed:
            raise EventNotFound(event_id, backend=self.backend)
        logger.info(f"Deleted on-device event {event_id}")

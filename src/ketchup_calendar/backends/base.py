"""Calendar backend adapter contract.

Both backends implement the same operations with the same signatures so the
coordinator never needs to know which one it is talking to. Cross-backend
orchestration (choosing a backend, mirroring writes) belongs to the
coordinator, not here.

## Authorization

Every operation calls `session.ensure_authorized()` right before touching
the backend. That refreshes a token inside its refresh buffer and raises
`Unauthorized` when the session cannot be used.

## Errors

Implementations raise only `ketchup_calendar.errors` types:

- missing ids: `EventNotFound`
- failed writes: `EventCreationFailed`, `EventUpdateFailed`,
  `EventDeletionFailed`
- failed reads: `NetworkError`, `InvalidResponse`
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from ketchup_calendar.auth.base import CredentialSession
from ketchup_calendar.models.event import (
    BackendType,
    CalendarEvent,
    CalendarEventResult,
    ConnectedCalendar,
    DayRange,
)

APP_EVENT_NOTE = "KetchupSoon Event 🍅"


class CalendarBackendAdapter(ABC):
    """Uniform access to one calendar backend.

    Attributes:
        backend: Which backend this adapter serves
        session: The backend's credential session (not owned)
    """

    backend: BackendType

    def __init__(self, session: CredentialSession):
        self.session = session

    async def _authorized(self) -> None:
        await self.session.ensure_authorized()

    @abstractmethod
    async def list_calendars(self) -> list[ConnectedCalendar]:
        """Calendars visible to the current credential."""

    @abstractmethod
    async def fetch_events(self, day: DayRange) -> list[CalendarEvent]:
        """Events overlapping one calendar day, ordered by start.

        Returns an empty list when there are no calendars to read.
        """

    @abstractmethod
    async def fetch_event(self, event_id: str) -> CalendarEvent:
        """A single event by provider id."""

    @abstractmethod
    async def create_event(
        self,
        activity: str,
        location: str | None,
        start: datetime,
        duration: timedelta,
        attendee_emails: list[str] | None = None,
    ) -> CalendarEventResult:
        """Create a hangout event ending at `start + duration`."""

    @abstractmethod
    async def update_event(
        self,
        event_id: str,
        title: str | None = None,
        location: str | None = None,
        start: datetime | None = None,
        duration: timedelta | None = None,
        attendee_emails: list[str] | None = None,
    ) -> CalendarEventResult:
        """Change the given fields of an event. None leaves a field as is."""

    @abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Delete an event."""


def event_notes(attendee_emails: list[str] | None) -> str:
    """Notes attached to every event this app creates."""
    lines = [APP_EVENT_NOTE]
    if attendee_emails:
        lines.append(f"Email Recipients: {', '.join(attendee_emails)}")
    return "\n".join(lines)

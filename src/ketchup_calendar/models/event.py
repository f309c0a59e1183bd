"""Unified calendar models shared by both backends.

Events are immutable read models: every fetch builds fresh instances and
nothing mutates them afterwards, so the cache can hand the same objects to
any number of readers.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BackendType(str, Enum):
    """Which calendar backend an object belongs to.

    Declaration order is the merge tie-break order: local before remote.
    """

    LOCAL = "local"
    REMOTE = "remote"

    @property
    def sort_rank(self) -> int:
        return 0 if self is BackendType.LOCAL else 1


class CalendarEvent(BaseModel):
    """An event as read from either backend."""

    model_config = ConfigDict(frozen=True)

    source: BackendType = Field(..., description="Backend the event was read from")
    provider_event_id: str = Field(..., description="Event id at the provider")
    calendar_id: str | None = Field(
        default=None, description="Provider calendar holding the event"
    )
    title: str = Field(default="Untitled Event", description="Event title")
    location: str | None = Field(default=None, description="Free-form location")
    start: datetime = Field(..., description="Start instant (timezone-aware)")
    end: datetime = Field(..., description="End instant (timezone-aware)")
    all_day: bool = Field(default=False, description="Whether this is an all-day event")
    is_app_event: bool = Field(
        default=False, description="Created by this app (explicit marker present)"
    )
    html_link: str | None = Field(default=None, description="Shareable link, if any")
    attendee_emails: tuple[str, ...] = Field(
        default=(), description="Attendee email addresses"
    )

    @property
    def id(self) -> str:
        """Composite identity: source plus provider event id."""
        return f"{self.source.value}_{self.provider_event_id}"

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def sort_key(self) -> tuple[datetime, int]:
        return (self.start, self.source.sort_rank)


class CalendarEventResult(BaseModel):
    """Outcome of a create or update. Returned to callers, never persisted."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., description="Provider id of the primary write")
    html_link: str | None = Field(default=None, description="Shareable link")
    backends: tuple[BackendType, ...] = Field(
        ..., description="Backends the write succeeded on, primary first"
    )
    remote_event_id: str | None = Field(
        default=None, description="Remote provider id when the remote write succeeded"
    )
    local_event_id: str | None = Field(
        default=None, description="Local store id when the local write succeeded"
    )
    mirror_error: str | None = Field(
        default=None, description="Why the best-effort mirror write failed"
    )

    @property
    def is_remote_event(self) -> bool:
        return bool(self.backends) and self.backends[0] is BackendType.REMOTE


class ConnectedCalendar(BaseModel):
    """A calendar visible to the current credential of one backend."""

    model_config = ConfigDict(frozen=True)

    id: str
    backend: BackendType
    name: str
    is_enabled: bool = True
    is_primary: bool = False


class DayRange(BaseModel):
    """A calendar day in a specific time zone, as a half-open instant range."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    day: date
    tz: tzinfo

    @classmethod
    def for_day(cls, day: date | datetime, tz: tzinfo) -> DayRange:
        """Build the range for the calendar day containing `day` in `tz`."""
        if isinstance(day, datetime):
            if day.tzinfo is not None:
                day = day.astimezone(tz)
            day = day.date()
        return cls(day=day, tz=tz)

    @property
    def start(self) -> datetime:
        return datetime.combine(self.day, time.min, tzinfo=self.tz)

    @property
    def end(self) -> datetime:
        return datetime.combine(self.day + timedelta(days=1), time.min, tzinfo=self.tz)

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


def merge_events(*sources: list[CalendarEvent]) -> list[CalendarEvent]:
    """Concatenate per-backend lists and sort by start time.

    The sort is stable and ties fall back to local-before-remote, so the
    result does not depend on the order backends answered in.
    """
    merged: list[CalendarEvent] = []
    for events in sources:
        merged.extend(events)
    return sorted(merged, key=CalendarEvent.sort_key)

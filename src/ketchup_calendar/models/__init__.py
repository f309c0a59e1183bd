"""Domain models for the calendar engine."""

from ketchup_calendar.models.event import (
    BackendType,
    CalendarEvent,
    CalendarEventResult,
    ConnectedCalendar,
    DayRange,
    merge_events,
)

__all__ = [
    "BackendType",
    "CalendarEvent",
    "CalendarEventResult",
    "ConnectedCalendar",
    "DayRange",
    "merge_events",
]

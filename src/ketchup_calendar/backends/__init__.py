"""Calendar backend adapters.

Both adapters implement `CalendarBackendAdapter`:

- `LocalCalendarAdapter`: the on-device calendar store
- `GoogleCalendarAdapter`: Google Calendar over HTTP
"""

from ketchup_calendar.backends.base import CalendarBackendAdapter
from ketchup_calendar.backends.google import (
    BusyInterval,
    ChangedItem,
    ChangeSet,
    GoogleCalendarAdapter,
)
from ketchup_calendar.backends.local import LocalCalendarAdapter, LocalCalendarStore

__all__ = [
    "BusyInterval",
    "CalendarBackendAdapter",
    "ChangeSet",
    "ChangedItem",
    "GoogleCalendarAdapter",
    "LocalCalendarAdapter",
    "LocalCalendarStore",
]

"""HTTP API over the calendar coordinator.

## API Structure

- /health - Liveness check
- /api/calendar - Events, hangouts, cache and backend preference
- /auth - On-device permission, Google sign-in and sign-out

The API is a thin layer: every route delegates to `CalendarCoordinator`
and calendar errors are mapped to HTTP status codes in one place.
"""

from ketchup_calendar.api.app import create_app

__all__ = ["create_app"]

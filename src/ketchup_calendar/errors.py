"""Error taxonomy for the calendar engine.

Every failure that crosses a component boundary is one of the types below.
Adapters translate transport and provider errors into them; the coordinator
decides which ones surface to callers.

## Propagation

- `Unauthorized` / `AuthDenied`: raised by credential sessions. Refresh
  failures are retried once through silent re-authorization before
  `Unauthorized` surfaces.
- `EventCreationFailed`, `EventUpdateFailed`, `EventDeletionFailed`,
  `EventNotFound`: write-path errors, always surfaced to the caller.
- `InvalidResponse`: the provider answered with a body we cannot parse.
- `NetworkError` / `RateLimitError`: transient transport failures. The remote
  adapter retries these before raising.
- `SyncTokenExpired`: the incremental change cursor is no longer valid and a
  full window scan is required.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ketchup_calendar.models.event import BackendType


class CalendarError(Exception):
    """Base exception for calendar engine errors."""

    def __init__(
        self,
        message: str,
        backend: BackendType | None = None,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.status_code = status_code
        self.response_body = response_body


class Unauthorized(CalendarError):
    """Raised when a session is not authorized or has been revoked."""

    def __init__(
        self,
        message: str = "Not authorized to access calendar",
        backend: BackendType | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, backend=backend, status_code=status_code)


class AuthDenied(CalendarError):
    """Raised when the user declines an interactive consent flow."""

    def __init__(
        self,
        message: str = "Calendar access was denied",
        backend: BackendType | None = None,
    ):
        super().__init__(message, backend=backend)


class EventCreationFailed(CalendarError):
    """Raised when an event could not be created."""


class EventUpdateFailed(CalendarError):
    """Raised when an event could not be updated."""


class EventDeletionFailed(CalendarError):
    """Raised when an event could not be deleted."""


class EventNotFound(CalendarError):
    """Raised when an event id does not exist on the backend."""

    def __init__(
        self,
        event_id: str,
        backend: BackendType | None = None,
        status_code: int | None = None,
    ):
        super().__init__(
            f"Event not found: {event_id}",
            backend=backend,
            status_code=status_code,
        )
        self.event_id = event_id


class InvalidResponse(CalendarError):
    """Raised when a provider reply is malformed."""


class NetworkError(CalendarError):
    """Raised on transient, backend-specific transport failures."""


class RateLimitError(NetworkError):
    """Raised when the provider rate limit is exceeded."""

    def __init__(
        self,
        backend: BackendType | None = None,
        retry_after: int | None = None,
        status_code: int | None = 429,
    ):
        super().__init__(
            "Rate limit exceeded",
            backend=backend,
            status_code=status_code,
        )
        self.retry_after = retry_after


class SyncTokenExpired(CalendarError):
    """Raised when an incremental sync token is rejected (HTTP 410)."""

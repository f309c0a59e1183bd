"""Google Calendar v3 adapter.

Talks to the Calendar REST API directly over httpx with the bearer token of
a `GoogleCredentialSession`.

## API Documentation

https://developers.google.com/calendar/api/v3/reference

## Requests

- Day reads: `events.list` with `timeMin`/`timeMax` bounding the local day,
  `singleEvents=true` (recurring events expanded) and `orderBy=startTime`
- Writes: go to the dedicated app calendar ("Ketchup Soon Events"), found
  or created by name on first use. Inserts, patches and deletes pass
  `sendUpdates=all` so attendees are notified.
- Change detection: `events.list` with a sync token, or, without one, the
  events updated in a trailing window ordered by `updated`
- Free/busy: `freeBusy.query`

## Rate Limits

Google Calendar API quotas apply per user (500 queries per 100 seconds by
default). Timeouts, connection failures, 429 and 5xx responses are retried
with exponential backoff before surfacing as `NetworkError`.

## App marker

Events created here carry `extendedProperties.private.ketchupsoon = "1"`;
`CalendarEvent.is_app_event` is read from that property only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any
from urllib.parse import quote

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ketchup_calendar.auth.google import GoogleCredentialSession
from ketchup_calendar.backends.base import APP_EVENT_NOTE, CalendarBackendAdapter
from ketchup_calendar.errors import (
    AuthDenied,
    CalendarError,
    EventCreationFailed,
    EventDeletionFailed,
    EventNotFound,
    EventUpdateFailed,
    InvalidResponse,
    NetworkError,
    RateLimitError,
    SyncTokenExpired,
    Unauthorized,
)
from ketchup_calendar.models.event import (
    BackendType,
    CalendarEvent,
    CalendarEventResult,
    ConnectedCalendar,
    DayRange,
)

logger = logging.getLogger(__name__)

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
APP_EVENT_PROPERTY = "ketchupsoon"
APP_CALENDAR_DESCRIPTION = (
    "Calendar for Ketchup Soon events - Managed by the Ketchup Soon app"
)
PAGE_SIZE = 250
# Event id -> calendar id entries kept for routing edits; oldest evicted first
MAX_TRACKED_EVENTS = 2000


@dataclass
class ChangedItem:
    """One entry of a change set. Cancelled items may lack times."""

    event_id: str
    cancelled: bool = False
    start: datetime | None = None
    end: datetime | None = None


@dataclass
class ChangeSet:
    """Result of one incremental change query."""

    items: list[ChangedItem]
    next_sync_token: str | None


@dataclass
class BusyInterval:
    """A busy block reported by the free/busy endpoint."""

    calendar_id: str
    start: datetime
    end: datetime


def _parse_instant(data: dict[str, Any], tz: tzinfo) -> tuple[datetime | None, bool]:
    """Parse an event `start`/`end` object. Returns (instant, is_all_day)."""
    if "dateTime" in data:
        return datetime.fromisoformat(data["dateTime"].replace("Z", "+00:00")), False
    if "date" in data:
        return datetime.combine(date.fromisoformat(data["date"]), time.min, tzinfo=tz), True
    return None, False


def _format_instant(value: datetime) -> str:
    return value.isoformat()


def parse_event(data: dict[str, Any], calendar_id: str, tz: tzinfo) -> CalendarEvent:
    """Build a `CalendarEvent` from an API event resource.

    Raises:
        InvalidResponse: If the resource has no id or no usable times
    """
    try:
        event_id = data["id"]
        start, all_day = _parse_instant(data.get("start", {}), tz)
        end, _ = _parse_instant(data.get("end", {}), tz)
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidResponse(
            f"Malformed event resource: {e}", backend=BackendType.REMOTE
        ) from e
    if start is None or end is None:
        raise InvalidResponse(
            f"Event {event_id} has no start or end", backend=BackendType.REMOTE
        )

    private = data.get("extendedProperties", {}).get("private", {})
    return CalendarEvent(
        source=BackendType.REMOTE,
        provider_event_id=event_id,
        calendar_id=calendar_id,
        title=data.get("summary") or "Untitled Event",
        location=data.get("location"),
        start=start,
        end=end,
        all_day=all_day,
        is_app_event=private.get(APP_EVENT_PROPERTY) == "1",
        html_link=data.get("htmlLink"),
        attendee_emails=tuple(
            a["email"] for a in data.get("attendees", []) if a.get("email")
        ),
    )


def _attendees(emails: list[str]) -> list[dict[str, Any]]:
    return [
        {"email": email, "responseStatus": "needsAction", "optional": False}
        for email in emails
    ]


class GoogleCalendarAdapter(CalendarBackendAdapter):
    """Backend adapter for Google Calendar.

    Example:
        ```python
        async with GoogleCalendarAdapter(session, tz=settings.tzinfo) as adapter:
            events = await adapter.fetch_events(DayRange.for_day(today, tz))
        ```
    """

    backend = BackendType.REMOTE

    def __init__(
        self,
        session: GoogleCredentialSession,
        http_client: httpx.AsyncClient | None = None,
        app_calendar_name: str = "Ketchup Soon Events",
        use_app_calendar: bool = True,
        read_calendar_ids: list[str] | None = None,
        monitor_calendar_id: str = "primary",
        timeout: float = 30.0,
        tz: tzinfo = timezone.utc,
    ):
        """Initialize the adapter.

        Args:
            session: Google credential session (not owned)
            http_client: Shared client; one is created lazily when omitted
            app_calendar_name: Name of the dedicated calendar for writes
            use_app_calendar: Write to the app calendar (else to primary)
            read_calendar_ids: Calendars merged into day reads
            monitor_calendar_id: Calendar whose change stream is polled
            timeout: Request timeout in seconds
            tz: Zone for all-day events and written event times
        """
        super().__init__(session)
        self.google_session = session
        self.app_calendar_name = app_calendar_name
        self.use_app_calendar = use_app_calendar
        self.read_calendar_ids = list(read_calendar_ids or ["primary"])
        self.monitor_calendar_id = monitor_calendar_id
        self.timeout = timeout
        self.tz = tz
        self._client = http_client
        self._owns_client = http_client is None
        self._app_calendar_id: str | None = None
        self._app_calendar_lock = asyncio.Lock()
        self._app_calendar_looked_up = False
        self._event_calendars: dict[str, str] = {}

    async def __aenter__(self) -> GoogleCalendarAdapter:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def reset(self) -> None:
        """Forget everything learned about the signed-in account.

        Called when the account changes: the app calendar and the calendar
        each event lives in belong to the previous account.
        """
        self._app_calendar_id = None
        self._app_calendar_looked_up = False
        self._event_calendars.clear()

    def _track_event(self, event_id: str, calendar_id: str) -> None:
        self._event_calendars.pop(event_id, None)
        self._event_calendars[event_id] = calendar_id
        while len(self._event_calendars) > MAX_TRACKED_EVENTS:
            del self._event_calendars[next(iter(self._event_calendars))]

    def _forget_app_calendar(self, calendar_id: str) -> bool:
        """Drop a cached app calendar id that Google no longer knows.

        Returns whether `calendar_id` was the cached app calendar.
        """
        if calendar_id != self._app_calendar_id:
            return False
        logger.warning(f"Google calendar '{self.app_calendar_name}' is gone; looking it up again")
        self._app_calendar_id = None
        self._app_calendar_looked_up = False
        self._event_calendars = {
            e: c for e, c in self._event_calendars.items() if c != calendar_id
        }
        return True

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    # -- transport --------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(
            (httpx.TimeoutException, httpx.NetworkError, NetworkError)
        ),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one request, refreshing the session first.

        Raises:
            RateLimitError: On 429 (retried)
            NetworkError: On 5xx (retried)
        """
        await self._authorized()

        response = await self._get_client().request(
            method,
            f"{CALENDAR_API_BASE}{path}",
            params=params,
            json=json,
            headers={
                "Authorization": f"Bearer {self.google_session.access_token}",
                "Accept": "application/json",
            },
        )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                backend=self.backend,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 500:
            raise NetworkError(
                f"Google Calendar server error: {response.status_code}",
                backend=self.backend,
                status_code=response.status_code,
                response_body=response.text,
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> dict[str, Any]:
        """Send a request and decode the JSON body.

        Raises:
            Unauthorized: On 401/403
            EventNotFound: On 404/410 when `event_id` is given
            SyncTokenExpired: On 410 otherwise
            CalendarError: On any other 4xx
            InvalidResponse: If the body is not a JSON object
            NetworkError: On transport failure after retries
        """
        try:
            response = await self._send(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            logger.warning(f"Google Calendar {method} {path} failed: {e}")
            raise NetworkError(f"Google Calendar request failed: {e}", backend=self.backend) from e

        status = response.status_code
        if status in (401, 403):
            raise Unauthorized(
                "Google Calendar rejected the credentials",
                backend=self.backend,
                status_code=status,
            )
        if event_id is not None and status in (404, 410):
            raise EventNotFound(event_id, backend=self.backend, status_code=status)
        if status == 410:
            raise SyncTokenExpired(
                "Sync token expired", backend=self.backend, status_code=status
            )
        if status >= 400:
            raise CalendarError(
                f"Google Calendar request failed: {status}",
                backend=self.backend,
                status_code=status,
                response_body=response.text,
            )

        if status == 204 or not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponse(
                "Google Calendar returned a non-JSON body",
                backend=self.backend,
                status_code=status,
                response_body=response.text,
            ) from e
        if not isinstance(data, dict):
            raise InvalidResponse(
                "Google Calendar returned an unexpected body", backend=self.backend
            )
        return data

    async def _paginate(
        self, path: str, params: dict[str, Any]
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Follow `nextPageToken` to the end. Returns (items, nextSyncToken)."""
        items: list[dict[str, Any]] = []
        params = dict(params)

        while True:
            data = await self._request("GET", path, params=params)
            page = data.get("items", [])
            if not isinstance(page, list):
                raise InvalidResponse("items is not a list", backend=self.backend)
            items.extend(page)

            page_token = data.get("nextPageToken")
            if not page_token:
                return items, data.get("nextSyncToken")
            params["pageToken"] = page_token

    @staticmethod
    def _events_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            path += f"/{quote(event_id, safe='')}"
        return path

    # -- calendars --------------------------------------------------------

    async def list_calendars(self) -> list[ConnectedCalendar]:
        items, _ = await self._paginate("/users/me/calendarList", {})
        read_ids = set(self._read_calendar_ids())
        return [
            ConnectedCalendar(
                id=item["id"],
                backend=BackendType.REMOTE,
                name=item.get("summaryOverride") or item.get("summary", ""),
                is_enabled=(
                    item["id"] in read_ids
                    or (item.get("primary", False) and "primary" in read_ids)
                ),
                is_primary=item.get("primary", False),
            )
            for item in items
            if "id" in item
        ]

    async def ensure_app_calendar(self) -> str:
        """Find or create the dedicated app calendar and return its id.

        Idempotent: the id is cached and concurrent callers share one lookup.
        """
        if not self.use_app_calendar:
            return "primary"
        if self._app_calendar_id is not None:
            return self._app_calendar_id

        async with self._app_calendar_lock:
            if self._app_calendar_id is None:
                await self._find_app_calendar()
            if self._app_calendar_id is None:
                body: dict[str, Any] = {
                    "summary": self.app_calendar_name,
                    "description": APP_CALENDAR_DESCRIPTION,
                }
                zone_name = getattr(self.tz, "key", None)
                if zone_name:
                    body["timeZone"] = zone_name
                created = await self._request("POST", "/calendars", json=body)
                if "id" not in created:
                    raise InvalidResponse("Created calendar has no id", backend=self.backend)
                self._app_calendar_id = created["id"]
                logger.info(f"Created Google calendar '{self.app_calendar_name}'")

            return self._app_calendar_id

    async def _find_app_calendar(self) -> None:
        items, _ = await self._paginate("/users/me/calendarList", {})
        existing = next(
            (c for c in items if c.get("summary") == self.app_calendar_name), None
        )
        if existing is not None:
            self._app_calendar_id = existing["id"]
        self._app_calendar_looked_up = True

    async def _discover_app_calendar(self) -> None:
        """Look the app calendar up once for reads, without creating it."""
        if not self.use_app_calendar or self._app_calendar_looked_up:
            return
        async with self._app_calendar_lock:
            if not self._app_calendar_looked_up:
                await self._find_app_calendar()

    def _read_calendar_ids(self) -> list[str]:
        ids = list(self.read_calendar_ids)
        if self._app_calendar_id and self._app_calendar_id not in ids:
            ids.append(self._app_calendar_id)
        return ids

    async def _write_calendar_id(self) -> str:
        return await self.ensure_app_calendar()

    # -- reads ------------------------------------------------------------

    async def fetch_events(self, day: DayRange) -> list[CalendarEvent]:
        events: list[CalendarEvent] = []
        params = {
            "timeMin": _format_instant(day.start),
            "timeMax": _format_instant(day.end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": PAGE_SIZE,
        }

        await self._discover_app_calendar()
        for calendar_id in self._read_calendar_ids():
            try:
                items, _ = await self._paginate(self._events_path(calendar_id), params)
            except CalendarError as e:
                if e.status_code == 404 and self._forget_app_calendar(calendar_id):
                    continue
                raise
            for item in items:
                if item.get("status") == "cancelled":
                    continue
                event = parse_event(item, calendar_id, self.tz)
                self._track_event(event.provider_event_id, calendar_id)
                events.append(event)

        logger.debug(f"Fetched {len(events)} Google events for {day.day}")
        return sorted(events, key=lambda e: e.start)

    async def _calendar_for(self, event_id: str) -> str:
        return self._event_calendars.get(event_id) or await self._write_calendar_id()

    async def fetch_event(self, event_id: str) -> CalendarEvent:
        calendar_id = await self._calendar_for(event_id)
        data = await self._request(
            "GET", self._events_path(calendar_id, event_id), event_id=event_id
        )
        if data.get("status") == "cancelled":
            raise EventNotFound(event_id, backend=self.backend)
        return parse_event(data, calendar_id, self.tz)

    async def get_attendee_emails(self, event_id: str) -> list[str]:
        """Attendee emails currently on a remote event."""
        event = await self.fetch_event(event_id)
        return list(event.attendee_emails)

    # -- writes -----------------------------------------------------------

    def _time_body(self, value: datetime) -> dict[str, str]:
        body = {"dateTime": _format_instant(value)}
        zone_name = getattr(self.tz, "key", None)
        if zone_name:
            body["timeZone"] = zone_name
        return body

    async def _insert_event(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST",
            self._events_path(calendar_id),
            params={"sendUpdates": "all"},
            json=body,
        )

    async def create_event(
        self,
        activity: str,
        location: str | None,
        start: datetime,
        duration: timedelta,
        attendee_emails: list[str] | None = None,
    ) -> CalendarEventResult:
        body: dict[str, Any] = {
            "summary": activity,
            "description": APP_EVENT_NOTE,
            "start": self._time_body(start),
            "end": self._time_body(start + duration),
            "guestsCanModify": True,
            "guestsCanSeeOtherGuests": True,
            "guestsCanInviteOthers": False,
            "anyoneCanAddSelf": False,
            "transparency": "opaque",
            "visibility": "private",
            "extendedProperties": {"private": {APP_EVENT_PROPERTY: "1"}},
        }
        if location:
            body["location"] = location
        if attendee_emails:
            body["attendees"] = _attendees(attendee_emails)

        try:
            calendar_id = await self._write_calendar_id()
            try:
                created = await self._insert_event(calendar_id, body)
            except CalendarError as e:
                if e.status_code != 404 or not self._forget_app_calendar(calendar_id):
                    raise
                calendar_id = await self._write_calendar_id()
                created = await self._insert_event(calendar_id, body)
        except (Unauthorized, AuthDenied):
            raise
        except CalendarError as e:
            raise EventCreationFailed(
                f"Could not create Google event: {e.message}",
                backend=self.backend,
                status_code=e.status_code,
                response_body=e.response_body,
            ) from e

        event_id = created.get("id")
        if not event_id:
            raise EventCreationFailed("Created event has no id", backend=self.backend)

        self._track_event(event_id, calendar_id)
        logger.info(f"Created Google event {event_id}")
        return CalendarEventResult(
            event_id=event_id,
            html_link=created.get("htmlLink"),
            backends=(BackendType.REMOTE,),
            remote_event_id=event_id,
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
        body: dict[str, Any] = {}
        if title is not None:
            body["summary"] = title
        if location is not None:
            body["location"] = location
        if attendee_emails is not None:
            body["attendees"] = _attendees(attendee_emails)

        if start is not None or duration is not None:
            if start is None or duration is None:
                current = await self.fetch_event(event_id)
                start = start or current.start
                duration = duration if duration is not None else current.duration
            body["start"] = self._time_body(start)
            body["end"] = self._time_body(start + duration)

        calendar_id = await self._calendar_for(event_id)
        try:
            updated = await self._request(
                "PATCH",
                self._events_path(calendar_id, event_id),
                params={"sendUpdates": "all"},
                json=body,
                event_id=event_id,
            )
        except (Unauthorized, EventNotFound):
            raise
        except CalendarError as e:
            raise EventUpdateFailed(
                f"Could not update Google event: {e.message}",
                backend=self.backend,
                status_code=e.status_code,
                response_body=e.response_body,
            ) from e

        return CalendarEventResult(
            event_id=event_id,
            html_link=updated.get("htmlLink"),
            backends=(BackendType.REMOTE,),
            remote_event_id=event_id,
        )

    async def delete_event(self, event_id: str) -> None:
        calendar_id = await self._calendar_for(event_id)
        try:
            await self._request(
                "DELETE",
                self._events_path(calendar_id, event_id),
                params={"sendUpdates": "all"},
                event_id=event_id,
            )
        except (Unauthorized, EventNotFound):
            raise
        except CalendarError as e:
            raise EventDeletionFailed(
                f"Could not delete Google event: {e.message}",
                backend=self.backend,
                status_code=e.status_code,
            ) from e

        self._event_calendars.pop(event_id, None)
        logger.info(f"Deleted Google event {event_id}")

    # -- change detection -------------------------------------------------

    async def list_changes(
        self,
        sync_token: str | None,
        updated_min: datetime | None = None,
    ) -> ChangeSet:
        """Changes since `sync_token`, or since `updated_min` without one.

        Raises:
            SyncTokenExpired: If Google no longer accepts the token
        """
        params: dict[str, Any] = {"singleEvents": "true", "maxResults": PAGE_SIZE}
        if sync_token:
            params["syncToken"] = sync_token
        else:
            params["showDeleted"] = "true"
            params["orderBy"] = "updated"
            if updated_min is not None:
                params["updatedMin"] = _format_instant(updated_min)

        items, next_token = await self._paginate(
            self._events_path(self.monitor_calendar_id), params
        )

        changed: list[ChangedItem] = []
        for item in items:
            if "id" not in item:
                continue
            try:
                start, _ = _parse_instant(item.get("start", {}), self.tz)
                end, _ = _parse_instant(item.get("end", {}), self.tz)
            except ValueError:
                start = end = None
            changed.append(
                ChangedItem(
                    event_id=item["id"],
                    cancelled=item.get("status") == "cancelled",
                    start=start,
                    end=end,
                )
            )
        return ChangeSet(items=changed, next_sync_token=next_token)

    # -- free/busy --------------------------------------------------------

    async def query_free_busy(
        self,
        start: datetime,
        end: datetime,
        calendar_ids: list[str] | None = None,
    ) -> list[BusyInterval]:
        """Busy blocks in [start, end) across the given calendars."""
        ids = calendar_ids or self._read_calendar_ids()
        data = await self._request(
            "POST",
            "/freeBusy",
            json={
                "timeMin": _format_instant(start),
                "timeMax": _format_instant(end),
                "items": [{"id": calendar_id} for calendar_id in ids],
            },
        )

        intervals: list[BusyInterval] = []
        for calendar_id, info in data.get("calendars", {}).items():
            for block in info.get("busy", []):
                try:
                    intervals.append(
                        BusyInterval(
                            calendar_id=calendar_id,
                            start=datetime.fromisoformat(block["start"].replace("Z", "+00:00")),
                            end=datetime.fromisoformat(block["end"].replace("Z", "+00:00")),
                        )
                    )
                except (KeyError, ValueError) as e:
                    raise InvalidResponse(
                        f"Malformed busy block: {e}", backend=self.backend
                    ) from e
        return sorted(intervals, key=lambda b: b.start)

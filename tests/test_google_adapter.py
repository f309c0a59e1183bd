"""Tests for the Google Calendar adapter.

Requests are served by `GoogleApi` from conftest through httpx.MockTransport.
"""

import json
from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from ketchup_calendar.backends.google import GoogleCalendarAdapter, parse_event
from ketchup_calendar.errors import (
    EventCreationFailed,
    EventNotFound,
    InvalidResponse,
    NetworkError,
    RateLimitError,
    SyncTokenExpired,
    Unauthorized,
)
from ketchup_calendar.models.event import BackendType, DayRange

from conftest import event_item

EVENTS = "/calendar/v3/calendars/primary/events"
APP_EVENTS = "/calendar/v3/calendars/app-cal/events"
DAY = DayRange.for_day(date(2024, 6, 15), timezone.utc)


def items(*resources, **extra) -> httpx.Response:
    return httpx.Response(200, json={"items": list(resources), **extra})


class TestParseEvent:
    """Tests for mapping API resources to events."""

    def test_timed_event(self):
        event = parse_event(
            event_item("e1", "2024-06-15T10:00:00Z", "2024-06-15T11:00:00Z", "Lunch",
                       attendees=[{"email": "a@example.com"}, {"displayName": "no email"}]),
            "primary",
            timezone.utc,
        )
        assert event.id == "remote_e1"
        assert event.start == datetime(2024, 6, 15, 10, tzinfo=timezone.utc)
        assert event.all_day is False
        assert event.is_app_event is False
        assert event.attendee_emails == ("a@example.com",)

    def test_all_day_event(self):
        event = parse_event(
            {"id": "e2", "start": {"date": "2024-06-15"}, "end": {"date": "2024-06-16"}},
            "primary",
            timezone.utc,
        )
        assert event.all_day is True
        assert event.duration == timedelta(days=1)
        assert event.title == "Untitled Event"

    def test_app_marker_is_explicit(self):
        marked = parse_event(
            event_item("e3", "2024-06-15T10:00:00Z", "2024-06-15T11:00:00Z", app=True),
            "primary",
            timezone.utc,
        )
        described = parse_event(
            event_item("e4", "2024-06-15T10:00:00Z", "2024-06-15T11:00:00Z",
                       description="KetchupSoon Event 🍅"),
            "primary",
            timezone.utc,
        )
        assert marked.is_app_event is True
        assert described.is_app_event is False

    def test_missing_times(self):
        with pytest.raises(InvalidResponse):
            parse_event({"id": "e5", "start": {}}, "primary", timezone.utc)


class TestReads:
    """Tests for day reads and single-event fetches."""

    @pytest.mark.asyncio
    async def test_fetch_events_query(self, google_adapter: GoogleCalendarAdapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("GET", EVENTS, items(
            event_item("late", "2024-06-15T15:00:00Z", "2024-06-15T16:00:00Z"),
            event_item("gone", "2024-06-15T09:00:00Z", "2024-06-15T10:00:00Z", status="cancelled"),
        ))
        google_api.route("GET", APP_EVENTS, items(
            event_item("early", "2024-06-15T08:00:00Z", "2024-06-15T09:00:00Z", app=True),
        ))

        events = await google_adapter.fetch_events(DAY)

        assert [e.provider_event_id for e in events] == ["early", "late"]
        request = google_api.calls("GET", EVENTS)[0]
        assert request.url.params["timeMin"] == "2024-06-15T00:00:00+00:00"
        assert request.url.params["timeMax"] == "2024-06-16T00:00:00+00:00"
        assert request.url.params["singleEvents"] == "true"
        assert request.url.params["orderBy"] == "startTime"
        assert request.headers["Authorization"] == "Bearer stored-access"

    @pytest.mark.asyncio
    async def test_fetch_follows_pages(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("pageToken") == "p2":
                return items(event_item("b", "2024-06-15T12:00:00Z", "2024-06-15T13:00:00Z"))
            return items(
                event_item("a", "2024-06-15T10:00:00Z", "2024-06-15T11:00:00Z"),
                nextPageToken="p2",
            )

        google_api.route("GET", EVENTS, handler)

        events = await google_adapter.fetch_events(DAY)

        assert [e.provider_event_id for e in events] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_fetch_requires_authorization(self, google_adapter, google_api):
        with pytest.raises(Unauthorized):
            await google_adapter.fetch_events(DAY)
        assert google_api.requests == []

    @pytest.mark.asyncio
    async def test_fetch_event_not_found(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False

        with pytest.raises(EventNotFound):
            await google_adapter.fetch_event("missing")

    @pytest.mark.asyncio
    async def test_attendee_emails(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        google_api.route("GET", f"{EVENTS}/e1", httpx.Response(200, json=event_item(
            "e1", "2024-06-15T10:00:00Z", "2024-06-15T11:00:00Z",
            attendees=[{"email": "a@example.com"}, {"email": "b@example.com"}],
        )))

        assert await google_adapter.get_attendee_emails("e1") == ["a@example.com", "b@example.com"]

    @pytest.mark.asyncio
    async def test_list_calendars(self, google_adapter, google_session):
        await google_session.authorize()

        calendars = await google_adapter.list_calendars()

        assert {c.id for c in calendars} == {"primary-id", "app-cal"}
        primary = next(c for c in calendars if c.is_primary)
        assert primary.is_enabled
        assert all(c.backend is BackendType.REMOTE for c in calendars)


class TestErrorMapping:
    """Tests for status code and transport error mapping."""

    @pytest.mark.asyncio
    async def test_unauthorized_status(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        google_api.route("GET", EVENTS, httpx.Response(401))

        with pytest.raises(Unauthorized):
            await google_adapter.fetch_events(DAY)

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        responses = [httpx.Response(503), httpx.Response(503), items()]
        google_api.route("GET", EVENTS, lambda request: responses.pop(0))

        assert await google_adapter.fetch_events(DAY) == []
        assert len(google_api.calls("GET", EVENTS)) == 3

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_retries(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        google_api.route("GET", EVENTS, httpx.Response(429, headers={"Retry-After": "7"}))

        with pytest.raises(RateLimitError) as exc_info:
            await google_adapter.fetch_events(DAY)
        assert exc_info.value.retry_after == 7
        assert len(google_api.calls("GET", EVENTS)) == 3

    @pytest.mark.asyncio
    async def test_transport_error_becomes_network_error(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False

        def broken(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        google_api.route("GET", EVENTS, broken)

        with pytest.raises(NetworkError):
            await google_adapter.fetch_events(DAY)

    @pytest.mark.asyncio
    async def test_non_json_body(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        google_api.route("GET", EVENTS, httpx.Response(200, text="<html>"))

        with pytest.raises(InvalidResponse):
            await google_adapter.fetch_events(DAY)


class TestWrites:
    """Tests for create, update and delete."""

    @pytest.mark.asyncio
    async def test_create_event_body(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("POST", APP_EVENTS, httpx.Response(
            200, json={"id": "new-1", "htmlLink": "https://calendar.google.com/e/new-1"}
        ))
        start = datetime(2024, 6, 15, 18, tzinfo=timezone.utc)

        result = await google_adapter.create_event(
            "Dinner", "Luigi's", start, timedelta(hours=2), ["a@example.com"]
        )

        assert result.event_id == "new-1"
        assert result.remote_event_id == "new-1"
        assert result.backends == (BackendType.REMOTE,)
        assert result.is_remote_event

        request = google_api.calls("POST", APP_EVENTS)[0]
        assert request.url.params["sendUpdates"] == "all"
        body = json.loads(request.content)
        assert body["summary"] == "Dinner"
        assert body["location"] == "Luigi's"
        assert body["start"]["dateTime"] == "2024-06-15T18:00:00+00:00"
        assert body["end"]["dateTime"] == "2024-06-15T20:00:00+00:00"
        assert body["extendedProperties"] == {"private": {"ketchupsoon": "1"}}
        assert body["attendees"] == [
            {"email": "a@example.com", "responseStatus": "needsAction", "optional": False}
        ]

    @pytest.mark.asyncio
    async def test_create_makes_app_calendar_once(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("GET", "/calendar/v3/users/me/calendarList", items())
        google_api.route("POST", "/calendar/v3/calendars", httpx.Response(200, json={"id": "made"}))
        google_api.route("POST", "/calendar/v3/calendars/made/events",
                         lambda request: httpx.Response(200, json={"id": "x"}))
        start = datetime(2024, 6, 15, 18, tzinfo=timezone.utc)

        await google_adapter.create_event("A", None, start, timedelta(hours=1))
        await google_adapter.create_event("B", None, start, timedelta(hours=1))

        assert len(google_api.calls("POST", "/calendar/v3/calendars")) == 1
        body = json.loads(google_api.calls("POST", "/calendar/v3/calendars")[0].content)
        assert body["summary"] == "Ketchup Soon Events"

    @pytest.mark.asyncio
    async def test_create_failure(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("POST", APP_EVENTS, httpx.Response(400, json={"error": "bad"}))

        with pytest.raises(EventCreationFailed) as exc_info:
            await google_adapter.create_event(
                "Dinner", None, datetime(2024, 6, 15, 18, tzinfo=timezone.utc), timedelta(hours=1)
            )
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_update_patches_given_fields(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        google_api.route("PATCH", f"{EVENTS}/e1", httpx.Response(200, json={"id": "e1"}))

        await google_adapter.update_event(
            "e1",
            title="Brunch",
            start=datetime(2024, 6, 16, 11, tzinfo=timezone.utc),
            duration=timedelta(minutes=90),
        )

        body = json.loads(google_api.calls("PATCH", f"{EVENTS}/e1")[0].content)
        assert body["summary"] == "Brunch"
        assert body["end"]["dateTime"] == "2024-06-16T12:30:00+00:00"
        assert "location" not in body
        assert "attendees" not in body

    @pytest.mark.asyncio
    async def test_update_start_keeps_duration(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        google_api.route("GET", f"{EVENTS}/e1", httpx.Response(200, json=event_item(
            "e1", "2024-06-15T10:00:00Z", "2024-06-15T10:45:00Z"
        )))
        google_api.route("PATCH", f"{EVENTS}/e1", httpx.Response(200, json={"id": "e1"}))

        await google_adapter.update_event("e1", start=datetime(2024, 6, 15, 14, tzinfo=timezone.utc))

        body = json.loads(google_api.calls("PATCH", f"{EVENTS}/e1")[0].content)
        assert body["end"]["dateTime"] == "2024-06-15T14:45:00+00:00"

    @pytest.mark.asyncio
    async def test_update_missing_event(self, google_adapter, google_session):
        await google_session.authorize()
        google_adapter.use_app_calendar = False

        with pytest.raises(EventNotFound):
            await google_adapter.update_event("missing", title="x")

    @pytest.mark.asyncio
    async def test_delete_event(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        google_api.route("DELETE", f"{EVENTS}/e1", httpx.Response(204))

        await google_adapter.delete_event("e1")

        assert google_api.calls("DELETE", f"{EVENTS}/e1")[0].url.params["sendUpdates"] == "all"

    @pytest.mark.asyncio
    async def test_delete_gone_event(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        google_api.route("DELETE", f"{EVENTS}/e1", httpx.Response(410))

        with pytest.raises(EventNotFound):
            await google_adapter.delete_event("e1")


class TestChanges:
    """Tests for incremental change queries and free/busy."""

    @pytest.mark.asyncio
    async def test_initial_scan(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("GET", EVENTS, items(
            event_item("e1", "2024-06-15T10:00:00Z", "2024-06-15T11:00:00Z"),
            {"id": "e2", "status": "cancelled"},
            nextSyncToken="tok-1",
        ))

        changes = await google_adapter.list_changes(
            None, updated_min=datetime(2024, 6, 14, 9, tzinfo=timezone.utc)
        )

        assert changes.next_sync_token == "tok-1"
        assert [(c.event_id, c.cancelled) for c in changes.items] == [("e1", False), ("e2", True)]
        assert changes.items[1].start is None
        params = google_api.calls("GET", EVENTS)[0].url.params
        assert params["updatedMin"] == "2024-06-14T09:00:00+00:00"
        assert params["showDeleted"] == "true"
        assert "syncToken" not in params

    @pytest.mark.asyncio
    async def test_incremental(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("GET", EVENTS, items(nextSyncToken="tok-2"))

        changes = await google_adapter.list_changes("tok-1")

        assert changes.items == []
        assert changes.next_sync_token == "tok-2"
        params = google_api.calls("GET", EVENTS)[0].url.params
        assert params["syncToken"] == "tok-1"
        assert "updatedMin" not in params

    @pytest.mark.asyncio
    async def test_expired_token(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("GET", EVENTS, httpx.Response(410))

        with pytest.raises(SyncTokenExpired):
            await google_adapter.list_changes("old")

    @pytest.mark.asyncio
    async def test_free_busy(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("POST", "/calendar/v3/freeBusy", httpx.Response(200, json={
            "calendars": {
                "primary": {"busy": [
                    {"start": "2024-06-15T15:00:00Z", "end": "2024-06-15T16:00:00Z"},
                    {"start": "2024-06-15T09:00:00Z", "end": "2024-06-15T10:00:00Z"},
                ]}
            }
        }))

        busy = await google_adapter.query_free_busy(
            datetime(2024, 6, 15, tzinfo=timezone.utc),
            datetime(2024, 6, 16, tzinfo=timezone.utc),
            ["primary"],
        )

        assert [b.start.hour for b in busy] == [9, 15]
        body = json.loads(google_api.calls("POST", "/calendar/v3/freeBusy")[0].content)
        assert body["items"] == [{"id": "primary"}]


class TestAccountState:
    """Tests for state tied to the signed-in account."""

    @pytest.mark.asyncio
    async def test_read_skips_deleted_app_calendar(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("GET", EVENTS, items(
            event_item("r1", "2024-06-15T12:00:00Z", "2024-06-15T13:00:00Z"),
        ))

        events = await google_adapter.fetch_events(DAY)

        assert [e.provider_event_id for e in events] == ["r1"]
        assert len(google_api.calls("GET", APP_EVENTS)) == 1

    @pytest.mark.asyncio
    async def test_create_recreates_deleted_app_calendar(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("POST", APP_EVENTS, httpx.Response(200, json={"id": "first"}))
        start = datetime(2024, 6, 15, 18, tzinfo=timezone.utc)
        await google_adapter.create_event("A", None, start, timedelta(hours=1))

        google_api.route("POST", APP_EVENTS, httpx.Response(404, json={"error": "notFound"}))
        google_api.route("GET", "/calendar/v3/users/me/calendarList", items(
            {"id": "primary-id", "summary": "Me", "primary": True},
        ))
        google_api.route("POST", "/calendar/v3/calendars", httpx.Response(200, json={"id": "made"}))
        google_api.route("POST", "/calendar/v3/calendars/made/events",
                         httpx.Response(200, json={"id": "second"}))

        result = await google_adapter.create_event("B", None, start, timedelta(hours=1))

        assert result.event_id == "second"
        assert len(google_api.calls("POST", "/calendar/v3/calendars")) == 1

    @pytest.mark.asyncio
    async def test_reset_looks_up_app_calendar_again(self, google_adapter, google_session, google_api):
        await google_session.authorize()
        google_api.route("POST", APP_EVENTS, httpx.Response(200, json={"id": "x"}))
        start = datetime(2024, 6, 15, 18, tzinfo=timezone.utc)
        await google_adapter.create_event("A", None, start, timedelta(hours=1))

        google_adapter.reset()
        google_api.route("GET", "/calendar/v3/users/me/calendarList", items(
            {"id": "other-app", "summary": "Ketchup Soon Events"},
        ))
        google_api.route("POST", "/calendar/v3/calendars/other-app/events",
                         httpx.Response(200, json={"id": "y"}))

        result = await google_adapter.create_event("B", None, start, timedelta(hours=1))

        assert result.event_id == "y"
        assert len(google_api.calls("GET", "/calendar/v3/users/me/calendarList")) == 2

    @pytest.mark.asyncio
    async def test_tracked_event_calendars_are_bounded(
        self, google_adapter, google_session, google_api, monkeypatch
    ):
        monkeypatch.setattr("ketchup_calendar.backends.google.MAX_TRACKED_EVENTS", 2)
        await google_session.authorize()
        google_adapter.use_app_calendar = False
        google_adapter.read_calendar_ids = ["family"]
        google_api.route("GET", "/calendar/v3/calendars/family/events", items(
            event_item("a", "2024-06-15T08:00:00Z", "2024-06-15T09:00:00Z"),
            event_item("b", "2024-06-15T10:00:00Z", "2024-06-15T11:00:00Z"),
            event_item("c", "2024-06-15T12:00:00Z", "2024-06-15T13:00:00Z"),
        ))
        for path in ("/calendar/v3/calendars/family/events/c", f"{EVENTS}/a"):
            google_api.route("DELETE", path, httpx.Response(204))

        await google_adapter.fetch_events(DAY)
        await google_adapter.delete_event("c")
        await google_adapter.delete_event("a")

        assert len(google_api.calls("DELETE", "/calendar/v3/calendars/family/events/c")) == 1
        assert len(google_api.calls("DELETE", f"{EVENTS}/a")) == 1

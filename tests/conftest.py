"""Pytest fixtures for calendar engine tests.

This module provides test fixtures that ensure:
1. No external API calls are made (Google endpoints are served by
   httpx.MockTransport handlers)
2. No real database files outside pytest's tmp_path
3. Time is controlled explicitly through a steppable clock
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx
import pytest
import pytest_asyncio
from tenacity import wait_none

# Set test environment BEFORE importing application modules
os.environ.setdefault("SECRET_KEY", "test-secret-key-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("TIMEZONE", "UTC")

from ketchup_calendar.auth.google import GoogleCredentialSession, GoogleOAuth
from ketchup_calendar.auth.local import LocalPermissionSession
from ketchup_calendar.auth.store import InMemoryCredentialStore, StoredSignIn
from ketchup_calendar.backends.google import GoogleCalendarAdapter
from ketchup_calendar.backends.local import LocalCalendarAdapter
from ketchup_calendar.cache import EventCache
from ketchup_calendar.coordinator import CalendarCoordinator
from ketchup_calendar.database.local_store import SqliteCalendarStore
from ketchup_calendar.preferences import InMemoryPreferenceStore

NOW = datetime(2024, 6, 15, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class GoogleApi:
    """Programmable stand-in for the Google token and Calendar endpoints.

    Handlers are keyed by (method, path). Every request is recorded.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.token_calls = 0
        self.token_response: Callable[[httpx.Request], httpx.Response] = self._default_token
        self.route("GET", "/calendar/v3/users/me/calendarList", self._calendar_list)

    def route(self, method: str, path: str, handler) -> None:
        if isinstance(handler, httpx.Response):
            template = handler

            def handler(request: httpx.Request) -> httpx.Response:
                return httpx.Response(
                    template.status_code,
                    headers=template.headers,
                    content=template.content,
                )

        self.routes[(method, path)] = handler

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @staticmethod
    def _calendar_list(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "items": [
                    {"id": "primary-id", "summary": "Me", "primary": True},
                    {"id": "app-cal", "summary": "Ketchup Soon Events"},
                ]
            },
        )

    def _default_token(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.token_calls}",
                "expires_in": 3600,
                "token_type": "Bearer",
            },
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "oauth2.googleapis.com" and request.url.path == "/token":
            self.token_calls += 1
            return self.token_response(request)
        if request.url.path == "/oauth2/v2/userinfo":
            return httpx.Response(
                200, json={"id": "g-1", "email": "me@example.com", "name": "Me"}
            )
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        return handler(request)


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    from ketchup_calendar.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    """Retry immediately instead of backing off."""
    monkeypatch.setattr(GoogleCalendarAdapter._send.retry, "wait", wait_none())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def google_api() -> GoogleApi:
    return GoogleApi()


@pytest_asyncio.fixture
async def http_client(google_api: GoogleApi):
    async with httpx.AsyncClient(transport=httpx.MockTransport(google_api)) as client:
        yield client


# =============================================================================
# Backend Fixtures
# =============================================================================


@pytest.fixture
def local_store():
    store = SqliteCalendarStore(":memory:", access_policy="prompt")
    yield store
    store.close()


@pytest.fixture
def local_session(local_store, clock) -> LocalPermissionSession:
    return LocalPermissionSession(local_store, clock=clock)


@pytest.fixture
def local_adapter(local_session, local_store) -> LocalCalendarAdapter:
    return LocalCalendarAdapter(local_session, local_store)


@pytest.fixture
def signed_in() -> StoredSignIn:
    """A stored Google sign-in valid for another hour."""
    return StoredSignIn(
        provider="google",
        access_token="stored-access",
        refresh_token="stored-refresh",
        expires_at=NOW + timedelta(hours=1),
        account_email="me@example.com",
        account_id="g-1",
    )


@pytest.fixture
def credential_store(signed_in) -> InMemoryCredentialStore:
    return InMemoryCredentialStore(signed_in)


@pytest.fixture
def oauth(http_client, clock) -> GoogleOAuth:
    return GoogleOAuth(
        client_id="test-client-id",
        client_secret="test-client-secret",
        redirect_uri="http://localhost:8000/auth/google/callback",
        scopes=["https://www.googleapis.com/auth/calendar"],
        http_client=http_client,
        clock=clock,
    )


@pytest.fixture
def google_session(oauth, credential_store, clock) -> GoogleCredentialSession:
    return GoogleCredentialSession(oauth, credential_store, clock=clock)


@pytest.fixture
def google_adapter(google_session, http_client) -> GoogleCalendarAdapter:
    return GoogleCalendarAdapter(
        google_session,
        http_client=http_client,
        read_calendar_ids=["primary"],
        tz=timezone.utc,
    )


@pytest.fixture
def preferences() -> InMemoryPreferenceStore:
    return InMemoryPreferenceStore()


@pytest.fixture
def coordinator(local_adapter, google_adapter, preferences, clock) -> CalendarCoordinator:
    return CalendarCoordinator(
        cache=EventCache(ttl=timedelta(minutes=5), clock=clock),
        tz=timezone.utc,
        local=local_adapter,
        remote=google_adapter,
        preferences=preferences,
        clock=clock,
    )


def event_item(
    event_id: str,
    start: str,
    end: str,
    summary: str = "Event",
    app: bool = False,
    **extra,
) -> dict:
    """A Calendar API event resource."""
    item = {
        "id": event_id,
        "summary": summary,
        "status": "confirmed",
        "start": {"dateTime": start},
        "end": {"dateTime": end},
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
    }
    if app:
        item["extendedProperties"] = {"private": {"ketchupsoon": "1"}}
    item.update(extra)
    return item

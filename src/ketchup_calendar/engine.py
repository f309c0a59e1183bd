"""Wiring of the calendar engine.

`build_coordinator()` constructs one session and one adapter per backend and
hands them to a `CalendarCoordinator`. Every collaborator can be passed in,
which is how tests swap in in-memory stores and mock transports.

```python
settings = get_settings()
coordinator = await build_coordinator(settings)
await coordinator.ensure_initialized()
```

The remote backend is only wired when Google OAuth is configured.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable

import httpx

from ketchup_calendar.auth.google import GoogleCredentialSession, GoogleOAuth
from ketchup_calendar.auth.local import LocalPermissionSession
from ketchup_calendar.auth.store import CredentialStore, DatabaseCredentialStore
from ketchup_calendar.backends.google import GoogleCalendarAdapter
from ketchup_calendar.backends.local import LocalCalendarAdapter, LocalCalendarStore
from ketchup_calendar.cache import EventCache
from ketchup_calendar.clock import Clock, utc_now
from ketchup_calendar.config import Settings, get_settings
from ketchup_calendar.coordinator import CalendarCoordinator
from ketchup_calendar.database.connection import init_db
from ketchup_calendar.database.encryption import TokenCipher
from ketchup_calendar.database.local_store import SqliteCalendarStore
from ketchup_calendar.models.event import BackendType
from ketchup_calendar.monitor import ChangeMonitor, LocalChangeWatcher
from ketchup_calendar.preferences import DatabasePreferenceStore, PreferenceStore

logger = logging.getLogger(__name__)


async def build_coordinator(
    settings: Settings | None = None,
    local_store: LocalCalendarStore | None = None,
    credential_store: CredentialStore | None = None,
    preference_store: PreferenceStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    oauth: GoogleOAuth | None = None,
    local_prompt: Callable[[], bool] | None = None,
    clock: Clock = utc_now,
) -> CalendarCoordinator:
    """Build a coordinator from settings.

    Args:
        settings: Settings (defaults to `get_settings()`)
        local_store: On-device store (defaults to the SQLite store at
            LOCAL_CALENDAR_PATH)
        credential_store: Where sign-ins persist (defaults to the database)
        preference_store: Where the default backend persists (defaults to
            the database)
        http_client: Shared client for Google requests
        oauth: Google OAuth client (defaults to one built from settings)
        local_prompt: Asks the user for on-device calendar access
        clock: Time source
    """
    settings = settings or get_settings()
    tz = settings.tzinfo

    if credential_store is None or preference_store is None:
        await init_db(settings.database_url)
    if credential_store is None:
        credential_store = DatabaseCredentialStore(TokenCipher.from_settings(settings))
    if preference_store is None:
        preference_store = DatabasePreferenceStore()

    if local_store is None:
        local_store = SqliteCalendarStore(
            settings.local_calendar_path,
            access_policy=settings.local_calendar_access,
            prompt=local_prompt,
        )
    local_session = LocalPermissionSession(local_store, clock=clock)
    local = LocalCalendarAdapter(local_session, local_store)
    local_watcher = LocalChangeWatcher(local_store)

    remote = None
    monitor = None
    if oauth is None and settings.google_oauth_configured:
        oauth = GoogleOAuth.from_settings(settings, http_client=http_client)
    if oauth is not None:
        remote_session = GoogleCredentialSession(
            oauth,
            credential_store,
            refresh_buffer=settings.token_refresh_buffer,
            clock=clock,
        )
        read_ids = settings.remote_read_calendar_ids
        remote = GoogleCalendarAdapter(
            remote_session,
            http_client=http_client,
            app_calendar_name=settings.app_calendar_name,
            use_app_calendar=settings.use_app_calendar,
            read_calendar_ids=read_ids,
            monitor_calendar_id=read_ids[0] if read_ids else "primary",
            timeout=settings.http_timeout_seconds,
            tz=tz,
        )
        if settings.enable_change_monitor:
            monitor = ChangeMonitor(
                remote,
                poll_interval=timedelta(seconds=settings.monitor_poll_interval_seconds),
                error_cooldown=timedelta(seconds=settings.monitor_error_cooldown_seconds),
                initial_window=timedelta(hours=settings.monitor_initial_window_hours),
                clock=clock,
            )
    else:
        logger.info("Google OAuth not configured; remote calendar disabled")

    selected = (
        BackendType(settings.default_calendar_backend)
        if settings.default_calendar_backend
        else None
    )

    return CalendarCoordinator(
        cache=EventCache(ttl=settings.cache_ttl, clock=clock),
        tz=tz,
        local=local,
        remote=remote,
        preferences=preference_store,
        selected_backend=selected,
        mirror_writes=settings.mirror_writes,
        monitor=monitor,
        local_watcher=local_watcher,
        clock=clock,
    )

"""Calendar coordinator: the single entry point for calendar data.

Holds both backend adapters, the event cache and the change monitor, and
publishes observable state for UI layers.

## Reads

`get_events_for_date()` is read-through. On a miss it opportunistically
refreshes each session, skips backends that are not authorized, fetches the
rest concurrently and merges them (start time ascending, local before
remote on ties). Backend read errors are recorded on the day result instead
of raised. Only error-free results are cached, so a failed backend is asked
again on the next read.

## Writes

Write backend selection for a new hangout:

1. A stored preference names the backend. If that backend is not
   authorized the call fails with `Unauthorized` and nothing is written.
2. Otherwise remote when authorized (it can invite attendees), else local.

With `mirror_writes` the hangout is also written to the other backend when
it is authorized. The mirror is best effort: its failure is reported on the
result and never rolled back or raised. Every successful write invalidates
the affected day(s) rather than patching them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable

from ketchup_calendar.auth.google import GoogleUserInfo, Presenter
from ketchup_calendar.auth.local import LocalPermissionSession
from ketchup_calendar.backends.base import CalendarBackendAdapter
from ketchup_calendar.backends.google import BusyInterval, ChangeSet, GoogleCalendarAdapter
from ketchup_calendar.backends.local import LocalCalendarAdapter
from ketchup_calendar.cache import EventCache
from ketchup_calendar.clock import Clock, utc_now
from ketchup_calendar.errors import (
    CalendarError,
    EventCreationFailed,
    EventDeletionFailed,
    EventNotFound,
    EventUpdateFailed,
    Unauthorized,
)
from ketchup_calendar.models.event import (
    BackendType,
    CalendarEvent,
    CalendarEventResult,
    ConnectedCalendar,
    DayRange,
    merge_events,
)
from ketchup_calendar.monitor import ChangeMonitor, LocalChangeWatcher
from ketchup_calendar.preferences import PreferenceStore, load_preference, save_preference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoordinatorState:
    """Observable coordinator state."""

    is_authorized: bool = False
    is_google_authorized: bool = False
    connected_calendars: tuple[ConnectedCalendar, ...] = ()
    google_user_email: str | None = None
    local_account_name: str | None = None
    selected_backend: BackendType | None = None
    is_monitoring: bool = False
    events_version: int = 0


@dataclass(frozen=True)
class DayResult:
    """Merged events for one day plus how they were obtained."""

    day: date
    events: tuple[CalendarEvent, ...]
    fetched_at: datetime
    errors: tuple[str, ...] = ()
    from_cache: bool = False
    backends: tuple[BackendType, ...] = field(default=())

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


StateListener = Callable[[CoordinatorState], None]


class CalendarCoordinator:
    """Backend-agnostic calendar facade.

    Example:
        ```python
        coordinator = await build_coordinator(settings)
        await coordinator.ensure_initialized()
        events = await coordinator.get_events_for_date(date.today())
        result = await coordinator.create_hangout_event(
            "Coffee", "Blue Bottle", start, timedelta(hours=1), ["friend@example.com"]
        )
        ```
    """

    def __init__(
        self,
        cache: EventCache,
        tz: tzinfo,
        local: LocalCalendarAdapter | None = None,
        remote: GoogleCalendarAdapter | None = None,
        preferences: PreferenceStore | None = None,
        selected_backend: BackendType | None = None,
        mirror_writes: bool = False,
        monitor: ChangeMonitor | None = None,
        local_watcher: LocalChangeWatcher | None = None,
        clock: Clock = utc_now,
    ):
        self.cache = cache
        self.tz = tz
        self.local = local
        self.remote = remote
        self.preferences = preferences
        self.mirror_writes = mirror_writes
        self.monitor = monitor
        self.local_watcher = local_watcher
        self.clock = clock

        if monitor is not None:
            monitor.on_changes = self.handle_remote_changes
        if local_watcher is not None:
            local_watcher.on_change = self.handle_local_change

        self._state = CoordinatorState(selected_backend=selected_backend)
        self._listeners: list[StateListener] = []
        self._initialized = False
        self._init_lock = asyncio.Lock()

    # -- observable state -------------------------------------------------

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def selected_backend(self) -> BackendType | None:
        return self._state.selected_backend

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call `listener` with every new state. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **changes) -> None:
        state = replace(
            self._state,
            is_authorized=self._is_authorized(BackendType.LOCAL),
            is_google_authorized=self._is_authorized(BackendType.REMOTE),
            google_user_email=(
                self.remote.google_session.account_email if self.remote else None
            ),
            is_monitoring=bool(self.monitor and self.monitor.is_running),
            **changes,
        )
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Coordinator state listener failed")

    def _bump_events_version(self) -> None:
        self._publish(events_version=self._state.events_version + 1)

    # -- adapters ---------------------------------------------------------

    def _adapter(self, backend: BackendType) -> CalendarBackendAdapter | None:
        return self.local if backend is BackendType.LOCAL else self.remote

    def _adapters(self) -> list[CalendarBackendAdapter]:
        return [a for a in (self.local, self.remote) if a is not None]

    def _is_authorized(self, backend: BackendType) -> bool:
        adapter = self._adapter(backend)
        return adapter is not None and adapter.session.is_authorized

    async def _try_refresh(self, adapter: CalendarBackendAdapter) -> bool:
        """Best-effort refresh. Returns whether the backend is usable."""
        try:
            await adapter.session.refresh_if_needed()
        except Unauthorized as e:
            logger.warning(f"Skipping {adapter.backend.value} calendar: {e.message}")
        if adapter.session.is_authorized:
            return True

        published = (
            self._state.is_google_authorized
            if adapter.backend is BackendType.REMOTE
            else self._state.is_authorized
        )
        if published:
            await self._sync_watchers()
            self._publish()
        return False

    # -- lifecycle --------------------------------------------------------

    async def ensure_initialized(self) -> None:
        """One-time startup: check both sessions silently, load calendars and
        start change watching where authorized. Never prompts."""
        async with self._init_lock:
            if self._initialized:
                return

            if self.preferences is not None and self._state.selected_backend is None:
                self._publish(selected_backend=await load_preference(self.preferences))

            await self.refresh_authorization_status()
            self._initialized = True
            logger.info("Calendar coordinator initialized")

    async def refresh_authorization_status(self) -> CoordinatorState:
        """Re-evaluate both sessions (after returning from a settings screen
        or consent flow) and republish state."""
        if self.local is not None:
            session = self.local.session
            if isinstance(session, LocalPermissionSession):
                await session.check_status()
            else:
                await session.authorize()

        if self.remote is not None and not self.remote.session.is_authorized:
            try:
                await self.remote.session.authorize()
            except CalendarError as e:
                logger.warning(f"Silent Google restore failed: {e.message}")

        await self._sync_watchers()
        self._publish()
        await self.load_connected_calendars()
        return self._state

    async def _sync_watchers(self) -> None:
        if self.local_watcher is not None:
            if self._is_authorized(BackendType.LOCAL):
                self.local_watcher.start()
            else:
                self.local_watcher.stop()
        if self.monitor is not None:
            if self._is_authorized(BackendType.REMOTE):
                self.monitor.start()
            else:
                await self.monitor.stop()

    async def load_connected_calendars(self) -> list[ConnectedCalendar]:
        """Rebuild the connected calendar list from authorized backends."""
        calendars: list[ConnectedCalendar] = []
        for adapter in self._adapters():
            if not adapter.session.is_authorized:
                continue
            try:
                calendars.extend(await adapter.list_calendars())
            except CalendarError as e:
                logger.warning(f"Could not list {adapter.backend.value} calendars: {e.message}")

        local_account = None
        if self.local is not None and self._is_authorized(BackendType.LOCAL):
            local_account = getattr(self.local.store, "account_name", None)

        self._publish(connected_calendars=tuple(calendars), local_account_name=local_account)
        return calendars

    async def request_local_access(self) -> bool:
        """Ask for on-device calendar permission (prompts at most once)."""
        if self.local is None:
            return False
        granted = await self.local.session.authorize()
        self.cache.invalidate_all()
        await self._sync_watchers()
        self._publish()
        await self.load_connected_calendars()
        return granted

    async def request_google_access(self, presenter: Presenter) -> GoogleUserInfo:
        """Interactive Google sign-in through `presenter`.

        Raises:
            AuthDenied: If the user declines
        """
        if self.remote is None:
            raise Unauthorized("Google Calendar is not configured", backend=BackendType.REMOTE)
        user = await self.remote.google_session.request_interactive_authorization(presenter)
        await self._on_google_signed_in()
        return user

    def begin_google_authorization(self) -> tuple[str, str]:
        """First half of a callback-based sign-in. Returns (url, state)."""
        if self.remote is None:
            raise Unauthorized("Google Calendar is not configured", backend=BackendType.REMOTE)
        return self.remote.google_session.begin_interactive_authorization()

    async def complete_google_authorization(self, code: str | None, state: str) -> GoogleUserInfo:
        if self.remote is None:
            raise Unauthorized("Google Calendar is not configured", backend=BackendType.REMOTE)
        user = await self.remote.google_session.complete_interactive_authorization(code, state)
        await self._on_google_signed_in()
        return user

    async def _on_google_signed_in(self) -> None:
        self.remote.reset()
        if self.monitor is not None:
            self.monitor.reset_sync_token()
        self.cache.invalidate_all()
        await self.set_selected_backend(BackendType.REMOTE)
        await self._sync_watchers()
        self._publish()
        await self.load_connected_calendars()

    async def sign_out(self, backend: BackendType) -> None:
        """Sign out of one backend and drop every cached day."""
        adapter = self._adapter(backend)
        if adapter is None:
            return

        if backend is BackendType.REMOTE and self.monitor is not None:
            await self.monitor.stop()
            self.monitor.reset_sync_token()
        if backend is BackendType.LOCAL and self.local_watcher is not None:
            self.local_watcher.stop()

        await adapter.session.sign_out()
        if backend is BackendType.REMOTE:
            self.remote.reset()
        self.cache.invalidate_all()

        if self._state.selected_backend is backend:
            await self.set_selected_backend(None)

        self._publish()
        await self.load_connected_calendars()
        self._bump_events_version()

    async def set_selected_backend(self, backend: BackendType | None) -> None:
        """Set (and persist) the default write backend. None means automatic."""
        if self.preferences is not None:
            await save_preference(self.preferences, backend)
        self._publish(selected_backend=backend)

    async def close(self) -> None:
        if self.monitor is not None:
            await self.monitor.stop()
        if self.local_watcher is not None:
            self.local_watcher.stop()
        if self.remote is not None:
            await self.remote.aclose()

    # -- reads ------------------------------------------------------------

    def _day_range(self, day: date | datetime) -> DayRange:
        return DayRange.for_day(day, self.tz)

    async def get_events_for_date(self, day: date | datetime) -> list[CalendarEvent]:
        """Merged events for the calendar day containing `day`."""
        return list((await self.get_day(day)).events)

    async def get_day(self, day: date | datetime) -> DayResult:
        """Like `get_events_for_date`, with freshness and error details."""
        day_range = self._day_range(day)
        key = day_range.day

        entry = self.cache.get(key)
        if entry is not None:
            return DayResult(
                day=key, events=entry.events, fetched_at=entry.fetched_at, from_cache=True
            )

        async with self.cache.lock(key):
            entry = self.cache.get(key)
            if entry is not None:
                return DayResult(
                    day=key, events=entry.events, fetched_at=entry.fetched_at, from_cache=True
                )

            generation = self.cache.generation(key)
            events, errors, backends = await self._fetch_all(day_range)

            stored = None
            if not errors:
                stored = self.cache.put(key, events, generation=generation)
            return DayResult(
                day=key,
                events=tuple(events),
                fetched_at=stored.fetched_at if stored else self.clock(),
                errors=tuple(errors),
                backends=tuple(backends),
            )

    async def _fetch_all(
        self, day_range: DayRange
    ) -> tuple[list[CalendarEvent], list[str], list[BackendType]]:
        adapters = [a for a in self._adapters() if await self._try_refresh(a)]
        results = await asyncio.gather(
            *(a.fetch_events(day_range) for a in adapters), return_exceptions=True
        )

        per_backend: list[list[CalendarEvent]] = []
        errors: list[str] = []
        backends: list[BackendType] = []
        for adapter, result in zip(adapters, results):
            if isinstance(result, CalendarError):
                logger.warning(
                    f"{adapter.backend.value} read for {day_range.day} failed: {result.message}"
                )
                errors.append(f"{adapter.backend.value}: {result.message}")
            elif isinstance(result, BaseException):
                raise result
            else:
                per_backend.append(result)
                backends.append(adapter.backend)

        return merge_events(*per_backend), errors, backends

    async def preload_todays_events(self) -> None:
        """Warm today's entry unless it is already fresh."""
        today = self.clock().astimezone(self.tz).date()
        if self.cache.get(today) is None:
            await self.get_day(today)

    async def fetch_event(self, event_id: str, source: BackendType) -> CalendarEvent:
        return await self._require_adapter(source).fetch_event(event_id)

    async def sync_event_attendees(self, event_id: str) -> list[str]:
        """Current attendee emails of a remote event."""
        if self.remote is None:
            raise Unauthorized("Google Calendar is not configured", backend=BackendType.REMOTE)
        return await self.remote.get_attendee_emails(event_id)

    async def query_free_busy(
        self,
        start: datetime,
        end: datetime,
        calendar_ids: list[str] | None = None,
    ) -> list[BusyInterval]:
        if self.remote is None:
            raise Unauthorized("Google Calendar is not configured", backend=BackendType.REMOTE)
        return await self.remote.query_free_busy(start, end, calendar_ids)

    # -- writes -----------------------------------------------------------

    def _require_adapter(self, backend: BackendType) -> CalendarBackendAdapter:
        adapter = self._adapter(backend)
        if adapter is None:
            raise Unauthorized(f"{backend.value} calendar is not configured", backend=backend)
        return adapter

    async def _select_write_backend(self) -> BackendType:
        preferred = self._state.selected_backend
        if preferred is not None:
            adapter = self._adapter(preferred)
            if adapter is None or not await self._try_refresh(adapter):
                raise Unauthorized(
                    f"Preferred {preferred.value} calendar is not authorized",
                    backend=preferred,
                )
            return preferred

        for backend in (BackendType.REMOTE, BackendType.LOCAL):
            adapter = self._adapter(backend)
            if adapter is not None and await self._try_refresh(adapter):
                return backend
        raise Unauthorized("No calendar is authorized")

    async def create_hangout_event(
        self,
        activity: str,
        location: str | None,
        start: datetime,
        duration: timedelta,
        email_recipients: list[str] | None = None,
    ) -> CalendarEventResult:
        """Create a hangout on the selected backend.

        Raises:
            Unauthorized: If the selected (or any) backend is not authorized
            EventCreationFailed: If the primary write failed
        """
        primary = await self._select_write_backend()
        adapter = self._require_adapter(primary)

        try:
            result = await adapter.create_event(
                activity, location, start, duration, email_recipients
            )
        except (Unauthorized, EventCreationFailed):
            raise
        except CalendarError as e:
            raise EventCreationFailed(
                f"Could not create event: {e.message}", backend=primary
            ) from e

        if self.mirror_writes:
            result = await self._mirror_create(
                result, primary, activity, location, start, duration, email_recipients
            )

        self._invalidate_span(start, start + duration)
        logger.info(f"Created hangout '{activity}' on {', '.join(b.value for b in result.backends)}")
        return result

    async def _mirror_create(
        self,
        result: CalendarEventResult,
        primary: BackendType,
        activity: str,
        location: str | None,
        start: datetime,
        duration: timedelta,
        email_recipients: list[str] | None,
    ) -> CalendarEventResult:
        other = BackendType.LOCAL if primary is BackendType.REMOTE else BackendType.REMOTE
        adapter = self._adapter(other)
        if adapter is None or not await self._try_refresh(adapter):
            return result

        try:
            mirrored = await adapter.create_event(
                activity, location, start, duration, email_recipients
            )
        except CalendarError as e:
            logger.warning(f"Mirror write to {other.value} failed: {e.message}")
            return result.model_copy(update={"mirror_error": e.message})

        return result.model_copy(
            update={
                "backends": result.backends + (other,),
                "remote_event_id": result.remote_event_id or mirrored.remote_event_id,
                "local_event_id": result.local_event_id or mirrored.local_event_id,
                "html_link": result.html_link or mirrored.html_link,
            }
        )

    async def update_event(
        self,
        event_id: str,
        source: BackendType,
        title: str | None = None,
        location: str | None = None,
        start: datetime | None = None,
        duration: timedelta | None = None,
        attendee_emails: list[str] | None = None,
    ) -> CalendarEventResult:
        adapter = self._require_adapter(source)
        try:
            result = await adapter.update_event(
                event_id, title, location, start, duration, attendee_emails
            )
        except (Unauthorized, EventNotFound, EventUpdateFailed):
            raise
        except CalendarError as e:
            raise EventUpdateFailed(f"Could not update event: {e.message}", backend=source) from e

        self._invalidate_event(event_id, source)
        if start is not None:
            self._invalidate_span(start, start + (duration or timedelta()))
        return result

    async def delete_event(self, event_id: str, source: BackendType) -> None:
        adapter = self._require_adapter(source)
        try:
            await adapter.delete_event(event_id)
        except (Unauthorized, EventNotFound, EventDeletionFailed):
            raise
        except CalendarError as e:
            raise EventDeletionFailed(
                f"Could not delete event: {e.message}", backend=source
            ) from e
        self._invalidate_event(event_id, source)

    # -- invalidation -----------------------------------------------------

    def _days_spanned(self, start: datetime, end: datetime) -> list[date]:
        first = start.astimezone(self.tz).date()
        last_instant = end - timedelta(microseconds=1) if end > start else start
        last = last_instant.astimezone(self.tz).date()
        days = [first]
        while days[-1] < last:
            days.append(days[-1] + timedelta(days=1))
        return days

    def _invalidate_span(self, start: datetime, end: datetime) -> set[date]:
        days = set(self._days_spanned(start, end))
        for day in days:
            self.cache.invalidate(day)
        return days

    def _invalidate_event(self, event_id: str, source: BackendType) -> None:
        """Invalidate every cached day holding the event, and every day with a
        fetch in flight, since that fetch may have read the old version."""
        days = set(self.cache.fetching_days())
        for day in self.cache.days():
            entry = self.cache.peek(day)
            if entry and any(
                e.source is source and e.provider_event_id == event_id for e in entry.events
            ):
                days.add(day)
        for day in sorted(days):
            self.cache.invalidate(day)

    def clear_cache(self) -> None:
        self.cache.invalidate_all()

    async def handle_remote_changes(self, changes: ChangeSet) -> None:
        """Invalidate the days touched by a remote change set.

        Each affected day is invalidated once. An item without times (a
        deleted event) could be anywhere, so it drops the whole cache.
        """
        if not changes.items:
            return

        if any(item.start is None for item in changes.items):
            self.cache.invalidate_all()
            logger.info("Remote changes without times; cleared event cache")
        else:
            days: set[date] = set()
            for item in changes.items:
                days.update(self._days_spanned(item.start, item.end or item.start))
            for day in sorted(days):
                self.cache.invalidate(day)
            logger.info(f"Remote changes invalidated {len(days)} cached day(s)")

        self._bump_events_version()

    async def handle_local_change(self) -> None:
        """On-device store changed: drop everything and re-warm today."""
        self.cache.invalidate_all()
        self._bump_events_version()
        await self.preload_todays_events()

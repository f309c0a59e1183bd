"""Change detection for both backends.

`ChangeMonitor` polls the remote calendar's change stream from a single
background task. `LocalChangeWatcher` forwards change notifications from
the on-device store onto the event loop.

## Polling loop

```
stopped --start()--> polling --stop()--> stopped
```

Each tick refreshes remote authorization, then asks for changes since the
stored sync token. Without a token it scans events updated in the trailing
window, which also yields the first token. A non-empty change set is handed
to the `on_changes` callback. Any error waits the cooldown and the loop goes
on; only `stop()` or cancellation ends it. `stop()` cancels the task and
waits for it, so nothing is delivered after it returns.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import Awaitable, Callable

from ketchup_calendar.backends.google import ChangeSet, GoogleCalendarAdapter
from ketchup_calendar.backends.local import LocalCalendarStore
from ketchup_calendar.clock import Clock, utc_now
from ketchup_calendar.errors import SyncTokenExpired

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeSet], Awaitable[None]]


class ChangeMonitor:
    """Background poller for remote calendar changes."""

    def __init__(
        self,
        adapter: GoogleCalendarAdapter,
        on_changes: ChangeHandler | None = None,
        poll_interval: timedelta = timedelta(minutes=5),
        error_cooldown: timedelta = timedelta(seconds=30),
        initial_window: timedelta = timedelta(hours=24),
        clock: Clock = utc_now,
    ):
        self.adapter = adapter
        self.on_changes = on_changes
        self.poll_interval = poll_interval
        self.error_cooldown = error_cooldown
        self.initial_window = initial_window
        self.clock = clock
        self._sync_token: str | None = None
        self._task: asyncio.Task | None = None

    @property
    def sync_token(self) -> str | None:
        return self._sync_token

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling. A no-op while already polling."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="calendar-change-monitor")
        logger.info("Calendar change monitor started")

    async def stop(self) -> None:
        """Stop polling and wait until the task has finished."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Calendar change monitor stopped")

    def reset_sync_token(self) -> None:
        self._sync_token = None

    async def _list_changes(self) -> ChangeSet:
        updated_min = self.clock() - self.initial_window
        if self._sync_token is None:
            return await self.adapter.list_changes(None, updated_min=updated_min)
        try:
            return await self.adapter.list_changes(self._sync_token)
        except SyncTokenExpired:
            logger.warning("Calendar sync token expired; rescanning recent changes")
            self._sync_token = None
            return await self.adapter.list_changes(None, updated_min=updated_min)

    async def tick(self) -> ChangeSet:
        """Run one poll. Returns the change set (possibly empty)."""
        await self.adapter.session.ensure_authorized()

        changes = await self._list_changes()
        self._sync_token = changes.next_sync_token

        if changes.items:
            logger.info(f"Detected {len(changes.items)} remote calendar changes")
            if self.on_changes is not None:
                await self.on_changes(changes)
        return changes

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Calendar change check failed, retrying shortly: {e}")
                await asyncio.sleep(self.error_cooldown.total_seconds())
                continue
            await asyncio.sleep(self.poll_interval.total_seconds())


class LocalChangeWatcher:
    """Delivers on-device store changes to an async callback.

    Store listeners fire on whichever thread made the change; the watcher
    hops onto the event loop and coalesces bursts into one delivery.
    """

    def __init__(
        self,
        store: LocalCalendarStore,
        on_change: Callable[[], Awaitable[None]] | None = None,
    ):
        self.store = store
        self.on_change = on_change
        self._remove: Callable[[], None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: asyncio.Task | None = None
        self._again = False

    @property
    def is_running(self) -> bool:
        return self._remove is not None

    def start(self) -> None:
        if self._remove is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._remove = self.store.add_change_listener(self._notify_threadsafe)
        logger.debug("Watching on-device calendar for changes")

    def stop(self) -> None:
        if self._remove is not None:
            self._remove()
            self._remove = None
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _notify_threadsafe(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._schedule)
        except RuntimeError:
            logger.debug("Event loop closed; dropping calendar change notification")

    def _schedule(self) -> None:
        if self._remove is None or self.on_change is None:
            return
        if self._pending is not None:
            self._again = True
            return
        self._pending = asyncio.get_running_loop().create_task(self._deliver())

    async def _deliver(self) -> None:
        try:
            while True:
                self._again = False
                try:
                    await self.on_change()
                except Exception:
                    logger.exception("Handling on-device calendar change failed")
                if not self._again:
                    break
        finally:
            self._pending = None

"""Credential session contract shared by both backends.

A session owns the authorization state of one backend for the lifetime of
the process. Adapters hold a reference to it and call `ensure_authorized()`
immediately before every backend operation.

## State machine

```
unauthenticated -> authorizing -> authorized -> expiring_soon -> refreshing -> authorized
                                                                 refreshing -> revoked
```

`revoked` is terminal until the next successful authorization.

## Refresh serialization

`refresh_if_needed()` holds a per-session lock around the token exchange and
re-checks the need for a refresh once it owns the lock. A second caller that
arrives during a refresh waits and then finds nothing left to do, so
concurrent callers share a single exchange.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum

from ketchup_calendar.clock import Clock, utc_now
from ketchup_calendar.errors import Unauthorized
from ketchup_calendar.models.event import BackendType

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    EXPIRING_SOON = "expiring_soon"
    REFRESHING = "refreshing"
    REVOKED = "revoked"


class CredentialSession(ABC):
    """Authorization lifecycle for one calendar backend."""

    backend: BackendType

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock
        self._state = SessionState.UNAUTHENTICATED
        self._refresh_lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug(f"{self.backend.value} session: {self._state.value} -> {state.value}")
            self._state = state

    @property
    @abstractmethod
    def is_authorized(self) -> bool:
        """Whether new backend calls may proceed without a refresh."""

    @abstractmethod
    async def authorize(self) -> bool:
        """Restore or request authorization without interactive sign-in.

        Returns:
            True if the session ended up authorized
        """

    @abstractmethod
    async def sign_out(self) -> None:
        """Forget this backend's credentials. The other backend is untouched."""

    def _needs_refresh(self) -> bool:
        return False

    async def _refresh(self) -> None:
        """Exchange refresh material for fresh credentials.

        Only called with the refresh lock held and `_needs_refresh()` true.
        """

    async def refresh_if_needed(self) -> None:
        """Refresh credentials when they are inside the refresh buffer.

        Raises:
            Unauthorized: If the refresh and the silent-restore fallback
                both failed, now or in a concurrent caller's attempt
        """
        if not self._needs_refresh():
            return

        async with self._refresh_lock:
            if self._state is SessionState.REVOKED:
                raise Unauthorized(
                    "Session was revoked during refresh", backend=self.backend
                )
            if not self._needs_refresh():
                return
            await self._refresh()

    async def ensure_authorized(self) -> None:
        """Refresh if needed, then fail unless the session is authorized.

        Raises:
            Unauthorized: If no backend call may be made
        """
        await self.refresh_if_needed()
        if not self.is_authorized:
            raise Unauthorized(backend=self.backend)

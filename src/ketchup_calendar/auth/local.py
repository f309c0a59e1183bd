"""Permission session for the on-device calendar store."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ketchup_calendar.auth.base import CredentialSession, SessionState
from ketchup_calendar.clock import Clock, utc_now
from ketchup_calendar.database.local_store import AuthorizationStatus
from ketchup_calendar.models.event import BackendType

if TYPE_CHECKING:
    from ketchup_calendar.backends.local import LocalCalendarStore

logger = logging.getLogger(__name__)


class LocalPermissionSession(CredentialSession):
    """Session whose only credential is the one-time store permission.

    The grant is cached after the first answer, so `authorize()` never
    prompts twice. There is no token, so refresh is a no-op.
    """

    backend = BackendType.LOCAL

    def __init__(self, store: LocalCalendarStore, clock: Clock = utc_now):
        super().__init__(clock=clock)
        self.store = store
        self._granted: bool | None = None
        self._signed_out = False

    @property
    def is_authorized(self) -> bool:
        return self._granted is True

    async def authorize(self) -> bool:
        self._signed_out = False
        if self._granted is not None:
            return self._granted

        self._set_state(SessionState.AUTHORIZING)
        granted = await asyncio.to_thread(self.store.request_access)
        self._record(granted)
        return granted

    async def check_status(self) -> bool:
        """Re-read the recorded permission without prompting.

        After `sign_out()` the session stays signed out until `authorize()`
        is called again, whatever the store has recorded.
        """
        if self._signed_out:
            return False
        status = await asyncio.to_thread(self.store.authorization_status)
        if status is AuthorizationStatus.NOT_DETERMINED:
            self._granted = None
            self._set_state(SessionState.UNAUTHENTICATED)
            return False
        self._record(status is AuthorizationStatus.GRANTED)
        return self.is_authorized

    def _record(self, granted: bool) -> None:
        self._granted = granted
        self._set_state(SessionState.AUTHORIZED if granted else SessionState.REVOKED)

    async def sign_out(self) -> None:
        self._granted = None
        self._signed_out = True
        self._set_state(SessionState.UNAUTHENTICATED)
        logger.info("Signed out of on-device calendar")

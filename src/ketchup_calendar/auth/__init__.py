"""Credential sessions for the local and remote calendar backends."""

from ketchup_calendar.auth.base import CredentialSession, SessionState
from ketchup_calendar.auth.google import (
    GoogleCredentialSession,
    GoogleOAuth,
    GoogleTokens,
    GoogleUserInfo,
    Presenter,
)
from ketchup_calendar.auth.local import LocalPermissionSession
from ketchup_calendar.auth.store import (
    CredentialStore,
    DatabaseCredentialStore,
    InMemoryCredentialStore,
    StoredSignIn,
)

__all__ = [
    "CredentialSession",
    "CredentialStore",
    "DatabaseCredentialStore",
    "GoogleCredentialSession",
    "GoogleOAuth",
    "GoogleTokens",
    "GoogleUserInfo",
    "InMemoryCredentialStore",
    "LocalPermissionSession",
    "Presenter",
    "SessionState",
    "StoredSignIn",
]

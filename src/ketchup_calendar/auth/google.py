"""Google sign-in for the remote calendar backend.

Two layers live here:

- `GoogleOAuth`: the identity provider boundary. Builds the consent URL and
  talks to Google's token, userinfo and revoke endpoints over httpx.
- `GoogleCredentialSession`: the remote credential session. Keeps the live
  token in memory, restores previous sign-ins silently from a credential
  store and refreshes tokens ahead of expiry.

## OAuth Endpoints

- Authorization: https://accounts.google.com/o/oauth2/v2/auth
- Token: https://oauth2.googleapis.com/token
- User Info: https://www.googleapis.com/oauth2/v2/userinfo
- Revoke: https://oauth2.googleapis.com/revoke

## Refresh failure

A failed token exchange falls back once to silent restore from the
credential store (another process may have refreshed in the meantime). If
that does not yield a usable token the session is revoked and callers get
`Unauthorized`. Nothing retries in a loop.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Protocol
from urllib.parse import urlencode

import httpx

from ketchup_calendar.auth.base import CredentialSession, SessionState
from ketchup_calendar.auth.state import create_state_token, verify_state_token
from ketchup_calendar.auth.store import CredentialStore, StoredSignIn
from ketchup_calendar.clock import Clock, utc_now
from ketchup_calendar.config import Settings
from ketchup_calendar.errors import AuthDenied, Unauthorized
from ketchup_calendar.models.event import BackendType

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

PROVIDER = "google"
IDENTITY_SCOPES = ["openid", "email", "profile"]


@dataclass
class GoogleUserInfo:
    """User information from Google."""

    id: str
    email: str
    name: str | None = None
    picture: str | None = None


@dataclass
class GoogleTokens:
    """OAuth tokens from Google."""

    access_token: str
    refresh_token: str | None
    token_type: str
    expires_at: datetime | None
    scope: str


class GoogleOAuth:
    """Google OAuth 2.0 client.

    Example:
        ```python
        oauth = GoogleOAuth.from_settings(settings)
        url = oauth.get_authorization_url(state=create_state_token())
        # ...user consents, callback delivers `code`...
        tokens = await oauth.exchange_code(code)
        ```
    """

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        scopes: list[str],
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        clock: Clock = utc_now,
    ):
        """Initialize Google OAuth client.

        Args:
            client_id: Google OAuth client ID
            client_secret: Google OAuth client secret
            redirect_uri: OAuth callback URL
            scopes: OAuth scopes to request
            http_client: Shared client (a short-lived one is opened per
                request when omitted)
            timeout: Per-request timeout in seconds
            clock: Time source for computing token expiry
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.timeout = timeout
        self.clock = clock
        self._http_client = http_client

        if not self.is_configured:
            logger.warning(
                "Google OAuth not configured. Set GOOGLE_CLIENT_ID and "
                "GOOGLE_CLIENT_SECRET environment variables."
            )

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: httpx.AsyncClient | None = None
    ) -> GoogleOAuth:
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            scopes=settings.google_calendar_scopes + IDENTITY_SCOPES,
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _require_configured(self) -> None:
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    def get_authorization_url(
        self,
        state: str,
        access_type: str = "offline",
        prompt: str = "consent",
    ) -> str:
        """Generate the consent URL.

        Args:
            state: Signed state token, echoed back to the callback
            access_type: "offline" to get a refresh token
            prompt: "consent" to always show the consent screen
        """
        self._require_configured()

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "access_type": access_type,
            "prompt": prompt,
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    async def _token_request(self, data: dict[str, str], action: str) -> dict:
        self._require_configured()

        try:
            async with self._client() as client:
                response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            logger.error(f"{action} request failed: {e}")
            raise ValueError(f"{action} failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"{action} failed with status {response.status_code}")
            raise ValueError(f"{action} failed: {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise ValueError(f"{action} returned an unreadable body") from e

    def _tokens_from(self, data: dict, fallback_refresh: str | None = None) -> GoogleTokens:
        expires_at = None
        if "expires_in" in data:
            expires_at = self.clock().replace(microsecond=0) + timedelta(
                seconds=int(data["expires_in"])
            )

        return GoogleTokens(
            access_token=data["access_token"],
            # Google does not always return a new refresh token
            refresh_token=data.get("refresh_token", fallback_refresh),
            token_type=data.get("token_type", "Bearer"),
            expires_at=expires_at,
            scope=data.get("scope", ""),
        )

    async def exchange_code(self, code: str) -> GoogleTokens:
        """Exchange an authorization code for tokens.

        Raises:
            ValueError: If the exchange fails
        """
        data = await self._token_request(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            },
            "Token exchange",
        )
        return self._tokens_from(data)

    async def refresh_access_token(self, refresh_token: str) -> GoogleTokens:
        """Exchange a refresh token for a new access token.

        Raises:
            ValueError: If the refresh fails
        """
        data = await self._token_request(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            "Token refresh",
        )
        return self._tokens_from(data, fallback_refresh=refresh_token)

    async def get_user_info(self, access_token: str) -> GoogleUserInfo:
        """Fetch the signed-in identity.

        Raises:
            ValueError: If the request fails
        """
        try:
            async with self._client() as client:
                response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            raise ValueError(f"User info request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"User info request failed with status {response.status_code}")
            raise ValueError(f"User info request failed: {response.status_code}")

        data = response.json()
        return GoogleUserInfo(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            picture=data.get("picture"),
        )

    async def revoke_token(self, token: str) -> bool:
        """Revoke an access or refresh token. Returns True on success."""
        try:
            async with self._client() as client:
                response = await client.post(GOOGLE_REVOKE_URL, params={"token": token})
        except httpx.HTTPError as e:
            logger.warning(f"Token revocation failed: {e}")
            return False
        return response.status_code == 200


class Presenter(Protocol):
    """A surface that can show the consent page to the user."""

    async def present(self, authorization_url: str) -> str | None:
        """Show the consent page.

        Returns:
            The authorization code, or None if the user cancelled
        """
        ...


class GoogleCredentialSession(CredentialSession):
    """Remote credential session backed by Google OAuth.

    `is_authorized` is false once the token is inside the refresh buffer, so
    the next `ensure_authorized()` refreshes before any call goes out.
    """

    backend = BackendType.REMOTE

    def __init__(
        self,
        oauth: GoogleOAuth,
        store: CredentialStore,
        refresh_buffer: timedelta = timedelta(minutes=5),
        clock: Clock = utc_now,
    ):
        super().__init__(clock=clock)
        self.oauth = oauth
        self.store = store
        self.refresh_buffer = refresh_buffer
        self._tokens: GoogleTokens | None = None
        self._user: GoogleUserInfo | None = None

    # -- state ------------------------------------------------------------

    @property
    def access_token(self) -> str | None:
        return self._tokens.access_token if self._tokens else None

    @property
    def account_email(self) -> str | None:
        return self._user.email if self._user else None

    def _outside_buffer(self) -> bool:
        if self._tokens is None:
            return False
        if self._tokens.expires_at is None:
            return True
        return self._tokens.expires_at - self.clock() > self.refresh_buffer

    @property
    def is_authorized(self) -> bool:
        if self._state in (SessionState.REVOKED, SessionState.REFRESHING):
            return False
        return self._outside_buffer()

    @property
    def state(self) -> SessionState:
        if self._state is SessionState.AUTHORIZED and not self._outside_buffer():
            return SessionState.EXPIRING_SOON
        return self._state

    def _needs_refresh(self) -> bool:
        return (
            self._tokens is not None
            and self._state is not SessionState.REVOKED
            and not self._outside_buffer()
        )

    def _adopt(self, tokens: GoogleTokens, user: GoogleUserInfo | None) -> None:
        self._tokens = tokens
        if user is not None:
            self._user = user
        self._set_state(SessionState.AUTHORIZED)

    async def _persist(self) -> None:
        tokens = self._tokens
        if tokens is None:
            return
        await self.store.save(
            StoredSignIn(
                provider=PROVIDER,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                token_type=tokens.token_type,
                expires_at=tokens.expires_at,
                scope=tokens.scope,
                account_email=self._user.email if self._user else None,
                account_id=self._user.id if self._user else None,
            )
        )

    # -- silent restore ---------------------------------------------------

    async def _restore_from_store(self) -> bool:
        stored = await self.store.load(PROVIDER)
        if stored is None:
            return False

        tokens = GoogleTokens(
            access_token=stored.access_token,
            refresh_token=stored.refresh_token,
            token_type=stored.token_type,
            expires_at=stored.expires_at,
            scope=stored.scope,
        )
        user = None
        if stored.account_email:
            user = GoogleUserInfo(id=stored.account_id or "", email=stored.account_email)

        self._tokens = tokens
        if user is not None:
            self._user = user
        if self._outside_buffer():
            self._set_state(SessionState.AUTHORIZED)
            return True
        return False

    async def authorize(self) -> bool:
        """Silently restore a previous sign-in. Never prompts."""
        async with self._refresh_lock:
            if self.is_authorized:
                return True

            if await self._restore_from_store():
                logger.info("Restored previous Google sign-in")
                return True

            tokens = self._tokens
            if tokens is not None and tokens.refresh_token:
                try:
                    fresh = await self.oauth.refresh_access_token(tokens.refresh_token)
                except (ValueError, RuntimeError) as e:
                    logger.warning(f"Could not refresh restored Google sign-in: {e}")
                else:
                    self._adopt(fresh, None)
                    await self._persist()
                    logger.info("Restored previous Google sign-in with a fresh token")
                    return True

            self._tokens = None
            self._set_state(SessionState.UNAUTHENTICATED)
            return False

    # -- interactive sign-in ----------------------------------------------

    def begin_interactive_authorization(self) -> tuple[str, str]:
        """Start a consent flow that completes through a web callback.

        Returns:
            (authorization URL, signed state)
        """
        state = create_state_token(PROVIDER)
        url = self.oauth.get_authorization_url(state=state)
        self._set_state(SessionState.AUTHORIZING)
        return url, state

    async def complete_interactive_authorization(
        self, code: str | None, state: str
    ) -> GoogleUserInfo:
        """Finish a consent flow with the code delivered to the callback.

        Raises:
            AuthDenied: If the user cancelled, the state is invalid or the
                code could not be exchanged
        """
        if not code:
            self._abandon_authorizing()
            raise AuthDenied("Google sign-in was cancelled", backend=self.backend)

        if verify_state_token(state, PROVIDER) is None:
            self._abandon_authorizing()
            raise AuthDenied("Invalid or expired OAuth state", backend=self.backend)

        try:
            tokens = await self.oauth.exchange_code(code)
        except ValueError as e:
            self._abandon_authorizing()
            raise AuthDenied(f"Google sign-in failed: {e}", backend=self.backend) from e

        try:
            user = await self.oauth.get_user_info(tokens.access_token)
        except ValueError as e:
            logger.warning(f"Signed in but could not read Google profile: {e}")
            user = GoogleUserInfo(id="", email="")

        async with self._refresh_lock:
            self._adopt(tokens, user)
            await self._persist()

        logger.info("Google sign-in completed")
        return user

    async def request_interactive_authorization(self, presenter: Presenter) -> GoogleUserInfo:
        """Run the whole consent flow through a presentation surface.

        Raises:
            AuthDenied: If the user declines or the flow fails
        """
        url, state = self.begin_interactive_authorization()
        code = await presenter.present(url)
        return await self.complete_interactive_authorization(code, state)

    def _abandon_authorizing(self) -> None:
        if self._state is SessionState.AUTHORIZING:
            self._set_state(
                SessionState.AUTHORIZED if self._tokens else SessionState.UNAUTHENTICATED
            )

    # -- refresh ----------------------------------------------------------

    async def _refresh(self) -> None:
        tokens = self._tokens
        self._set_state(SessionState.REFRESHING)

        if tokens is not None and tokens.refresh_token:
            try:
                fresh = await self.oauth.refresh_access_token(tokens.refresh_token)
            except (ValueError, RuntimeError) as e:
                logger.warning(f"Google token refresh failed, trying silent restore: {e}")
            else:
                self._adopt(fresh, None)
                await self._persist()
                logger.debug("Google access token refreshed")
                return

        if await self._restore_from_store():
            logger.info("Recovered Google session from stored sign-in")
            return

        self._tokens = None
        self._set_state(SessionState.REVOKED)
        logger.error("Google session revoked: refresh and silent restore both failed")
        raise Unauthorized("Google session expired; sign in again", backend=self.backend)

    # -- sign out ---------------------------------------------------------

    async def sign_out(self, revoke: bool = False) -> None:
        """Clear the in-memory token and the stored sign-in.

        Args:
            revoke: Also revoke the token at Google
        """
        async with self._refresh_lock:
            tokens = self._tokens
            self._tokens = None
            self._user = None
            self._set_state(SessionState.UNAUTHENTICATED)
            await self.store.delete(PROVIDER)

        if revoke and tokens is not None:
            await self.oauth.revoke_token(tokens.refresh_token or tokens.access_token)
        logger.info("Signed out of Google")

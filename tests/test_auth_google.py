"""Tests for Google OAuth and the remote credential session."""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from ketchup_calendar.auth.base import SessionState
from ketchup_calendar.auth.google import GoogleCredentialSession
from ketchup_calendar.auth.state import create_state_token, verify_state_token
from ketchup_calendar.auth.store import InMemoryCredentialStore, StoredSignIn
from ketchup_calendar.errors import AuthDenied, Unauthorized

from conftest import NOW


def failing_token(request: httpx.Request) -> httpx.Response:
    return httpx.Response(400, json={"error": "invalid_grant"})


class StaticPresenter:
    def __init__(self, code):
        self.code = code
        self.urls = []

    async def present(self, authorization_url: str):
        self.urls.append(authorization_url)
        return self.code


class TestStateToken:
    """Tests for signed OAuth state."""

    def test_round_trip(self):
        state = verify_state_token(create_state_token("google"), "google")
        assert state is not None
        assert state.provider == "google"

    def test_wrong_provider_rejected(self):
        assert verify_state_token(create_state_token("google"), "other") is None

    def test_expired_rejected(self):
        token = create_state_token("google", expires_delta=timedelta(seconds=-10))
        assert verify_state_token(token, "google") is None

    def test_garbage_rejected(self):
        assert verify_state_token("not-a-token", "google") is None


class TestSilentRestore:
    """Tests for authorize() without interaction."""

    @pytest.mark.asyncio
    async def test_restores_stored_sign_in(self, google_session: GoogleCredentialSession, google_api):
        assert await google_session.authorize() is True

        assert google_session.is_authorized
        assert google_session.access_token == "stored-access"
        assert google_session.account_email == "me@example.com"
        assert google_api.token_calls == 0

    @pytest.mark.asyncio
    async def test_refreshes_stale_stored_sign_in(self, oauth, clock, signed_in, google_api):
        store = InMemoryCredentialStore(signed_in)
        session = GoogleCredentialSession(oauth, store, clock=clock)
        clock.advance(hours=2)

        assert await session.authorize() is True

        assert google_api.token_calls == 1
        assert session.access_token == "access-1"
        assert (await store.load("google")).access_token == "access-1"

    @pytest.mark.asyncio
    async def test_nothing_stored(self, oauth, clock):
        session = GoogleCredentialSession(oauth, InMemoryCredentialStore(), clock=clock)

        assert await session.authorize() is False
        assert session.state is SessionState.UNAUTHENTICATED
        with pytest.raises(Unauthorized):
            await session.ensure_authorized()


class TestRefresh:
    """Tests for proactive refresh inside the buffer."""

    @pytest.mark.asyncio
    async def test_expiring_soon_inside_buffer(self, google_session, clock):
        await google_session.authorize()
        clock.advance(minutes=56)

        assert google_session.is_authorized is False
        assert google_session.state is SessionState.EXPIRING_SOON

    @pytest.mark.asyncio
    async def test_refresh_sends_refresh_grant(self, google_session, clock, google_api):
        await google_session.authorize()
        clock.advance(minutes=56)

        await google_session.ensure_authorized()

        assert google_session.is_authorized
        assert google_session.access_token == "access-1"
        form = parse_qs(google_api.requests[-1].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["stored-refresh"]

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token(self, google_session, clock, credential_store):
        await google_session.authorize()
        clock.advance(minutes=56)

        await google_session.ensure_authorized()

        stored = await credential_store.load("google")
        assert stored.refresh_token == "stored-refresh"
        assert stored.expires_at == clock.now + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_exchange(self, google_session, clock, google_api):
        await google_session.authorize()
        clock.advance(minutes=56)

        await asyncio.gather(*(google_session.ensure_authorized() for _ in range(5)))

        assert google_api.token_calls == 1
        assert google_session.is_authorized

    @pytest.mark.asyncio
    async def test_no_refresh_outside_buffer(self, google_session, google_api):
        await google_session.authorize()
        await google_session.ensure_authorized()
        assert google_api.token_calls == 0

    @pytest.mark.asyncio
    async def test_failed_refresh_revokes(self, google_session, clock, google_api):
        await google_session.authorize()
        clock.advance(minutes=56)
        google_api.token_response = failing_token

        results = await asyncio.gather(
            *(google_session.ensure_authorized() for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, Unauthorized) for r in results)
        assert google_api.token_calls == 1
        assert google_session.state is SessionState.REVOKED
        assert google_session.is_authorized is False

    @pytest.mark.asyncio
    async def test_failed_refresh_recovers_from_store(
        self, google_session, clock, google_api, credential_store
    ):
        await google_session.authorize()
        clock.advance(minutes=56)
        google_api.token_response = failing_token
        await credential_store.save(
            StoredSignIn(
                provider="google",
                access_token="other-process-access",
                refresh_token="stored-refresh",
                expires_at=NOW + timedelta(hours=3),
            )
        )

        await google_session.ensure_authorized()

        assert google_session.access_token == "other-process-access"
        assert google_session.state is SessionState.AUTHORIZED

    @pytest.mark.asyncio
    async def test_authorize_after_revocation(self, google_session, clock, google_api, credential_store):
        await google_session.authorize()
        clock.advance(minutes=56)
        google_api.token_response = failing_token
        with pytest.raises(Unauthorized):
            await google_session.ensure_authorized()

        await credential_store.save(
            StoredSignIn(
                provider="google",
                access_token="fresh",
                expires_at=clock.now + timedelta(hours=1),
            )
        )

        assert await google_session.authorize() is True
        assert google_session.state is SessionState.AUTHORIZED


class TestInteractiveSignIn:
    """Tests for the consent flow."""

    def test_authorization_url(self, google_session):
        url, state = google_session.begin_interactive_authorization()

        query = parse_qs(urlparse(url).query)
        assert query["client_id"] == ["test-client-id"]
        assert query["state"] == [state]
        assert query["access_type"] == ["offline"]
        assert google_session.state is SessionState.AUTHORIZING

    @pytest.mark.asyncio
    async def test_complete_with_code(self, oauth, clock, google_api):
        store = InMemoryCredentialStore()
        session = GoogleCredentialSession(oauth, store, clock=clock)
        _, state = session.begin_interactive_authorization()

        user = await session.complete_interactive_authorization("auth-code", state)

        assert user.email == "me@example.com"
        assert session.is_authorized
        assert session.account_email == "me@example.com"
        stored = await store.load("google")
        assert stored.access_token == "access-1"
        assert stored.account_email == "me@example.com"

    @pytest.mark.asyncio
    async def test_cancelled(self, google_session):
        _, state = google_session.begin_interactive_authorization()
        with pytest.raises(AuthDenied):
            await google_session.complete_interactive_authorization(None, state)
        assert google_session.state is SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_forged_state(self, google_session):
        google_session.begin_interactive_authorization()
        with pytest.raises(AuthDenied):
            await google_session.complete_interactive_authorization("code", "forged")

    @pytest.mark.asyncio
    async def test_exchange_failure(self, google_session, google_api):
        google_api.token_response = failing_token
        _, state = google_session.begin_interactive_authorization()
        with pytest.raises(AuthDenied):
            await google_session.complete_interactive_authorization("code", state)

    @pytest.mark.asyncio
    async def test_presenter_flow(self, oauth, clock):
        session = GoogleCredentialSession(oauth, InMemoryCredentialStore(), clock=clock)
        presenter = StaticPresenter("auth-code")

        user = await session.request_interactive_authorization(presenter)

        assert user.email == "me@example.com"
        assert presenter.urls[0].startswith("https://accounts.google.com/")

    @pytest.mark.asyncio
    async def test_presenter_declined(self, google_session):
        with pytest.raises(AuthDenied):
            await google_session.request_interactive_authorization(StaticPresenter(None))


class TestSignOut:
    """Tests for sign-out."""

    @pytest.mark.asyncio
    async def test_sign_out_forgets_sign_in(self, google_session, credential_store):
        await google_session.authorize()

        await google_session.sign_out()

        assert google_session.is_authorized is False
        assert google_session.account_email is None
        assert await credential_store.load("google") is None
        assert await google_session.authorize() is False

    @pytest.mark.asyncio
    async def test_sign_out_with_revoke(self, google_session, google_api):
        await google_session.authorize()

        await google_session.sign_out(revoke=True)

        revokes = [r for r in google_api.requests if r.url.path == "/revoke"]
        assert len(revokes) == 1
        assert revokes[0].url.params["token"] == "stored-refresh"

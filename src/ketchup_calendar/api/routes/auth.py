"""Authorization routes.

## Google OAuth Flow

1. GET /auth/google/login - Redirect to Google consent screen
2. GET /auth/google/callback - Exchange the code, start monitoring
3. POST /auth/remote/logout - Forget the Google sign-in

The OAuth `state` is a signed, expiring token, so no server-side state is
kept between the two requests.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from ketchup_calendar.api.dependencies import get_coordinator
from ketchup_calendar.coordinator import CalendarCoordinator
from ketchup_calendar.errors import AuthDenied
from ketchup_calendar.models.event import BackendType

logger = logging.getLogger(__name__)

router = APIRouter()


class LocalAccessResponse(BaseModel):
    granted: bool


class GoogleSignInResponse(BaseModel):
    email: str | None
    name: str | None


@router.post("/local/request", response_model=LocalAccessResponse)
async def request_local_access(
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> LocalAccessResponse:
    """Ask for on-device calendar access (prompts at most once)."""
    return LocalAccessResponse(granted=await coordinator.request_local_access())


@router.get("/google/login")
async def google_login(
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> RedirectResponse:
    """Redirect to Google's consent screen."""
    if coordinator.remote is None:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Google OAuth not configured",
        )
    url, _ = coordinator.begin_google_authorization()
    return RedirectResponse(url=url)


@router.get("/google/callback", response_model=GoogleSignInResponse)
async def google_callback(
    state: str,
    code: str | None = None,
    error: str | None = None,
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> GoogleSignInResponse:
    """Finish Google sign-in with the code Google redirected back with."""
    if error:
        logger.info(f"Google consent declined: {error}")
        raise AuthDenied(f"Google sign-in failed: {error}", backend=BackendType.REMOTE)

    user = await coordinator.complete_google_authorization(code, state)
    return GoogleSignInResponse(email=user.email or None, name=user.name)


@router.post("/{backend}/logout")
async def logout(
    backend: BackendType,
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> dict[str, str]:
    """Sign out of one backend; the other stays signed in."""
    await coordinator.sign_out(backend)
    return {"status": "signed_out", "backend": backend.value}

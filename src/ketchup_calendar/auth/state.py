"""Signed OAuth `state` parameters.

The interactive sign-in round-trips a `state` value through the identity
provider. It is a short-lived JWT signed with the application secret, so the
callback can verify it without server-side storage.

## Token Structure

```json
{
  "nonce": "random-string",
  "provider": "google",
  "iat": 1234567890,
  "exp": 1234568490,
  "type": "oauth_state"
}
```
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from ketchup_calendar.config import get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "oauth_state"


@dataclass
class OAuthState:
    """Decoded contents of a state token."""

    nonce: str
    provider: str
    expires_at: datetime


def create_state_token(
    provider: str = "google",
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed state token for one authorization attempt."""
    settings = get_settings()

    now = datetime.now(timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(seconds=settings.oauth_state_max_age_seconds)

    payload = {
        "nonce": secrets.token_urlsafe(16),
        "provider": provider,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
        "type": TOKEN_TYPE,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def verify_state_token(token: str, provider: str = "google") -> OAuthState | None:
    """Verify a state token.

    Returns:
        OAuthState if valid, None if forged, expired or for another provider
    """
    settings = get_settings()

    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.debug(f"OAuth state verification failed: {e}")
        return None

    if payload.get("type") != TOKEN_TYPE or payload.get("provider") != provider:
        logger.debug("OAuth state has wrong type or provider")
        return None

    try:
        return OAuthState(
            nonce=payload["nonce"],
            provider=payload["provider"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, ValueError) as e:
        logger.debug(f"Invalid OAuth state payload: {e}")
        return None

"""Persisted sign-ins used for silent restore.

The remote session keeps its live token in memory. A copy is written here
after every successful sign-in or refresh so that the next process start can
restore the session without prompting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from ketchup_calendar.database.connection import get_db
from ketchup_calendar.database.encryption import TokenCipher
from ketchup_calendar.database.models import StoredCredential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredSignIn:
    """A previous sign-in for one identity provider."""

    provider: str
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = None
    scope: str = ""
    account_email: str | None = None
    account_id: str | None = None


class CredentialStore(Protocol):
    async def load(self, provider: str) -> StoredSignIn | None: ...

    async def save(self, sign_in: StoredSignIn) -> None: ...

    async def delete(self, provider: str) -> None: ...


class InMemoryCredentialStore:
    """Process-local store, for tests and ephemeral runs."""

    def __init__(self, *sign_ins: StoredSignIn):
        self._items: dict[str, StoredSignIn] = {s.provider: s for s in sign_ins}

    async def load(self, provider: str) -> StoredSignIn | None:
        return self._items.get(provider)

    async def save(self, sign_in: StoredSignIn) -> None:
        self._items[sign_in.provider] = sign_in

    async def delete(self, provider: str) -> None:
        self._items.pop(provider, None)


class DatabaseCredentialStore:
    """Store backed by the `stored_credentials` table.

    Tokens are encrypted with a `TokenCipher` before they are written. A row
    that cannot be decrypted (rotated secret) reads as "no previous sign-in".
    """

    def __init__(self, cipher: TokenCipher):
        self.cipher = cipher

    async def load(self, provider: str) -> StoredSignIn | None:
        async with get_db() as db:
            row = await db.get(StoredCredential, provider)
            if row is None:
                return None

            try:
                access_token = self.cipher.decrypt(row.access_token_encrypted)
                refresh_token = self.cipher.decrypt(row.refresh_token_encrypted)
            except ValueError:
                logger.warning(f"Stored {provider} sign-in is unreadable; ignoring it")
                return None

            expires_at = row.expires_at
            if expires_at is not None and expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)

            return StoredSignIn(
                provider=row.provider,
                access_token=access_token or "",
                refresh_token=refresh_token,
                token_type=row.token_type,
                expires_at=expires_at,
                scope=row.scope or "",
                account_email=row.account_email,
                account_id=row.account_id,
            )

    async def save(self, sign_in: StoredSignIn) -> None:
        async with get_db() as db:
            row = await db.get(StoredCredential, sign_in.provider)
            if row is None:
                row = StoredCredential(provider=sign_in.provider)
                db.add(row)

            row.access_token_encrypted = self.cipher.encrypt(sign_in.access_token)
            row.refresh_token_encrypted = self.cipher.encrypt(sign_in.refresh_token)
            row.token_type = sign_in.token_type
            row.expires_at = sign_in.expires_at
            row.scope = sign_in.scope
            row.account_email = sign_in.account_email
            row.account_id = sign_in.account_id

            await db.commit()

        logger.debug(f"Stored {sign_in.provider} sign-in")

    async def delete(self, provider: str) -> None:
        async with get_db() as db:
            row = await db.get(StoredCredential, provider)
            if row is not None:
                await db.delete(row)
                await db.commit()


__all__ = [
    "CredentialStore",
    "DatabaseCredentialStore",
    "InMemoryCredentialStore",
    "StoredSignIn",
]

"""Database models for engine-adjacent persisted state.

## Security Notes

- OAuth tokens are encrypted at rest using Fernet symmetric encryption
- The encryption key is derived from the application secret

## Schema Overview

```
stored_credentials   one row per identity provider (silent sign-in restore)
preferences          generic key-value settings store
```

The on-device calendar store lives in its own database file; see
`ketchup_calendar.database.local_store`.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""


class StoredCredential(Base):
    """A persisted sign-in for an identity provider.

    Tokens are encrypted in the store layer, not at the database level, to
    allow for key rotation.
    """

    __tablename__ = "stored_credentials"

    provider: Mapped[str] = mapped_column(String(32), primary_key=True)  # google
    account_email: Mapped[str | None] = mapped_column(String(255))
    account_id: Mapped[str | None] = mapped_column(String(255))

    # Tokens (encrypted)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text)
    token_type: Mapped[str] = mapped_column(String(32), default="Bearer")

    # Token metadata
    scope: Mapped[str | None] = mapped_column(Text)  # Space-separated scopes
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<StoredCredential provider={self.provider}>"


class Preference(Base):
    """A single key-value user preference."""

    __tablename__ = "preferences"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Preference {self.key}>"

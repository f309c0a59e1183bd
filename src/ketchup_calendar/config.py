"""Application configuration.

Configuration is loaded from environment variables using pydantic-settings.
All sensitive values (secrets, OAuth client credentials) should be provided
via environment variables, not config files.

## Required Environment Variables

- SECRET_KEY: Signs OAuth state tokens and derives the token encryption key

## Optional Environment Variables

- DATABASE_URL: Async SQLAlchemy URL for stored credentials and preferences
- LOCAL_CALENDAR_PATH: SQLite file backing the on-device calendar store
- GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET: Google OAuth client
- DEFAULT_CALENDAR_BACKEND: "local" or "remote" (unset = prefer remote)
- CACHE_TTL_SECONDS, TOKEN_REFRESH_BUFFER_SECONDS: engine timing
- TIMEZONE: IANA zone used for day boundaries (default: system zone)

## Example .env file

```
SECRET_KEY=your-secret-key-at-least-32-characters
GOOGLE_CLIENT_ID=your-google-client-id.apps.googleusercontent.com
GOOGLE_CLIENT_SECRET=your-google-client-secret
DEFAULT_CALENDAR_BACKEND=remote
```
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, tzinfo
from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Ketchup Calendar"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # Security
    secret_key: str = Field(
        ...,
        min_length=32,
        description="Secret key for signing and encryption (min 32 chars)",
    )
    encryption_salt: str = Field(
        default="",
        validate_default=True,
        description="Salt for token encryption (derived from secret_key if not provided)",
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    allowed_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
        description="CORS allowed origins",
    )

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./ketchup.db",
        description="Async database URL for credentials and preferences",
    )
    database_echo: bool = False  # Log SQL queries
    local_calendar_path: str = Field(
        default="./local_calendar.db",
        description="SQLite file backing the on-device calendar store",
    )
    local_calendar_access: Literal["prompt", "granted", "denied"] = Field(
        default="prompt",
        description="How the on-device store answers a permission request",
    )

    # Google OAuth
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_redirect_uri: str = "http://localhost:8000/auth/google/callback"
    google_calendar_scopes: list[str] = Field(
        default=[
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
            "https://www.googleapis.com/auth/calendar.readonly",
        ],
        description="Google Calendar API scopes",
    )
    oauth_state_max_age_seconds: int = Field(default=600, ge=60)

    # Calendar engine
    cache_ttl_seconds: int = Field(default=300, ge=1)
    token_refresh_buffer_seconds: int = Field(default=300, ge=0)
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    app_calendar_name: str = "Ketchup Soon Events"
    use_app_calendar: bool = True
    remote_read_calendar_ids: list[str] = Field(default=["primary"])
    default_calendar_backend: Literal["local", "remote"] | None = None
    mirror_writes: bool = False
    timezone: str = Field(
        default="",
        description="IANA timezone for day boundaries (blank = system zone)",
    )

    # Change monitoring
    enable_change_monitor: bool = True
    monitor_poll_interval_seconds: int = Field(default=300, ge=1)
    monitor_error_cooldown_seconds: int = Field(default=30, ge=1)
    monitor_initial_window_hours: int = Field(default=24, ge=1)

    @field_validator("encryption_salt", mode="before")
    @classmethod
    def generate_encryption_salt(cls, v: str, info) -> str:
        """Generate encryption salt from secret_key if not provided."""
        if v:
            return v
        secret_key = info.data.get("secret_key", "")
        if secret_key:
            return hashlib.sha256(f"{secret_key}-salt".encode()).hexdigest()[:32]
        return secrets.token_hex(16)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names early."""
        if v:
            try:
                ZoneInfo(v)
            except ZoneInfoNotFoundError as e:
                raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def google_oauth_configured(self) -> bool:
        """Check if Google OAuth is configured."""
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def tzinfo(self) -> tzinfo:
        """Zone used for calendar-day boundaries."""
        if self.timezone:
            return ZoneInfo(self.timezone)
        return datetime.now().astimezone().tzinfo

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(seconds=self.cache_ttl_seconds)

    @property
    def token_refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self.token_refresh_buffer_seconds)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Settings are loaded once and cached. To reload, clear the cache:
    ```python
    get_settings.cache_clear()
    ```
    """
    return Settings()


def get_settings_uncached() -> Settings:
    """Get fresh settings without caching.

    Useful for testing when environment variables change.
    """
    return Settings()

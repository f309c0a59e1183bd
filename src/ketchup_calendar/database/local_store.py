"""On-device calendar store.

A synchronous, SQLite-backed calendar that plays the role of the platform
calendar database: it gates access behind a one-time permission grant,
holds calendars and events, and tells observers when its contents change.

The engine never talks to this module directly; it depends on the
`LocalCalendarStore` protocol in `ketchup_calendar.backends.local` and this
class is one implementation of it.

## Permission model

`request_access()` asks once. The answer (granted or denied) is persisted,
so later calls return it without asking again. The answer comes from the
`prompt` callable when one is wired, otherwise from the configured policy:

- prompt: grant on first request
- granted: always granted
- denied: always denied

## Time handling

Instants are stored as UTC. Values read back are timezone-aware UTC.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Literal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    create_engine,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_TITLE = "Calendar"


class AuthorizationStatus(str, Enum):
    """Permission state of the on-device store."""

    NOT_DETERMINED = "not_determined"
    GRANTED = "granted"
    DENIED = "denied"


class LocalStoreBase(DeclarativeBase):
    """Declarative base for the on-device store (separate database file)."""


class LocalCalendarRow(LocalStoreBase):
    __tablename__ = "calendars"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    account_name: Mapped[str | None] = mapped_column(String(255))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)


class LocalEventRow(LocalStoreBase):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    calendar_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("calendars.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    location: Mapped[str | None] = mapped_column(String(512))
    notes: Mapped[str | None] = mapped_column(Text)
    start_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_utc: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    all_day: Mapped[bool] = mapped_column(Boolean, default=False)
    app_marker: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (Index("ix_events_time", "start_utc", "end_utc"),)


class AccessGrantRow(LocalStoreBase):
    __tablename__ = "access_grant"

    id: Mapped[int] = mapped_column(primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)


@dataclass(frozen=True)
class LocalCalendarRecord:
    """A calendar held by the on-device store."""

    id: str
    title: str
    account_name: str | None = None
    is_default: bool = False


@dataclass(frozen=True)
class LocalEventRecord:
    """An event held by the on-device store."""

    id: str | None
    calendar_id: str | None
    title: str
    start: datetime
    end: datetime
    location: str | None = None
    notes: str | None = None
    all_day: bool = False
    app_marker: bool = False


def _to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("Local store requires timezone-aware datetimes")
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_utc_naive(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


class SqliteCalendarStore:
    """SQLite implementation of the on-device calendar store.

    Example:
        ```python
        store = SqliteCalendarStore("./local_calendar.db")
        if store.request_access():
            events = store.events_between(start, end)
        ```
    """

    def __init__(
        self,
        path: str = ":memory:",
        access_policy: Literal["prompt", "granted", "denied"] = "prompt",
        prompt: Callable[[], bool] | None = None,
        account_name: str = "On My Device",
    ):
        """Open (and if needed create) the store.

        Args:
            path: SQLite file path, or ":memory:" for a throwaway store
            access_policy: Answer to the first permission request when no
                prompt callable is wired
            prompt: Called once to ask the user for calendar access
            account_name: Name of the account owning the default calendar
        """
        self.access_policy = access_policy
        self.account_name = account_name
        self._prompt = prompt
        self._lock = threading.RLock()
        self._listeners: list[Callable[[], None]] = []

        if path == ":memory:":
            self._engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._engine = create_engine(
                f"sqlite:///{path}",
                connect_args={"check_same_thread": False},
            )
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)
        LocalStoreBase.metadata.create_all(self._engine)
        self._ensure_default_calendar()

    def close(self) -> None:
        self._engine.dispose()

    # -- permission -------------------------------------------------------

    def authorization_status(self) -> AuthorizationStatus:
        """Current permission state, without asking."""
        with self._sessions() as session:
            grant = session.get(AccessGrantRow, 1)
            if grant is None:
                return AuthorizationStatus.NOT_DETERMINED
            return AuthorizationStatus(grant.status)

    def request_access(self) -> bool:
        """Ask for access once; later calls return the recorded answer."""
        with self._lock:
            status = self.authorization_status()
            if status is not AuthorizationStatus.NOT_DETERMINED:
                return status is AuthorizationStatus.GRANTED

            if self._prompt is not None:
                granted = bool(self._prompt())
            else:
                granted = self.access_policy != "denied"

            with self._sessions() as session:
                session.add(
                    AccessGrantRow(
                        id=1,
                        status=(
                            AuthorizationStatus.GRANTED
                            if granted
                            else AuthorizationStatus.DENIED
                        ).value,
                    )
                )
                session.commit()

            logger.info(f"On-device calendar access {'granted' if granted else 'denied'}")
            return granted

    def reset_access(self) -> None:
        """Forget the recorded answer (as if the user changed it in settings)."""
        with self._lock, self._sessions() as session:
            grant = session.get(AccessGrantRow, 1)
            if grant is not None:
                session.delete(grant)
                session.commit()

    def set_access(self, granted: bool) -> None:
        """Record an answer directly (a settings-screen change)."""
        with self._lock, self._sessions() as session:
            status = (
                AuthorizationStatus.GRANTED if granted else AuthorizationStatus.DENIED
            ).value
            grant = session.get(AccessGrantRow, 1)
            if grant is None:
                session.add(AccessGrantRow(id=1, status=status))
            else:
                grant.status = status
            session.commit()

    # -- calendars --------------------------------------------------------

    def _ensure_default_calendar(self) -> None:
        with self._lock, self._sessions() as session:
            existing = session.scalars(
                select(LocalCalendarRow).where(LocalCalendarRow.is_default.is_(True))
            ).first()
            if existing is None:
                session.add(
                    LocalCalendarRow(
                        id=str(uuid.uuid4()),
                        title=DEFAULT_CALENDAR_TITLE,
                        account_name=self.account_name,
                        is_default=True,
                    )
                )
                session.commit()

    def list_calendars(self) -> list[LocalCalendarRecord]:
        with self._sessions() as session:
            rows = session.scalars(select(LocalCalendarRow)).all()
            return [
                LocalCalendarRecord(
                    id=row.id,
                    title=row.title,
                    account_name=row.account_name,
                    is_default=row.is_default,
                )
                for row in rows
            ]

    def default_calendar_id(self) -> str | None:
        with self._sessions() as session:
            row = session.scalars(
                select(LocalCalendarRow).where(LocalCalendarRow.is_default.is_(True))
            ).first()
            return row.id if row else None

    def add_calendar(self, title: str) -> LocalCalendarRecord:
        with self._lock, self._sessions() as session:
            row = LocalCalendarRow(
                id=str(uuid.uuid4()),
                title=title,
                account_name=self.account_name,
                is_default=False,
            )
            session.add(row)
            session.commit()
        self._notify()
        return LocalCalendarRecord(id=row.id, title=row.title, account_name=row.account_name)

    def remove_calendar(self, calendar_id: str) -> bool:
        """Delete a calendar and its events."""
        with self._lock, self._sessions() as session:
            row = session.get(LocalCalendarRow, calendar_id)
            if row is None:
                return False
            for event in session.scalars(
                select(LocalEventRow).where(LocalEventRow.calendar_id == calendar_id)
            ):
                session.delete(event)
            session.delete(row)
            session.commit()
        self._notify()
        return True

    # -- events -----------------------------------------------------------

    def events_between(
        self,
        start: datetime,
        end: datetime,
        calendar_ids: list[str] | None = None,
    ) -> list[LocalEventRecord]:
        """Events overlapping [start, end), ordered by start."""
        query = select(LocalEventRow).where(
            LocalEventRow.start_utc < _to_utc_naive(end),
            LocalEventRow.end_utc > _to_utc_naive(start),
        )
        if calendar_ids is not None:
            if not calendar_ids:
                return []
            query = query.where(LocalEventRow.calendar_id.in_(calendar_ids))
        query = query.order_by(LocalEventRow.start_utc, LocalEventRow.id)

        with self._sessions() as session:
            return [self._to_record(row) for row in session.scalars(query)]

    def get_event(self, event_id: str) -> LocalEventRecord | None:
        with self._sessions() as session:
            row = session.get(LocalEventRow, event_id)
            return self._to_record(row) if row else None

    def save_event(self, record: LocalEventRecord) -> LocalEventRecord:
        """Insert (id is None) or update an event and return the stored copy.

        Raises:
            KeyError: If the record names an event or calendar that does not
                exist
        """
        if record.end < record.start:
            raise ValueError("Event end precedes start")

        with self._lock, self._sessions() as session:
            calendar_id = record.calendar_id or self.default_calendar_id()
            if calendar_id is None or session.get(LocalCalendarRow, calendar_id) is None:
                raise KeyError(f"Unknown calendar: {calendar_id}")

            if record.id is None:
                row = LocalEventRow(id=str(uuid.uuid4()))
                session.add(row)
            else:
                row = session.get(LocalEventRow, record.id)
                if row is None:
                    raise KeyError(f"Unknown event: {record.id}")

            row.calendar_id = calendar_id
            row.title = record.title
            row.location = record.location
            row.notes = record.notes
            row.start_utc = _to_utc_naive(record.start)
            row.end_utc = _to_utc_naive(record.end)
            row.all_day = record.all_day
            row.app_marker = record.app_marker
            session.commit()
            stored = self._to_record(row)

        self._notify()
        return stored

    def remove_event(self, event_id: str) -> bool:
        with self._lock, self._sessions() as session:
            row = session.get(LocalEventRow, event_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
        self._notify()
        return True

    @staticmethod
    def _to_record(row: LocalEventRow) -> LocalEventRecord:
        return LocalEventRecord(
            id=row.id,
            calendar_id=row.calendar_id,
            title=row.title,
            location=row.location,
            notes=row.notes,
            start=_from_utc_naive(row.start_utc),
            end=_from_utc_naive(row.end_utc),
            all_day=row.all_day,
            app_marker=row.app_marker,
        )

    # -- change notifications ---------------------------------------------

    def add_change_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a callback fired after every change; returns a remover.

        Callbacks run on the thread that made the change.
        """
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Calendar change listener failed")


__all__ = [
    "AuthorizationStatus",
    "LocalCalendarRecord",
    "LocalEventRecord",
    "SqliteCalendarStore",
]

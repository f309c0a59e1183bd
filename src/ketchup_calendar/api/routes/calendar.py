"""Calendar routes.

Reads, hangout creation, event edits, cache control and the default
backend preference.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field, model_validator

from ketchup_calendar.api.dependencies import get_coordinator
from ketchup_calendar.coordinator import CalendarCoordinator
from ketchup_calendar.models.event import (
    BackendType,
    CalendarEvent,
    CalendarEventResult,
    ConnectedCalendar,
)

router = APIRouter()


class StatusResponse(BaseModel):
    """Published coordinator state."""

    is_authorized: bool
    is_google_authorized: bool
    google_user_email: str | None
    local_account_name: str | None
    selected_backend: BackendType | None
    is_monitoring: bool
    connected_calendars: list[ConnectedCalendar]


class EventResponse(BaseModel):
    id: str
    source: BackendType
    provider_event_id: str
    title: str
    location: str | None
    start: datetime
    end: datetime
    all_day: bool
    is_app_event: bool
    html_link: str | None
    attendee_emails: list[str]

    @classmethod
    def from_event(cls, event: CalendarEvent) -> EventResponse:
        return cls(
            id=event.id,
            source=event.source,
            provider_event_id=event.provider_event_id,
            title=event.title,
            location=event.location,
            start=event.start,
            end=event.end,
            all_day=event.all_day,
            is_app_event=event.is_app_event,
            html_link=event.html_link,
            attendee_emails=list(event.attendee_emails),
        )


class DayResponse(BaseModel):
    day: date
    events: list[EventResponse]
    fetched_at: datetime
    from_cache: bool
    errors: list[str]


class HangoutCreate(BaseModel):
    """Create hangout request."""

    activity: str = Field(..., min_length=1, max_length=512)
    location: str | None = None
    start: datetime
    duration_minutes: int = Field(..., gt=0, le=7 * 24 * 60)
    email_recipients: list[str] = Field(default_factory=list)


class EventUpdate(BaseModel):
    """Update event request. Omitted fields stay unchanged."""

    title: str | None = Field(default=None, min_length=1, max_length=512)
    location: str | None = None
    start: datetime | None = None
    duration_minutes: int | None = Field(default=None, gt=0, le=7 * 24 * 60)
    attendee_emails: list[str] | None = None

    @model_validator(mode="after")
    def require_change(self) -> EventUpdate:
        if not self.model_fields_set:
            raise ValueError("No fields to update")
        return self


class PreferenceUpdate(BaseModel):
    backend: BackendType | None = None


class BusyIntervalResponse(BaseModel):
    calendar_id: str
    start: datetime
    end: datetime


def _localize(value: datetime, coordinator: CalendarCoordinator) -> datetime:
    """Interpret naive request times in the coordinator's zone."""
    if value.tzinfo is None:
        return value.replace(tzinfo=coordinator.tz)
    return value


@router.get("/status", response_model=StatusResponse)
async def get_status(
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> StatusResponse:
    """Authorization flags and connected calendars."""
    state = await coordinator.refresh_authorization_status()
    return StatusResponse(
        is_authorized=state.is_authorized,
        is_google_authorized=state.is_google_authorized,
        google_user_email=state.google_user_email,
        local_account_name=state.local_account_name,
        selected_backend=state.selected_backend,
        is_monitoring=state.is_monitoring,
        connected_calendars=list(state.connected_calendars),
    )


@router.get("/events", response_model=DayResponse)
async def list_events(
    day: date | None = Query(default=None, description="Day (YYYY-MM-DD); today if omitted"),
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> DayResponse:
    """Merged events of one day from every authorized backend."""
    if day is None:
        day = coordinator.clock().astimezone(coordinator.tz).date()
    result = await coordinator.get_day(day)
    return DayResponse(
        day=result.day,
        events=[EventResponse.from_event(e) for e in result.events],
        fetched_at=result.fetched_at,
        from_cache=result.from_cache,
        errors=list(result.errors),
    )


@router.get("/events/{source}/{event_id}", response_model=EventResponse)
async def get_event(
    source: BackendType,
    event_id: str,
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> EventResponse:
    return EventResponse.from_event(await coordinator.fetch_event(event_id, source))


@router.post(
    "/hangouts",
    response_model=CalendarEventResult,
    status_code=status.HTTP_201_CREATED,
)
async def create_hangout(
    request: HangoutCreate,
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> CalendarEventResult:
    """Create a hangout on the preferred (or best available) backend."""
    return await coordinator.create_hangout_event(
        activity=request.activity,
        location=request.location,
        start=_localize(request.start, coordinator),
        duration=timedelta(minutes=request.duration_minutes),
        email_recipients=request.email_recipients,
    )


@router.patch("/events/{source}/{event_id}", response_model=CalendarEventResult)
async def update_event(
    source: BackendType,
    event_id: str,
    request: EventUpdate,
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> CalendarEventResult:
    return await coordinator.update_event(
        event_id,
        source,
        title=request.title,
        location=request.location,
        start=_localize(request.start, coordinator) if request.start else None,
        duration=(
            timedelta(minutes=request.duration_minutes)
            if request.duration_minutes is not None
            else None
        ),
        attendee_emails=request.attendee_emails,
    )


@router.delete("/events/{source}/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_event(
    source: BackendType,
    event_id: str,
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> Response:
    await coordinator.delete_event(event_id, source)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/attendees/{event_id}", response_model=list[str])
async def event_attendees(
    event_id: str,
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> list[str]:
    """Current attendee emails of a Google event."""
    return await coordinator.sync_event_attendees(event_id)


@router.get("/free-busy", response_model=list[BusyIntervalResponse])
async def free_busy(
    start: datetime,
    end: datetime,
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> list[BusyIntervalResponse]:
    intervals = await coordinator.query_free_busy(
        _localize(start, coordinator), _localize(end, coordinator)
    )
    return [
        BusyIntervalResponse(calendar_id=b.calendar_id, start=b.start, end=b.end)
        for b in intervals
    ]


@router.post("/cache/clear")
async def clear_cache(
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> dict[str, str]:
    coordinator.clear_cache()
    return {"status": "cleared"}


@router.put("/preference")
async def set_preference(
    request: PreferenceUpdate,
    coordinator: CalendarCoordinator = Depends(get_coordinator),
) -> dict[str, str | None]:
    """Set the default write backend (null for automatic)."""
    await coordinator.set_selected_backend(request.backend)
    return {"backend": request.backend.value if request.backend else None}

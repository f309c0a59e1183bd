"""FastAPI dependencies."""

from __future__ import annotations

from fastapi import Request

from ketchup_calendar.coordinator import CalendarCoordinator


def get_coordinator(request: Request) -> CalendarCoordinator:
    """The coordinator built at startup."""
    return request.app.state.coordinator

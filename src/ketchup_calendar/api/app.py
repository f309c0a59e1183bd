"""FastAPI application factory.

## Usage

```python
from ketchup_calendar.api import create_app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
```

Tests pass their own `coordinator_factory` to run against in-memory stores.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ketchup_calendar.config import get_settings
from ketchup_calendar.coordinator import CalendarCoordinator
from ketchup_calendar.database.connection import close_db
from ketchup_calendar.engine import build_coordinator
from ketchup_calendar.errors import (
    AuthDenied,
    CalendarError,
    EventNotFound,
    InvalidResponse,
    NetworkError,
    Unauthorized,
)

logger = logging.getLogger(__name__)

CoordinatorFactory = Callable[[], Awaitable[CalendarCoordinator]]


def _status_for(error: CalendarError) -> int:
    if isinstance(error, Unauthorized):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(error, AuthDenied):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, EventNotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (NetworkError, InvalidResponse)):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST


async def calendar_error_handler(request: Request, exc: CalendarError) -> JSONResponse:
    code = _status_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=code,
        content={
            "detail": exc.message,
            "error": type(exc).__name__,
            "backend": exc.backend.value if exc.backend else None,
        },
    )


def create_app(coordinator_factory: CoordinatorFactory | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        coordinator_factory: Builds the coordinator at startup (defaults to
            `build_coordinator()` with the current settings)
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")

        factory = coordinator_factory or (lambda: build_coordinator(settings))
        coordinator = await factory()
        await coordinator.ensure_initialized()
        app.state.coordinator = coordinator

        yield

        logger.info("Shutting down")
        await coordinator.close()
        await close_db()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Unified local and Google calendar engine",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CalendarError, calendar_error_handler)

    from ketchup_calendar.api.routes import auth, calendar

    app.include_router(auth.router, prefix="/auth", tags=["Authorization"])
    app.include_router(calendar.router, prefix="/api/calendar", tags=["Calendar"])

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    return app

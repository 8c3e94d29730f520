"""
FastAPI application factory.

* Registers routes for rides, trips, drivers and admin, plus the ``/ws``
  realtime endpoint.
* Builds / tears down the service graph via lifespan events.
* Maps dispatch errors onto HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ridedispatch.api.middleware import limiter
from ridedispatch.api.routes import admin, drivers, rides, trips
from ridedispatch.bootstrap import Services, build_services
from ridedispatch.config import settings
from ridedispatch.domain.errors import (
    Conflict,
    DispatchError,
    InvalidState,
    NotFound,
    RetryableError,
    Unauthorized,
)
from ridedispatch.realtime import websocket
from ridedispatch.realtime.hub import envelope

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# Most specific first: Conflict is an InvalidState
_STATUS_CODES = (
    (Unauthorized, 403),
    (NotFound, 404),
    (Conflict, 409),
    (InvalidState, 400),
    (RetryableError, 503),
)

RETRY_AFTER_SECONDS = 1


def status_for(exc: DispatchError) -> int:
    for error_type, code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 500


async def _dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    headers = None
    if isinstance(exc, RetryableError):
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": exc.message},
        headers=headers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services on startup unless injected; release them on shutdown."""
    owned = getattr(app.state, "services", None) is None
    if owned:
        app.state.services = build_services(settings)
    yield
    services: Services = app.state.services
    notified = services.hub.broadcast_all(
        envelope("server_shutdown", {"message": "Server is shutting down"})
    )
    logger.info("Shutdown notice sent to %d connections", notified)
    if owned:
        await services.aclose()


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="Ride Dispatch API",
        description=(
            "Matches ride requests with nearby drivers, drives each ride "
            "through its lifecycle, and pushes every change to the parties "
            "over WebSockets."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(DispatchError, _dispatch_error_handler)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(trips.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(websocket.router)

    return app

"""
FastAPI application factory.

* Registers routes for quotes, bookings, drivers, guests, webhooks and admin.
* Maps domain errors to HTTP status codes.
* Disposes the DB engine on shutdown via lifespan events.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from rideledger.api.middleware import limiter
from rideledger.api.routes import admin, bookings, drivers, guests, quotes, webhooks
from rideledger.domain.errors import (
    BookingError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ProcessorError,
    ReconciliationError,
    TokenExpiredError,
    ValidationError,
)
from rideledger.infrastructure.database import engine

logging.basicConfig(level=logging.INFO)

STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    TokenExpiredError: 410,
    PermissionDeniedError: 403,
    ConflictError: 409,
    ProcessorError: 502,
    ReconciliationError: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await engine.dispose()


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    status_code = next(
        (code for cls, code in STATUS_CODES.items() if isinstance(exc, cls)), 400
    )
    content = {"detail": exc.message}
    if isinstance(exc, ProcessorError):
        content["retryable"] = exc.retryable
    if isinstance(exc, ReconciliationError):
        content["issue_id"] = exc.issue_id
    return JSONResponse(status_code=status_code, content=content)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Rideledger Settlement API",
        description=(
            "Guest booking, fare splitting and payment settlement for an "
            "assisted-transport service.  Card payments go through the "
            "payment processor; cash and bank transfers are confirmed by "
            "the driver."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(BookingError, booking_error_handler)

    # Routers
    for module in (quotes, bookings, drivers, guests, webhooks, admin):
        app.include_router(module.router, prefix="/api/v1")

    return app

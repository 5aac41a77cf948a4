"""
FastAPI application factory.

* Registers routes for trips, disputes and admin.
* Builds the payment processor client and the search session registry,
  and starts / stops the reconciliation worker via lifespan events.
* Maps the domain error taxonomy onto HTTP responses.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ridehold.api.middleware import limiter
from ridehold.api.routes import admin, disputes, trips
from ridehold.domain.entities import InvalidStateTransition
from ridehold.domain.errors import (
    ConsistencyError,
    MalformedTripRecord,
    RideholdError,
    TransientNetworkError,
    ValidationError,
)
from ridehold.infrastructure.processor import HttpPaymentProcessor
from ridehold.infrastructure.redis_client import close_redis, get_redis
from ridehold.infrastructure.trip_feed import RedisTripFeed
from ridehold.services.sessions import (
    LedgerReleaser,
    QueueDispatchClient,
    SearchSessionRegistry,
)
from ridehold.workers import reconciler as _reconciler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[RideholdError], int]] = [
    (ConsistencyError, 404),
    (ValidationError, 422),
    (MalformedTripRecord, 422),
    (TransientNetworkError, 503),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire collaborators and start the reconciliation worker; undo on shutdown."""
    redis = await get_redis()
    processor = HttpPaymentProcessor()
    app.state.redis = redis
    app.state.processor = processor
    app.state.sessions = SearchSessionRegistry(
        QueueDispatchClient(redis, processor),
        LedgerReleaser(processor),
        RedisTripFeed(redis),
    )
    await _reconciler.start_reconcile_loop(processor)
    yield
    await _reconciler.stop_reconcile_loop()
    await app.state.sessions.close_all()
    await processor.aclose()
    await close_redis()


async def _domain_error_handler(request: Request, exc: RideholdError) -> JSONResponse:
    status = next(
        (code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 400
    )
    if status >= 500:
        logger.warning("Upstream failure on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=status, content={"detail": exc.message, "code": exc.code}
    )


async def _transition_error_handler(
    request: Request, exc: InvalidStateTransition
) -> JSONResponse:
    return JSONResponse(
        status_code=409, content={"detail": str(exc), "code": "INVALID_STATE_TRANSITION"}
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Ridehold API",
        description=(
            "Driver search with bounded retries, payment authorization "
            "holds, escrow and post-trip disputes."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(RideholdError, _domain_error_handler)
    app.add_exception_handler(InvalidStateTransition, _transition_error_handler)

    # Routers
    app.include_router(trips.router, prefix="/api/v1")
    app.include_router(disputes.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app

"""
FastAPI application entry point with health endpoints and API routing.

Provides the application instance with CORS, rate limiting, request
correlation, domain error mapping, and the lifespan that owns the database
engine, the optional Redis connection and the mirror heartbeat.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import ConnectionError as RedisConnectionError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from cylinderhub.api.deps import get_event_publisher, set_event_publisher
from cylinderhub.api.limiter import limiter
from cylinderhub.api.v1 import api_router
from cylinderhub.cache.redis_client import close_redis_client, get_redis_client
from cylinderhub.core.config import get_settings
from cylinderhub.core.exceptions import (
    AlreadyCleared,
    CylinderVerificationError,
    DriverUnavailable,
    EntryNotFound,
    Forbidden,
    FulfillmentError,
    InsufficientStock,
    InvalidOrderRequest,
    InvalidTransition,
    MirrorSyncFailure,
    OrderNotFound,
    PaymentDeclined,
    QRMismatch,
    RatingExists,
    ResourceNotFound,
)
from cylinderhub.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from cylinderhub.database.connection import (
    close_database_connections,
    get_session,
    get_session_factory,
    initialize_database,
)
from cylinderhub.services.events.publisher import RedisEventPublisher
from cylinderhub.services.ledger.reconciliation import run_mirror_sync
from cylinderhub.services.mirror.factory import (
    attach_redis_lock,
    get_ledger_mirror,
    get_sync_lock,
)
from cylinderhub.services.mirror.heartbeat import MirrorHeartbeat

# Configure logging before application initialization
configure_logging()
logger = get_logger(__name__)

ERROR_STATUS: tuple[tuple[type[FulfillmentError], int], ...] = (
    (InsufficientStock, status.HTTP_400_BAD_REQUEST),
    (InvalidTransition, status.HTTP_400_BAD_REQUEST),
    (QRMismatch, status.HTTP_400_BAD_REQUEST),
    (AlreadyCleared, status.HTTP_400_BAD_REQUEST),
    (PaymentDeclined, status.HTTP_400_BAD_REQUEST),
    (RatingExists, status.HTTP_400_BAD_REQUEST),
    (CylinderVerificationError, status.HTTP_400_BAD_REQUEST),
    (InvalidOrderRequest, status.HTTP_400_BAD_REQUEST),
    (OrderNotFound, status.HTTP_404_NOT_FOUND),
    (EntryNotFound, status.HTTP_404_NOT_FOUND),
    (ResourceNotFound, status.HTTP_404_NOT_FOUND),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (DriverUnavailable, status.HTTP_409_CONFLICT),
    (MirrorSyncFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: FulfillmentError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


async def _connect_redis_events() -> None:
    try:
        client = await get_redis_client()
    except RedisConnectionError as e:
        logger.warning(
            "Redis unavailable, events stay in the log",
            error=str(e),
        )
        return
    set_event_publisher(RedisEventPublisher(client))
    attach_redis_lock(client)
    logger.info("Redis event publisher enabled")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan context manager for startup and shutdown events.

    Args:
        app: FastAPI application instance
    """
    settings = get_settings()

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
        mirror_backend=settings.mirror_backend,
    )

    heartbeat: Optional[MirrorHeartbeat] = None
    with log_performance(logger, "application_startup"):
        await initialize_database()
        if settings.events_redis_enabled:
            await _connect_redis_events()

        if settings.mirror_heartbeat_enabled:

            async def sync_once():
                return await run_mirror_sync(
                    get_session_factory(), get_ledger_mirror(), get_event_publisher()
                )

            heartbeat = MirrorHeartbeat(
                sync=sync_once,
                lock=get_sync_lock(),
                interval_seconds=settings.mirror_heartbeat_interval_seconds,
            )
            heartbeat.start()

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        if heartbeat is not None:
            await heartbeat.stop()
        await get_ledger_mirror().drain()
        await close_redis_client()
        await close_database_connections()
        logger.info("Resources cleaned up successfully")


settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Gas cylinder order fulfillment API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request logging and correlation ID management.

    Returns:
        HTTP response with X-Request-ID header
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        clear_context()


@app.exception_handler(FulfillmentError)
async def fulfillment_exception_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    """Map domain errors to status codes with a stable error body."""
    status_code = status_for(exc)
    logger.warning(
        "Request rejected",
        method=request.method,
        path=request.url.path,
        error_code=exc.code,
        error=exc.message,
        status_code=status_code,
        **{k: v for k, v in exc.context.items() if isinstance(v, (str, int, float, bool))},
    )

    content = {
        "error": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if isinstance(exc, InvalidTransition):
        content["current_state"] = exc.current_state
        if "allowed_events" in exc.context:
            content["allowed_events"] = exc.context["allowed_events"]
    if isinstance(exc, InsufficientStock) and "available" in exc.context:
        content["available"] = exc.context["available"]

    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": get_request_id(),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions with a generic error response.

    Logs error with full context and returns generic error message
    to avoid exposing internal details.
    """
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "request_id": get_request_id(),
        },
    )


@app.get(
    "/health",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Health check endpoint",
)
async def health_check() -> dict[str, str]:
    """Always returns 200 OK while the process is running."""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get(
    "/ready",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Readiness check endpoint",
)
async def readiness_check():
    """
    Readiness check for orchestration.

    Verifies database connectivity; returns 503 when it is unavailable.
    """
    db_status = "healthy"
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(
            "Database connectivity check failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        db_status = "unhealthy"

    if db_status != "healthy":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "service": settings.app_name,
                "database": db_status,
            },
        )

    return {
        "status": "ready",
        "service": settings.app_name,
        "version": settings.app_version,
        "database": db_status,
        "mirror_backend": settings.mirror_backend,
    }


app.include_router(api_router, prefix=settings.api_v1_prefix)

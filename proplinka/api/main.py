"""
Main FastAPI application.

PropLinka marketplace API with:
- CORS configuration
- One error body shape for domain, HTTP and validation errors
- Request ID tracking
- Per-route Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Dict

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from proplinka import __version__
from proplinka.config import get_settings
from proplinka.core.exceptions import ProplinkaError, RateLimitExceededError
from proplinka.database.connection import close_db, init_db
from proplinka.monitoring.logging import setup_logging
from proplinka.monitoring.metrics import metrics

from .dependencies import get_email_client, get_rate_limiter
from .routes import (
    admin_router,
    checkout_router,
    conversation_router,
    cron_router,
    favorite_router,
    fees_router,
    lawyer_router,
    moderation_router,
    monitoring_router,
    notification_router,
    offer_router,
    payment_router,
    profile_router,
    property_router,
    transaction_router,
    viewing_router,
    webhook_router,
    webhook_handler,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    try:
        await webhook_handler.close()
        await get_rate_limiter().close()
        await get_email_client().close()
        await close_db()
        logger.info("connections_closed")
    except Exception as e:
        logger.error("shutdown_error", error=str(e))


app = FastAPI(
    title="PropLinka API",
    description=(
        "Flat-fee real estate marketplace. Sellers list for a tiered flat fee instead of "
        "agent commission; success fees and featured listings are paid through Stripe Checkout."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error codes for framework-raised HTTP errors, matching the domain error body
HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "internal_error",
    502: "payment_error",
    503: "service_unavailable",
}


def error_body(code: str, message: str, error_type: str, **extra: Any) -> Dict[str, Any]:
    return {"error": {"code": code, "message": message, "type": error_type, **extra}}


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """
    Bind a request ID to every log line and record per-route metrics.

    The route label is the path template ("/properties/{property_id}"), so
    listing IDs do not explode metric cardinality.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    started = time.perf_counter()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        duration = time.perf_counter() - started
        route = request.scope.get("route")
        route_path = getattr(route, "path", "unmatched")
        metrics.record_http_request(request.method, route_path, status_code, duration)
        logger.info(
            "request_completed",
            route=route_path,
            status_code=status_code,
            duration_seconds=round(duration, 4),
        )
        structlog.contextvars.clear_contextvars()


@app.exception_handler(ProplinkaError)
async def domain_exception_handler(request: Request, exc: ProplinkaError) -> JSONResponse:
    log = logger.error if exc.http_status >= 500 else logger.info
    log("domain_error", error_code=exc.error_code, error=exc.message)
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Same error shape as domain errors; auth and rate limit headers are kept."""
    code = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    if isinstance(exc.detail, str):
        content = error_body(code, exc.detail, "HTTPException")
    else:
        content = error_body(code, code.replace("_", " "), "HTTPException", details=exc.detail)
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [
        {"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(
            "validation_error", "Request validation failed", "RequestValidationError", fields=fields
        ),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            "internal_error",
            "An unexpected error occurred. Please try again later.",
            "InternalServerError",
        ),
    )


app.include_router(profile_router)
app.include_router(property_router)
app.include_router(offer_router)
app.include_router(transaction_router)
app.include_router(lawyer_router)
app.include_router(favorite_router)
app.include_router(viewing_router)
app.include_router(checkout_router)
app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(conversation_router)
app.include_router(notification_router)
app.include_router(moderation_router)
app.include_router(admin_router)
app.include_router(cron_router)
app.include_router(fees_router)
app.include_router(monitoring_router)

Path(settings.media_root).mkdir(parents=True, exist_ok=True)
app.mount(settings.media_url, StaticFiles(directory=settings.media_root), name="media")


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": "proplinka",
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "proplinka.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )

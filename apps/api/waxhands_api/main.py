"""Wax Hands Payments API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from waxhands_api import __version__
from waxhands_api.billing.enrichment import OperationKeyEnricher
from waxhands_api.billing.notifier import EventNotifier, RedisEventNotifier
from waxhands_api.billing.robokassa import RobokassaClient
from waxhands_api.config.env import AppSettings, load_settings
from waxhands_api.context import invoice_id_var, request_id_var
from waxhands_api.db.redis_client import build_redis_client
from waxhands_api.routers import health, payments
from waxhands_api.schemas import ProblemDetail
from waxhands_api.utils import configure_json_logging

# Set WAXHANDS_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("WAXHANDS_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

logger = logging.getLogger(__name__)


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


def _instance() -> str:
    request_id = request_id_var.get()
    return f"urn:waxhands:trace:{request_id}" if request_id else f"urn:waxhands:trace:{uuid.uuid4()}"


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC 9457 Problem Details format.

    Returns application/problem+json with top-level RFC 9457 fields.
    """
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)

    problem = ProblemDetail(
        type=f"https://api.waxhands.ru/problems/http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        status=exc.status_code,
        detail=detail_value,
        instance=_instance(),
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with RFC 9457 Problem Details format."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type="https://api.waxhands.ru/problems/validation-error",
        title="Request Validation Failed",
        status=422,
        detail=f"Invalid field '{field}': {msg}",
        instance=_instance(),
    )

    return JSONResponse(
        status_code=422,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with RFC 9457 Problem Details format."""
    problem = ProblemDetail(
        type="https://api.waxhands.ru/problems/internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_instance(),
    )

    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


# ============================================================================
# Application Factory
# ============================================================================


def create_app(
    settings: Optional[AppSettings] = None,
    *,
    robokassa: Optional[RobokassaClient] = None,
    notifier: Optional[EventNotifier] = None,
    enricher: Optional[OperationKeyEnricher] = None,
) -> FastAPI:
    """Create FastAPI application.

    Collaborators default to the ones described by settings; tests pass
    their own to avoid network access.

    Args:
        settings: Application settings (default: resolved from environment)
        robokassa: Robokassa client
        notifier: Settlement event notifier (default: Redis pub/sub)
        enricher: OpKey enricher (default: bounded by ROBOKASSA_OPSTATE_TIMEOUT)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or load_settings()

    new_app = FastAPI(
        title="Wax Hands Payments API",
        description="Robokassa payment links, webhook reconciliation and refund checks for workshop invoices.",
        version=__version__,
        docs_url="/api-docs",
        redoc_url="/redoc",
    )

    new_app.state.settings = settings
    new_app.state.robokassa = robokassa or RobokassaClient(settings.robokassa)
    new_app.state.enricher = enricher or OperationKeyEnricher(
        new_app.state.robokassa, timeout=settings.robokassa.opstate_timeout
    )
    if notifier is None:
        new_app.state.redis_client = build_redis_client(settings.redis_url)
        notifier = RedisEventNotifier(new_app.state.redis_client, settings.realtime_channel)
    else:
        new_app.state.redis_client = None
    new_app.state.notifier = notifier

    # MDN: credentials mode CANNOT use wildcard origins
    new_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    new_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    new_app.add_exception_handler(RequestValidationError, validation_exception_handler)
    new_app.add_exception_handler(Exception, general_exception_handler)

    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(payments.router)

    # Completion logging middleware (inner)
    @new_app.middleware("http")
    async def completion_logging_mw(request: Request, call_next):
        """Log every HTTP request completion with observability fields.

        Logs even on exceptions (status_code=500).
        """
        invoice_id_var.set("")

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "http.request.completed",
                extra={
                    "event": "http.request.completed",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            invoice_id_var.set("")

    # Request ID middleware (outermost for context propagation)
    @new_app.middleware("http")
    async def request_id_mw(request: Request, call_next):
        """Generate and propagate request_id.

        - Accepts X-Request-ID header from client (optional)
        - Generates new UUID if not provided
        - Returns X-Request-ID in response headers
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    return new_app


app = create_app()

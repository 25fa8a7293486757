"""Folio API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from folio_api.billing.errors import PaymentProcessorError
from folio_api.context import request_id_var, session_ref_var, user_id_var
from folio_api.routers import applications, health, webhooks
from folio_api.schemas import ProblemDetail
from folio_api.utils import configure_json_logging

logger = logging.getLogger(__name__)

PROBLEM_BASE = "https://api.folio.example/problems"


def _allowed_origins() -> list[str]:
    cors_origins_env = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_origins_env:
        return [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    return [
        "http://localhost:3000",
        "http://localhost:8000",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8000",
    ]


def _instance() -> str:
    request_id = request_id_var.get()
    return f"urn:folio:trace:{request_id}" if request_id else f"urn:folio:trace:{uuid.uuid4()}"


def _problem(status_code: int, type_suffix: str, title: str, detail, headers: dict | None = None, **ext) -> JSONResponse:
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE}/{type_suffix}",
        title=title,
        status=status_code,
        detail=detail,
        instance=_instance(),
    )
    return JSONResponse(
        status_code=status_code,
        content={**problem.model_dump(exclude_none=True), **ext},
        media_type="application/problem+json",
        headers=headers,
    )


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        429: "Too Many Requests",
        500: "Internal Server Error",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# ============================================================================
# RFC 9457 Exception Handlers
# ============================================================================


async def payment_processor_error_handler(request: Request, exc: PaymentProcessorError) -> JSONResponse:
    """Processor unreachable or rejecting → 503 with Retry-After; nothing was charged."""
    logger.warning(
        "PAYMENT_PROCESSOR_UNAVAILABLE",
        extra={"path": request.url.path, "retryable": exc.retryable, "status_code": exc.status_code},
    )
    return _problem(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "payment-processor-unavailable",
        "Payment Processor Unavailable",
        "The payment processor could not be reached. Please try again shortly.",
        headers={"Retry-After": "30"},
        retryable=True,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)
    headers = {"Retry-After": "60"} if exc.status_code == 429 else None
    return _problem(
        exc.status_code,
        f"http-{exc.status_code}",
        _get_title_for_status(exc.status_code),
        detail_value,
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 with the first failing field; submitted values are never echoed."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")
    return _problem(
        422,
        "validation-error",
        "Request Validation Failed",
        f"Invalid field '{field}': {msg}",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "UNHANDLED_EXCEPTION",
        extra={"path": request.url.path, "error_type": type(exc).__name__},
        exc_info=True,
    )
    return _problem(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal-error",
        "Internal Server Error",
        "An unexpected error occurred. Please try again later.",
    )


# ============================================================================
# Application Factory
# ============================================================================


def create_app() -> FastAPI:
    """Build the FastAPI application (routers, middleware, error handlers)."""
    new_app = FastAPI(
        title="Folio API",
        description="Checkout, payment webhooks and account provisioning for Folio.",
        version=health.VERSION,
        docs_url="/api-docs",
        redoc_url="/redoc",
    )

    new_app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        expose_headers=["Retry-After", "X-Request-ID"],
    )

    new_app.add_exception_handler(PaymentProcessorError, payment_processor_error_handler)
    new_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    new_app.add_exception_handler(RequestValidationError, validation_exception_handler)
    new_app.add_exception_handler(Exception, general_exception_handler)

    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(applications.router)
    new_app.include_router(webhooks.router)

    @new_app.middleware("http")
    async def completion_logging_mw(request: Request, call_next):
        """Emit http.request.completed for every request, even on exceptions.

        Clears per-request contextvars before and after.
        """
        session_ref_var.set("")
        user_id_var.set("")

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
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            session_ref_var.set("")
            user_id_var.set("")

    # Registered last → outermost, so request_id is set before inner middleware runs
    @new_app.middleware("http")
    async def request_id_mw(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    return new_app


# Set FOLIO_JSON_LOGS=false to disable (defaults to true)
if os.getenv("FOLIO_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

app = create_app()

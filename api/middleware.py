"""
FastAPI Middleware for SARCheck API

Provides CORS configuration, request logging, and error handling that maps
service exceptions onto the standard error envelope.
"""

import os
import re
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from database.repositories import (
    ConcurrentModificationError,
    DuplicateEntityError,
    EntityNotFoundError,
)
from database.sar_service import InputValidationError
from logging_utils import sanitize_for_logging
from narrative_generator import NarrativeGenerationError

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",  # Vite dev port
    "http://localhost:8000",  # FastAPI default port
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8000",
]

ALLOWED_METHODS = ["GET", "POST", "PUT", "OPTIONS"]
EXPOSED_HEADERS = ["X-Request-ID", "X-Processing-Time-MS"]


def _build_cors_regex_pattern(allowed_origins: List[str]) -> Tuple[Optional[str], List[str]]:
    """Split origins into a regex for `scheme://*.host` wildcards and exact matches.

    A wildcard matches exactly one subdomain label. When any wildcard is
    present the exact origins are folded into the same regex, since
    CORSMiddleware checks `allow_origin_regex` before `allow_origins`.
    """
    exact_origins = [o for o in allowed_origins if "://*." not in o]
    wildcard_patterns = []
    for origin in allowed_origins:
        if "://*." in origin:
            scheme, host = origin.split("://*.", 1)
            wildcard_patterns.append(rf"{re.escape(scheme)}://[\w-]+\.{re.escape(host)}")

    if not wildcard_patterns:
        return None, exact_origins

    alternatives = wildcard_patterns + [re.escape(o) for o in exact_origins]
    return "|".join(f"(?:{p})" for p in alternatives), exact_origins


def setup_cors(app: FastAPI) -> None:
    """Install CORSMiddleware.

    Origins come from CORS_ORIGINS (comma separated) or default to the
    local development ports.
    """
    configured = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    origin_regex, exact_origins = _build_cors_regex_pattern(configured or DEFAULT_CORS_ORIGINS)

    origin_options = {"allow_origin_regex": origin_regex} if origin_regex else {"allow_origins": exact_origins}
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_methods=ALLOWED_METHODS,
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
        **origin_options,
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with a correlation id and processing time."""

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

        request.state.request_id = request_id
        request.state.start_time = start_time

        # Sanitize path to prevent log injection
        sanitized_path = sanitize_for_logging(str(request.url.path))
        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitized_path,
            request_id,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise

        processing_time_ms = int((time.time() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

        logger.info(
            "Response: status=%d processing_time_ms=%d request_id=%s",
            response.status_code,
            processing_time_ms,
            request_id,
        )
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    suggestion: str = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)

    Returns:
        JSONResponse with standardized error format
    """
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if field:
        error_detail["field"] = field
    if suggestion:
        error_detail["suggestion"] = suggestion

    return JSONResponse(status_code=status_code, content={"error": error_detail})


async def service_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map service and unexpected exceptions onto error responses.

    Unexpected errors are sanitized to prevent information leakage.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    if isinstance(exc, EntityNotFoundError):
        logger.info("Not found: %s request_id=%s", sanitize_for_logging(str(exc)), request_id)
        return create_error_response(code="NOT_FOUND", message=str(exc), status_code=404)

    if isinstance(exc, InputValidationError):
        logger.info(
            "Validation failed: field=%s code=%s request_id=%s",
            exc.field,
            exc.code,
            request_id,
        )
        return create_error_response(
            code=exc.code,
            message=str(exc),
            status_code=422,
            field=exc.field,
            suggestion=exc.suggestion,
        )

    if isinstance(exc, ConcurrentModificationError):
        logger.warning("Concurrent edit rejected: %s request_id=%s", exc, request_id)
        return create_error_response(
            code="CONCURRENT_MODIFICATION",
            message=str(exc),
            status_code=409,
            suggestion="Reload the report and apply the edit again",
        )

    if isinstance(exc, DuplicateEntityError):
        logger.warning("Duplicate entity: %s request_id=%s", sanitize_for_logging(str(exc)), request_id)
        return create_error_response(code="DUPLICATE_ENTITY", message=str(exc), status_code=409)

    if isinstance(exc, NarrativeGenerationError):
        logger.error(
            "Narrative generation failed: %s request_id=%s",
            sanitize_for_logging(str(exc)),
            request_id,
        )
        return create_error_response(
            code="UPSTREAM_GENERATION_FAILURE",
            message=str(exc),
            status_code=502,
            suggestion="Retry later or switch narrative.provider to 'template'",
        )

    if isinstance(exc, ConfigurationError):
        logger.error("Configuration error: %s request_id=%s", sanitize_for_logging(str(exc)), request_id)
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
    )
    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for request body and parameter validation failures."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(location) or None
    message = first.get("msg", "Invalid request")

    logger.info(
        "Request validation failed: field=%s errors=%d request_id=%s",
        field,
        len(errors),
        getattr(request.state, "request_id", "unknown"),
    )
    return create_error_response(
        code="VALIDATION_ERROR",
        message=message,
        status_code=422,
        field=field,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handler for HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


SERVICE_EXCEPTIONS = (
    EntityNotFoundError,
    InputValidationError,
    ConcurrentModificationError,
    DuplicateEntityError,
    NarrativeGenerationError,
    ConfigurationError,
)


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    for exc_class in SERVICE_EXCEPTIONS:
        app.add_exception_handler(exc_class, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, service_exception_handler)

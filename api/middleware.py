"""
FastAPI Middleware for the MVR Exchange API

Provides CORS configuration, request logging, and global error handling.
"""

import os
import re
import time
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from database.record_store import BatchIngestionError, PersistenceError
from database.repositories import EntityNotFoundError
from log_utils import sanitize_for_logging
from security_logger import get_security_logger
from validation import InputValidationError

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]

EXPOSED_HEADERS = ["X-Request-ID", "X-Processing-Time-MS"]


def _build_cors_regex_pattern(allowed_origins: List[str]) -> tuple:
    """Build regex pattern for CORS from allowed origins list.

    Args:
        allowed_origins: List of allowed origins (may include wildcards like https://*.example.com)

    Returns:
        Tuple of (combined_regex_pattern or None, exact_origins list)
    """
    regex_patterns = []
    exact_origins = []

    for origin in allowed_origins:
        if "*." in origin:
            scheme, _, host = origin.partition("*.")
            regex_patterns.append(re.escape(scheme) + r"[\w-]+\." + re.escape(host))
        else:
            exact_origins.append(origin)

    if not regex_patterns:
        return None, exact_origins

    combined_regex = "|".join(f"({p})" for p in regex_patterns)
    if exact_origins:
        exact_escaped = "|".join(re.escape(o) for o in exact_origins)
        combined_regex = f"({combined_regex})|({exact_escaped})"

    return combined_regex, exact_origins


def setup_cors(app: FastAPI, origins: Optional[List[str]] = None) -> None:
    """Configure CORS middleware for the application.

    Origins come from the CORS_ORIGINS environment variable (comma-separated)
    when set, otherwise from the api.cors_origins config value.
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",")]
    else:
        allowed_origins = origins or DEFAULT_CORS_ORIGINS

    combined_regex, exact_origins = _build_cors_regex_pattern(allowed_origins)

    if combined_regex:
        app.add_middleware(
            CORSMiddleware,
            allow_origin_regex=combined_regex,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=EXPOSED_HEADERS,
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=exact_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=EXPOSED_HEADERS,
        )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests with sanitized inputs.

    Request bodies are never logged; they carry personal data.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        """Process request and log details."""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", str(time.time_ns()))

        request.state.request_id = request_id
        request.state.start_time = start_time
        get_security_logger().set_request_context(
            request_id=request_id,
            source_ip=request.client.host if request.client else ""
        )

        sanitized_path = sanitize_for_logging(str(request.url.path))
        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitized_path,
            request_id,
        )

        try:
            response = await call_next(request)

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

        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise
        finally:
            get_security_logger().clear_request_context()


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    suggestion: str = None,
    details: list = None,
    extra: dict = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)
        details: Per-field errors (optional)
        extra: Additional top-level response keys (optional)

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
    if details:
        error_detail["details"] = details

    content = {"error": error_detail}
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


async def validation_exception_handler(request: Request, exc: InputValidationError) -> JSONResponse:
    """400 with every failing field; each failure goes to the security log."""
    security_logger = get_security_logger()
    for error in exc.errors:
        security_logger.log_validation_failure(
            field=error.field,
            error_code=exc.code,
            input_value="",
            source=sanitize_for_logging(str(request.url.path)),
            additional_context={"message": error.message}
        )

    if any(error.field == "consent" for error in exc.errors):
        security_logger.log_consent_rejected(
            company_id=sanitize_for_logging(str(getattr(request.state, "company_id", ""))),
            drivers_license_number=str(getattr(request.state, "drivers_license_number", "")),
            source=sanitize_for_logging(str(request.url.path))
        )

    logger.warning(
        "Validation failed: fields=%s request_id=%s",
        ",".join(error.field for error in exc.errors),
        _request_id(request),
    )
    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        field=exc.field,
        details=[error.to_dict() for error in exc.errors],
    )


async def not_found_exception_handler(request: Request, exc: EntityNotFoundError) -> JSONResponse:
    logger.info("Not found: %s request_id=%s", sanitize_for_logging(str(exc)), _request_id(request))
    return create_error_response(code="NOT_FOUND", message=str(exc), status_code=404)


async def batch_exception_handler(request: Request, exc: BatchIngestionError) -> JSONResponse:
    """500 carrying every element's outcome; nothing from the batch was stored."""
    logger.error(
        "Batch rolled back: failed=%d request_id=%s",
        exc.result.failed_records,
        _request_id(request),
    )
    payload = exc.result.to_dict()
    return create_error_response(
        code="BATCH_FAILED",
        message=f"Batch rolled back: {exc.result.failed_records} of {exc.result.total} records failed",
        status_code=500,
        extra={
            "committed": False,
            "summary": payload["summary"],
            "results": payload["results"],
        },
    )


async def persistence_exception_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error(
        "Persistence failure: message=%s request_id=%s",
        sanitize_for_logging(str(exc)),
        _request_id(request),
    )
    return create_error_response(
        code="PERSISTENCE_ERROR",
        message="The record could not be stored or read. No changes were made.",
        status_code=500,
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed JSON bodies are reported as 400 like other validation failures."""
    logger.warning("Malformed request body request_id=%s", _request_id(request))
    return create_error_response(
        code="VALIDATION_ERROR",
        message="Request body must be a JSON object",
        status_code=400,
        field="body",
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Sanitizes error messages to prevent information leakage.

    Args:
        request: FastAPI request object
        exc: Exception that was raised

    Returns:
        Standardized error response
    """
    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        _request_id(request),
    )

    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for HTTP exceptions.

    Args:
        request: FastAPI request object
        exc: HTTPException that was raised

    Returns:
        Standardized error response
    """
    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        _request_id(request),
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(InputValidationError, validation_exception_handler)
    app.add_exception_handler(EntityNotFoundError, not_found_exception_handler)
    app.add_exception_handler(BatchIngestionError, batch_exception_handler)
    app.add_exception_handler(PersistenceError, persistence_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

"""
FastAPI Middleware for the Affiliation API

Provides CORS configuration, request logging with request id propagation,
an inflight request limit and the error envelope {code, message}.
"""

import asyncio
import time
import logging
from typing import Callable, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from errors import AffiliationError, ERR_BAD_REQUEST, ERR_SERVER_ERROR, redact, status_text
from structured_logging import (
    clear_request_id,
    sanitize_for_logging,
    set_request_id,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
PROCESSING_TIME_HEADER = "X-Processing-Time-MS"

# Default allowed origins for local development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8080",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8080",
]


def setup_cors(app: FastAPI, allowed_origins: Optional[List[str]] = None) -> None:
    """Configure CORS middleware for the application.

    Origins come from the CORS_ORIGINS setting; localhost is allowed when
    nothing is configured.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER, PROCESSING_TIME_HEADER],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns the request id, logs the request and its outcome.

    The request id is taken from the X-Request-ID header (generated when
    absent), stored in the logging context and echoed in the response.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = time.time()
        request_id = set_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id

        sanitized_path = sanitize_for_logging(str(request.url.path))
        logger.info("Request: method=%s path=%s", request.method, sanitized_path)

        try:
            response = await call_next(request)
            processing_time_ms = int((time.time() - start_time) * 1000)
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers[PROCESSING_TIME_HEADER] = str(processing_time_ms)
            logger.info(
                "Response: status=%d processing_time_ms=%d",
                response.status_code,
                processing_time_ms,
            )
            return response
        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d",
                sanitize_for_logging(redact(str(exc))),
                processing_time_ms,
            )
            raise
        finally:
            clear_request_id()


class InflightLimitMiddleware(BaseHTTPMiddleware):
    """Caps concurrently processed requests; excess requests wait for a slot."""

    def __init__(self, app, max_inflight: int = 50):
        super().__init__(app)
        self.max_inflight = max_inflight
        self._semaphore = asyncio.Semaphore(max_inflight)

    async def dispatch(self, request: Request, call_next: Callable):
        async with self._semaphore:
            return await call_next(request)


def create_error_response(code: str, message: str) -> JSONResponse:
    """Create the error envelope; the message is redacted before it leaves."""
    status_code = int(code) if code.isdigit() else 500
    return JSONResponse(
        status_code=status_code,
        content={"code": code, "message": redact(message)},
    )


async def affiliation_error_handler(request: Request, exc: AffiliationError) -> JSONResponse:
    log = logger.error if exc.code == ERR_SERVER_ERROR else logger.warning
    log(
        "Service error: code=%s (%s) message=%s",
        exc.code,
        status_text(exc.code),
        sanitize_for_logging(redact(exc.message)),
    )
    return create_error_response(exc.code, exc.message)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request validation failures become a 400 naming the offending fields."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg', 'invalid')}")
    message = "; ".join(problems) or "invalid request"
    logger.warning("Validation error: %s", sanitize_for_logging(message))
    return create_error_response(ERR_BAD_REQUEST, message)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning("HTTP exception: status=%d detail=%s", exc.status_code, sanitize_for_logging(detail))
    return create_error_response(str(exc.status_code), detail)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: logged in full (redacted), reported generically."""
    logger.error(
        "Unhandled exception: type=%s message=%s",
        type(exc).__name__,
        sanitize_for_logging(redact(str(exc))),
    )
    return create_error_response(ERR_SERVER_ERROR, "internal server error")


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(AffiliationError, affiliation_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

"""Centralized error handling for the API.

Standardized error codes, exception-to-response mapping and the global
exception handler installed on the FastAPI app.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_410_GONE,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_429_TOO_MANY_REQUESTS,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from mediadrop.core.logging import get_request_id
from mediadrop.core.metrics import MetricsCollector
from mediadrop.services.job_registry import JobNotFoundError

logger = structlog.get_logger(__name__)


class ErrorCode:
    """Machine-readable identifiers for API error conditions."""

    # Client Errors (4xx)
    INVALID_REQUEST = "INVALID_REQUEST"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    FILE_NOT_READY = "FILE_NOT_READY"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Server Errors (5xx)
    DOWNLOAD_START_FAILED = "DOWNLOAD_START_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    COMPONENT_UNAVAILABLE = "COMPONENT_UNAVAILABLE"


ERROR_CODE_TO_STATUS: Dict[str, int] = {
    ErrorCode.INVALID_REQUEST: HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.JOB_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.FILE_NOT_READY: HTTP_409_CONFLICT,
    ErrorCode.DOWNLOAD_FAILED: HTTP_410_GONE,
    ErrorCode.RATE_LIMIT_EXCEEDED: HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.DOWNLOAD_START_FAILED: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.INTERNAL_ERROR: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.COMPONENT_UNAVAILABLE: HTTP_503_SERVICE_UNAVAILABLE,
}


ERROR_SUGGESTIONS: Dict[str, str] = {
    ErrorCode.INVALID_REQUEST: (
        "Check the request body: url must be http(s), format one of mp4, webm, mp3 and quality "
        "one of best, 1080p, 720p, 480p, audio"
    ),
    ErrorCode.JOB_NOT_FOUND: (
        "The token does not exist, has expired, or its file was already downloaded"
    ),
    ErrorCode.FILE_NOT_READY: "The download is still running. Poll the status endpoint",
    ErrorCode.DOWNLOAD_FAILED: "Submit the URL again or try another format",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Wait for the Retry-After period before submitting again",
    ErrorCode.DOWNLOAD_START_FAILED: "The download could not be started. Try again later",
    ErrorCode.INTERNAL_ERROR: "Contact administrator if the issue persists",
    ErrorCode.COMPONENT_UNAVAILABLE: "Check /health for component status",
}


class APIError(Exception):
    """Structured API error converted to an ErrorDetail response."""

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Any] = None,
        suggestion: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """Initialize an API error.

        Args:
            error_code: Machine-readable error code from ErrorCode class.
            message: Human-readable error message.
            details: Optional additional details about the error.
            suggestion: Optional suggestion, defaults to the code's suggestion.
            headers: Optional extra response headers (e.g. Retry-After).
        """
        self.error_code = error_code
        self.message = message
        self.details = details
        self.suggestion = suggestion or ERROR_SUGGESTIONS.get(error_code)
        self.headers = headers
        super().__init__(message)


def _build_error_response(
    error_code: str,
    message: str,
    details: Optional[Any] = None,
    suggestion: Optional[str] = None,
) -> Dict[str, Any]:
    """Body matching ErrorDetail; empty optional fields are left out."""
    response: Dict[str, Any] = {
        "error_code": error_code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    optional = {
        "details": details,
        "request_id": get_request_id(),
        "suggestion": suggestion or ERROR_SUGGESTIONS.get(error_code),
    }
    response.update({key: value for key, value in optional.items() if value})
    return response


def _as_api_error(exc: Exception) -> APIError:
    """Map any exception raised while serving a request onto an APIError."""
    if isinstance(exc, APIError):
        return exc
    if isinstance(exc, RequestValidationError):
        return APIError(ErrorCode.INVALID_REQUEST, "Invalid request data", jsonable_errors(exc))
    if isinstance(exc, JobNotFoundError):
        return APIError(ErrorCode.JOB_NOT_FOUND, "Download not found")
    if isinstance(exc, StarletteHTTPException):
        return APIError(
            _status_to_error_code(exc.status_code),
            str(exc.detail) if exc.detail else "An error occurred",
            headers=exc.headers,
        )
    return APIError(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert any exception to a standardized ErrorDetail response."""
    error = _as_api_error(exc)
    status_code = ERROR_CODE_TO_STATUS.get(error.error_code, HTTP_500_INTERNAL_SERVER_ERROR)
    if isinstance(exc, StarletteHTTPException):
        status_code = exc.status_code

    handled = (APIError, RequestValidationError, JobNotFoundError, StarletteHTTPException)
    if not isinstance(exc, handled):
        logger.error(
            "unhandled_exception",
            error_type=type(exc).__name__,
            error=str(exc),
            path=request.url.path,
            exc_info=exc,
        )
    elif isinstance(exc, RequestValidationError):
        logger.info("request_validation_failed", path=request.url.path)
    else:
        logger.warning(
            "api_error",
            error_code=error.error_code,
            status_code=status_code,
            message=error.message,
            path=request.url.path,
        )

    route = request.scope.get("route")
    MetricsCollector.record_error(error.error_code, route.path if route else "/unmatched")

    body = _build_error_response(error.error_code, error.message, error.details, error.suggestion)
    return JSONResponse(status_code=status_code, content=body, headers=error.headers)


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    """Validation issues reduced to JSON-safe location/message pairs."""
    return [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


def _status_to_error_code(status_code: int) -> str:
    return {
        HTTP_400_BAD_REQUEST: ErrorCode.INVALID_REQUEST,
        HTTP_404_NOT_FOUND: ErrorCode.JOB_NOT_FOUND,
        HTTP_409_CONFLICT: ErrorCode.FILE_NOT_READY,
        HTTP_422_UNPROCESSABLE_ENTITY: ErrorCode.INVALID_REQUEST,
        HTTP_429_TOO_MANY_REQUESTS: ErrorCode.RATE_LIMIT_EXCEEDED,
        HTTP_503_SERVICE_UNAVAILABLE: ErrorCode.COMPONENT_UNAVAILABLE,
    }.get(status_code, ErrorCode.INTERNAL_ERROR)

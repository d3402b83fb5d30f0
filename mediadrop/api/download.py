"""Download endpoints.

- POST /api/download: admit and start a job, returns its token
- GET /api/download/{token}: one-time delivery of the finished file
"""

import math
import re
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from mediadrop.api.schemas import DownloadRequest, DownloadResponse, ErrorDetail
from mediadrop.core.config import SecurityConfig
from mediadrop.core.errors import APIError, ErrorCode
from mediadrop.core.logging import hash_client_key
from mediadrop.core.metrics import MetricsCollector
from mediadrop.core.rate_limiter import SlidingWindowRateLimiter
from mediadrop.middleware.request_context import get_client_ip
from mediadrop.models.job import JobState
from mediadrop.services.job_registry import JobRegistry
from mediadrop.services.transfer import TransferGateway

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["download"])

UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.\-_]")


def sanitize_filename(name: str) -> str:
    """Replace every character outside [A-Za-z0-9._-] with an underscore."""
    return UNSAFE_FILENAME_CHARS.sub("_", name)


# Dependency placeholders (to be configured in main app)
async def get_job_registry() -> JobRegistry:
    """Get job registry instance."""
    raise NotImplementedError("Job registry dependency not configured")


async def get_rate_limiter() -> SlidingWindowRateLimiter:
    """Get submission rate limiter instance."""
    raise NotImplementedError("Rate limiter dependency not configured")


async def get_transfer_gateway() -> TransferGateway:
    """Get transfer gateway instance."""
    raise NotImplementedError("Transfer gateway dependency not configured")


async def get_security_config() -> SecurityConfig:
    """Get security config section."""
    raise NotImplementedError("Security config dependency not configured")


@router.post(
    "/download",
    response_model=DownloadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        202: {"description": "Download job started"},
        422: {"description": "Invalid request", "model": ErrorDetail},
        429: {"description": "Too many submissions from this client", "model": ErrorDetail},
        500: {"description": "Download could not be started", "model": ErrorDetail},
    },
)
async def submit_download(
    payload: DownloadRequest,
    request: Request,
    registry: JobRegistry = Depends(get_job_registry),  # noqa: B008
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),  # noqa: B008
    security: SecurityConfig = Depends(get_security_config),  # noqa: B008
) -> Any:
    """
    Start a download.

    The body is validated first, then the client is checked against the
    submission rate limit, then the extractor is started. Returns 202 with
    the job token as soon as the process is spawned.
    """
    client_ip = get_client_ip(request, trust_forwarded=security.trust_forwarded_headers)

    if not limiter.admit(client_ip):
        retry_after = max(1, math.ceil(limiter.retry_after(client_ip)))
        MetricsCollector.record_rate_limit_exceeded()
        logger.warning(
            "rate_limit_exceeded",
            client_hash=hash_client_key(client_ip),
            retry_after=retry_after,
        )
        raise APIError(
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
            message=(
                f"Rate limit exceeded: at most {limiter.max_requests} downloads "
                f"every {format_window(limiter.window_seconds)}"
            ),
            headers={"Retry-After": str(retry_after)},
        )

    logger.info(
        "download_requested",
        url=payload.url,
        format=payload.format.value,
        quality=payload.quality.value,
        client_hash=hash_client_key(client_ip),
    )

    try:
        token = await registry.submit(payload.url, payload.format, payload.quality)
    except Exception as e:
        logger.error("download_start_failed", url=payload.url, error=str(e))
        raise APIError(
            error_code=ErrorCode.DOWNLOAD_START_FAILED,
            message="Could not start the download",
            details=str(e),
        ) from e

    return DownloadResponse(token=token)


@router.get(
    "/download/{token}",
    response_class=StreamingResponse,
    responses={
        200: {"description": "File stream, available once"},
        404: {"description": "Unknown, expired or already delivered token", "model": ErrorDetail},
        409: {"description": "Download still in progress", "model": ErrorDetail},
        410: {"description": "Download failed", "model": ErrorDetail},
    },
)
async def fetch_download(
    token: str,
    registry: JobRegistry = Depends(get_job_registry),  # noqa: B008
    gateway: TransferGateway = Depends(get_transfer_gateway),  # noqa: B008
) -> StreamingResponse:
    """
    Stream the finished file of a job.

    The job is evicted once the stream ends, whether the client read it
    to the end or went away, so a second request for the same token is 404.
    """
    job = registry.get_or_raise(token)

    if job.state == JobState.ERROR:
        raise APIError(
            ErrorCode.DOWNLOAD_FAILED,
            "Download failed",
            details=job.error_message,
        )

    if job.state != JobState.COMPLETED:
        raise APIError(ErrorCode.FILE_NOT_READY, "File is not ready yet")

    handle = gateway.open_stream(token)
    if handle is None:
        raise APIError(ErrorCode.JOB_NOT_FOUND, "Download not found")

    headers = {
        "Content-Disposition": f'attachment; filename="{sanitize_filename(handle.filename)}"',
        "Cache-Control": "no-store",
    }
    if handle.size:
        headers["Content-Length"] = str(handle.size)

    return StreamingResponse(
        handle.stream.chunks(),
        media_type=handle.media_type,
        headers=headers,
        background=BackgroundTask(handle.stream.aclose),
    )


def format_window(seconds: float) -> str:
    """Human readable rate-limit window, e.g. '1 hour' or '90 minutes'.

    Windows under a minute are given in seconds; anything longer is rounded
    up to whole minutes.
    """
    if seconds < 60:
        whole = max(1, math.ceil(seconds))
        return "1 second" if whole == 1 else f"{whole} seconds"
    minutes = math.ceil(seconds / 60)
    if minutes % 60 == 0:
        hours = minutes // 60
        return "1 hour" if hours == 1 else f"{hours} hours"
    if minutes == 1:
        return "1 minute"
    return f"{minutes} minutes"

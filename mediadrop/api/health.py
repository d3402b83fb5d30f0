"""Health check endpoints.

- GET /health: extractor availability, scratch directory and job counts
- GET /liveness: process is alive
"""

import os
import time
from datetime import datetime, timezone
from typing import Literal

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from mediadrop import __version__
from mediadrop.api.schemas import ComponentHealth, HealthResponse, LivenessResponse
from mediadrop.core.checks import check_ytdlp

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])

# Track application start time for uptime calculation
_start_time: float = time.time()


def reset_start_time() -> None:
    """Reset the start time (for testing)."""
    global _start_time
    _start_time = time.time()


async def _check_extractor(binary: str, test_mode: bool) -> ComponentHealth:
    """Check yt-dlp availability; the scripted extractor is always available."""
    if test_mode:
        return ComponentHealth(status="healthy", version="scripted")

    result = await check_ytdlp(binary)
    if result.available:
        return ComponentHealth(status="healthy", version=result.version)
    return ComponentHealth(
        status="unhealthy",
        details={"error": result.error or "yt-dlp not available"},
    )


def _check_scratch_dir(path: str) -> ComponentHealth:
    """The scratch directory must exist and be writable."""
    writable = os.path.isdir(path) and os.access(path, os.W_OK)
    if writable:
        return ComponentHealth(status="healthy", details={"path": path, "writable": True})
    return ComponentHealth(
        status="unhealthy",
        details={"path": path, "writable": False, "error": "Scratch directory not writable"},
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        200: {"description": "All components healthy"},
        503: {"description": "One or more components unhealthy"},
    },
)
async def health_check(request: Request) -> JSONResponse:
    """
    Detailed health check endpoint.

    Verifies the extractor binary and the scratch directory and reports
    how many jobs are tracked. Returns HTTP 200 if all components are
    healthy, HTTP 503 otherwise.
    """
    config = request.app.state.config
    registry = request.app.state.registry
    test_mode = config.testing.mock_extractor

    components = {
        "ytdlp": await _check_extractor(config.downloads.ytdlp_binary, test_mode),
        "scratch_dir": _check_scratch_dir(registry.scratch_dir),
    }

    all_healthy = all(c.status == "healthy" for c in components.values())
    overall_status: Literal["healthy", "unhealthy"] = "healthy" if all_healthy else "unhealthy"

    response = HealthResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        uptime_seconds=round(time.time() - _start_time, 2),
        test_mode=test_mode,
        jobs={
            "total": registry.get_job_count(),
            "active": registry.get_active_job_count(),
        },
        components=components,
    )

    status_code = status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE

    logger.info(
        "health_check_completed",
        status=overall_status,
        components={k: v.status for k, v in components.items()},
    )

    return JSONResponse(content=response.model_dump(), status_code=status_code)


@router.get("/liveness", response_model=LivenessResponse)
async def liveness_check() -> LivenessResponse:
    """Returns HTTP 200 while the process is alive."""
    return LivenessResponse(status="alive")

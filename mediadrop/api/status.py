"""Job status endpoint."""

from typing import Any

from fastapi import APIRouter, Depends

from mediadrop.api.schemas import ErrorDetail, StatusResponse
from mediadrop.core.errors import APIError, ErrorCode
from mediadrop.services.job_registry import JobRegistry

router = APIRouter(prefix="/api", tags=["status"])


# Dependency placeholder (to be configured in main app)
async def get_job_registry() -> JobRegistry:
    """Get job registry instance."""
    raise NotImplementedError("Job registry dependency not configured")


@router.get(
    "/status/{token}",
    response_model=StatusResponse,
    responses={
        404: {"description": "Unknown, expired or already delivered token", "model": ErrorDetail},
    },
)
async def get_status(
    token: str,
    registry: JobRegistry = Depends(get_job_registry),  # noqa: B008
) -> Any:
    """
    Get the state of a download job.

    Progress is an integer 0-100 and only reaches 100 once the job is
    completed. Failed jobs carry the captured extractor error.
    """
    projection = registry.get_status(token)
    if projection is None:
        raise APIError(ErrorCode.JOB_NOT_FOUND, "Download not found")
    return projection

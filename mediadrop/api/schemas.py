"""Request and response schemas for API endpoints.

This module provides Pydantic models for API request validation
and response serialization with OpenAPI examples.
"""

from typing import Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator

from mediadrop.models.job import JobState, MediaFormat, Quality, normalize_quality

ALLOWED_URL_SCHEMES = ("http", "https")


class DownloadRequest(BaseModel):
    """Request body for the download submission endpoint."""

    url: str = Field(
        ...,
        description="Media page URL handed to yt-dlp",
        examples=["https://www.youtube.com/watch?v=dQw4w9WgXcQ"],
    )
    format: MediaFormat = Field(
        MediaFormat.MP4,
        description="Output container",
        examples=["mp4", "webm", "mp3"],
    )
    quality: Quality = Field(
        Quality.BEST,
        description="Quality tier. Forced to 'audio' for mp3, 'audio' becomes 'best' for video",
        examples=["best", "720p"],
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Accept absolute http(s) URLs only."""
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES or not parsed.netloc:
            raise ValueError("Invalid URL. Only http and https URLs are accepted")
        return v

    @model_validator(mode="after")
    def apply_quality_rules(self) -> "DownloadRequest":
        self.quality = normalize_quality(self.format, self.quality)
        return self


class DownloadResponse(BaseModel):
    """Response for an accepted submission."""

    token: str = Field(..., examples=["550e8400-e29b-41d4-a716-446655440000"])
    status: Literal["in_progress"] = Field("in_progress", examples=["in_progress"])


class StatusResponse(BaseModel):
    """Client-visible projection of a job."""

    token: str = Field(..., examples=["550e8400-e29b-41d4-a716-446655440000"])
    status: JobState = Field(..., examples=["in_progress"])
    progress: int = Field(
        ..., ge=0, le=100, description="Progress percentage (0-100)", examples=[42]
    )
    error: Optional[str] = Field(None, examples=["ERROR: Unsupported URL: https://example.com/x"])
    expires_at: str = Field(..., examples=["2025-12-25T10:45:00+00:00"])
    filename: Optional[str] = Field(None, examples=["Never_Gonna_Give_You_Up.mp4"])
    file_size: Optional[int] = Field(None, description="File size in bytes", examples=[52428800])


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    status: Literal["healthy", "unhealthy"] = Field(..., examples=["healthy"])
    version: Optional[str] = Field(default=None, examples=["2025.01.15"])
    details: Optional[Dict[str, Any]] = Field(default=None, examples=[{"writable": True}])


class HealthResponse(BaseModel):
    """Detailed health check response."""

    status: Literal["healthy", "unhealthy"] = Field(..., examples=["healthy"])
    timestamp: str = Field(..., examples=["2025-12-25T10:30:00Z"])
    version: str = Field(..., examples=["1.0.0"])
    uptime_seconds: float = Field(..., examples=[3600.5])
    test_mode: bool = Field(False, description="Scripted extractor in use")
    jobs: Dict[str, int] = Field(..., examples=[{"total": 3, "active": 1}])
    components: Dict[str, ComponentHealth]


class LivenessResponse(BaseModel):
    """Liveness check response."""

    status: Literal["alive"] = Field(..., examples=["alive"])


class ErrorDetail(BaseModel):
    """Structured error response.

    All API errors follow this format with machine-readable error codes
    and optional suggestions for resolution.
    """

    error_code: str = Field(
        ...,
        description="Machine-readable error code",
        examples=["JOB_NOT_FOUND", "FILE_NOT_READY", "RATE_LIMIT_EXCEEDED"],
    )
    message: str = Field(
        ...,
        description="Human-readable error message",
        examples=["Download not found"],
    )
    details: Optional[Union[str, List[Dict[str, Any]]]] = Field(
        None,
        description="Additional error context",
        examples=["yt-dlp exited with code 1"],
    )
    timestamp: str = Field(..., examples=["2025-12-25T10:30:00Z"])
    request_id: Optional[str] = Field(
        None,
        description="Request ID for tracing",
        examples=["req-550e8400-e29b-41d4"],
    )
    suggestion: Optional[str] = Field(
        None,
        description="Suggested action to resolve the error",
        examples=["Poll the status endpoint until the job completes"],
    )

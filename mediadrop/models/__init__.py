"""Data models for the application."""

from mediadrop.models.job import (
    Job,
    JobState,
    MediaFormat,
    Quality,
    ResolvedFile,
    normalize_quality,
)

__all__ = [
    "Job",
    "JobState",
    "MediaFormat",
    "Quality",
    "ResolvedFile",
    "normalize_quality",
]

"""Job data models for download lifecycle tracking."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# Non-terminal progress never reports a finished download.
MAX_ACTIVE_PROGRESS = 99.0


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class MediaFormat(str, Enum):
    """Output container requested by the client."""

    MP4 = "mp4"
    WEBM = "webm"
    MP3 = "mp3"


class Quality(str, Enum):
    """Requested quality tier."""

    BEST = "best"
    P1080 = "1080p"
    P720 = "720p"
    P480 = "480p"
    AUDIO = "audio"


# Height ceiling per quality tier; tiers not listed are unconstrained.
QUALITY_HEIGHTS: Dict[Quality, int] = {
    Quality.P1080: 1080,
    Quality.P720: 720,
    Quality.P480: 480,
}


def normalize_quality(media_format: MediaFormat, quality: Quality) -> Quality:
    """Pair a quality tier with a format the way the extractor expects.

    mp3 always means audio-only; audio quality is meaningless for a video
    container and falls back to best.
    """
    if media_format == MediaFormat.MP3:
        return Quality.AUDIO
    if quality == Quality.AUDIO:
        return Quality.BEST
    return quality


class JobState(str, Enum):
    """State of a download job.

    State transitions:
    - (create) -> IN_PROGRESS: extractor process spawned
    - IN_PROGRESS -> COMPLETED: exit code 0 and output file located
    - IN_PROGRESS -> ERROR: spawn failure, non-zero exit, or missing output file
    - COMPLETED / ERROR -> (evicted): consumption or expiry sweep

    PENDING is only the initial dataclass value and is never observed once a
    job is registered.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class ResolvedFile:
    """Output file of a completed job."""

    path: str
    filename: str  # display name, token prefix stripped
    size: int


@dataclass
class Job:
    """One tracked download request, from submission to eviction."""

    token: str
    url: str
    format: MediaFormat
    quality: Quality
    state: JobState = JobState.PENDING
    progress: float = 0.0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    expires_at: datetime = field(default_factory=utc_now)
    resolved_file: Optional[ResolvedFile] = None
    error_message: Optional[str] = None
    process_exited: bool = False
    output_path: Optional[str] = None  # last path announced by the extractor
    delivering: bool = False  # a transfer holds the file

    @property
    def file_prefix(self) -> str:
        """Filename prefix every scratch file of this job carries."""
        return f"{self.token}-"

    def is_terminal(self) -> bool:
        """Check if the job is in a terminal state (completed or error)."""
        return self.state in (JobState.COMPLETED, JobState.ERROR)

    def is_expired(self, now: datetime) -> bool:
        """Terminal jobs past their expiry are eligible for removal."""
        return self.is_terminal() and now >= self.expires_at

    def display_name(self, filename: str) -> str:
        """Strip the token prefix from an on-disk filename."""
        if filename.startswith(self.file_prefix):
            return filename[len(self.file_prefix) :]
        return filename

    def to_status(self) -> Dict[str, Any]:
        """Client-safe projection used by status queries."""
        return {
            "token": self.token,
            "status": self.state.value,
            "progress": int(self.progress + 0.5),  # half-up, progress is never negative
            "error": self.error_message,
            "expires_at": self.expires_at.isoformat(),
            "filename": self.resolved_file.filename if self.resolved_file else None,
            "file_size": self.resolved_file.size if self.resolved_file else None,
        }

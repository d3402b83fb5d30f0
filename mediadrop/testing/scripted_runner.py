"""Scripted extractor for test mode.

Replays realistic yt-dlp transcripts instead of spawning the binary, and
writes a small fake output file into the scratch directory. Used when
APP_TESTING_MOCK_EXTRACTOR=true.

The outcome is picked from the URL:
- contains "unsupported": ERROR line on stderr, exit code 1
- contains "nofile": exit code 0 without producing any file
- anything else: progress lines, destination/merge lines, exit code 0
"""

import asyncio
import os
import re
from typing import List, Tuple
from urllib.parse import urlparse

import structlog

from mediadrop.models.job import MediaFormat, Quality
from mediadrop.services.process_runner import (
    ExitEvent,
    ProcessRunner,
    RunnerHandle,
    publish_line,
)

logger = structlog.get_logger(__name__)

FAKE_FILE_SIZE = 4096
PROGRESS_STEPS = (0.0, 12.5, 48.3, 87.0, 100.0)


def title_from_url(url: str) -> str:
    """Filesystem-safe title derived from the last URL path segment."""
    segment = urlparse(url).path.rstrip("/").split("/")[-1] or "video"
    return re.sub(r"[^A-Za-z0-9_-]", "_", segment)


class ScriptedRunner(ProcessRunner):
    """ProcessRunner replacement that replays canned transcripts."""

    def __init__(self, scratch_dir: str, step_delay: float = 0.0, **kwargs) -> None:
        """Initialize the scripted runner.

        Args:
            scratch_dir: Directory receiving the fake output files.
            step_delay: Seconds to wait between transcript lines.
        """
        super().__init__(scratch_dir, **kwargs)
        self.step_delay = step_delay
        self.started: List[List[str]] = []

    def start(
        self,
        url: str,
        token: str,
        media_format: MediaFormat,
        quality: Quality,
    ) -> RunnerHandle:
        handle = RunnerHandle(self.build_command(url, token, media_format, quality))
        self.started.append(handle.command)
        handle.task = asyncio.create_task(self._replay(handle, url, token, media_format))
        logger.debug("scripted_extractor_started", token=token, url=url)
        return handle

    def build_transcript(
        self,
        url: str,
        token: str,
        media_format: MediaFormat,
    ) -> Tuple[List[Tuple[str, str]], int, str]:
        """Build (stream, line) pairs, the exit code and the output path."""
        lowered = url.lower()
        if "unsupported" in lowered:
            lines = [
                ("stdout", f"[generic] Extracting URL: {url}"),
                ("stderr", f"ERROR: Unsupported URL: {url}"),
            ]
            return lines, 1, ""

        name = f"{token}-{title_from_url(url)}.{media_format.value}"
        path = os.path.join(self.scratch_dir, name)

        if "nofile" in lowered:
            return [("stdout", f"[generic] Extracting URL: {url}")], 0, ""

        lines = [("stdout", f"[generic] Extracting URL: {url}")]
        if media_format == MediaFormat.MP3:
            source = path[: -len(".mp3")] + ".webm"
            lines.append(("stdout", f"[download] Destination: {source}"))
        else:
            lines.append(("stdout", f"[download] Destination: {path}"))
        lines.extend(
            ("stdout", f"[download] {step:5.1f}% of ~4.00KiB at 1.00MiB/s ETA 00:00")
            for step in PROGRESS_STEPS
        )
        if media_format == MediaFormat.MP3:
            lines.append(("stdout", f"[ExtractAudio] Destination: {path}"))
        else:
            lines.append(("stdout", f'[Merger] Merging formats into "{path}"'))
        return lines, 0, path

    async def _replay(
        self,
        handle: RunnerHandle,
        url: str,
        token: str,
        media_format: MediaFormat,
    ) -> None:
        lines, code, path = self.build_transcript(url, token, media_format)

        for stream, line in lines:
            publish_line(handle.events, stream, line)
            await asyncio.sleep(self.step_delay)

        if path:
            os.makedirs(self.scratch_dir, exist_ok=True)
            with open(path, "wb") as f:
                f.write(b"\0" * FAKE_FILE_SIZE)

        handle.events.put_nowait(ExitEvent(code))

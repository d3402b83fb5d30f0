"""yt-dlp process runner.

Spawns the extractor for one job and turns its unstructured text output into
an ordered channel of typed events:

- ``LineEvent``: one non-empty stdout/stderr line
- ``ProgressEvent``: percentage found on the line just emitted
- ``SpawnErrorEvent``: the process could not be started
- ``ExitEvent``: the process terminated; always the last event
"""

import asyncio
import codecs
import contextlib
import os
import re
from dataclasses import dataclass
from typing import List, Optional, Union

import structlog

from mediadrop.models.job import QUALITY_HEIGHTS, MediaFormat, Quality

logger = structlog.get_logger(__name__)

PROGRESS_PATTERN = re.compile(r"(\d+(?:\.\d+)?)%")
LINE_SPLIT_PATTERN = re.compile(r"\r\n|\r|\n")
READ_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class LineEvent:
    """A line of extractor output."""

    stream: str  # "stdout" or "stderr"
    text: str


@dataclass(frozen=True)
class ProgressEvent:
    """Download progress reported by the extractor (0-100)."""

    percent: float


@dataclass(frozen=True)
class SpawnErrorEvent:
    """The extractor process could not be started."""

    message: str


@dataclass(frozen=True)
class ExitEvent:
    """The extractor process terminated. ``code`` is None when killed by a signal."""

    code: Optional[int]


RunnerEvent = Union[LineEvent, ProgressEvent, SpawnErrorEvent, ExitEvent]


def parse_progress(line: str) -> Optional[float]:
    """Return the first ``NN[.NN]%`` value on a line, if any."""
    match = PROGRESS_PATTERN.search(line)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def build_format_args(media_format: MediaFormat, quality: Quality) -> List[str]:
    """Build the format selection arguments for a format/quality pair.

    Audio requests take the best audio stream and transcode it to mp3.
    Video requests prefer best video+audio in the requested container under
    the tier's height ceiling, then any single stream meeting the same
    constraint, then yt-dlp's own best, and remux into the container.
    """
    if media_format == MediaFormat.MP3:
        return [
            "-f",
            "bestaudio/best",
            "--extract-audio",
            "--audio-format",
            "mp3",
            "--audio-quality",
            "0",
        ]

    if quality == Quality.AUDIO:
        quality = Quality.BEST

    container = media_format.value
    height = QUALITY_HEIGHTS.get(quality)
    height_filter = f"[height<={height}]" if height else ""
    selector = "/".join(
        [
            f"bestvideo[ext={container}]{height_filter}+bestaudio",
            f"best[ext={container}]{height_filter}",
            "best",
        ]
    )
    return ["-f", selector, "--merge-output-format", container]


class RunnerHandle:
    """Handle on one spawned extractor.

    ``events`` is consumed by exactly one task, the job's owner in the registry.
    """

    def __init__(self, command: List[str]) -> None:
        self.command = command
        self.events: "asyncio.Queue[RunnerEvent]" = asyncio.Queue()
        self.process: Optional[asyncio.subprocess.Process] = None
        self.task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def terminate(self) -> None:
        """Kill the extractor if it is still running."""
        if self.running:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()  # type: ignore[union-attr]


class ProcessRunner:
    """Spawns yt-dlp for download jobs."""

    def __init__(
        self,
        scratch_dir: str,
        binary: str = "yt-dlp",
        max_file_size_mb: Optional[int] = 500,
    ) -> None:
        """Initialize the runner.

        Args:
            scratch_dir: Directory the extractor writes into (also its cwd).
            binary: Extractor executable name or path.
            max_file_size_mb: Size cap passed to the extractor, None or 0 disables it.
        """
        self.scratch_dir = os.path.abspath(scratch_dir)
        self.binary = binary
        self.max_file_size_mb = max_file_size_mb

    def output_template(self, token: str) -> str:
        """Output template binding the job token as filename prefix."""
        return os.path.join(self.scratch_dir, f"{token}-%(title)s.%(ext)s")

    def build_command(
        self,
        url: str,
        token: str,
        media_format: MediaFormat,
        quality: Quality,
    ) -> List[str]:
        """Build the full extractor command line for a job."""
        cmd = [self.binary, url, "--newline", "--no-warnings"]
        if self.max_file_size_mb and self.max_file_size_mb > 0:
            cmd.extend(["--max-filesize", f"{self.max_file_size_mb}M"])
        cmd.extend(["--no-part", "--restrict-filenames"])
        cmd.extend(build_format_args(media_format, quality))
        cmd.extend(["-o", self.output_template(token)])
        return cmd

    def start(
        self,
        url: str,
        token: str,
        media_format: MediaFormat,
        quality: Quality,
    ) -> RunnerHandle:
        """Spawn the extractor in the background and return its event handle.

        Must be called from a running event loop. Returns immediately; events
        arrive on ``handle.events`` as the process produces output.
        """
        cmd = self.build_command(url, token, media_format, quality)
        handle = RunnerHandle(cmd)
        handle.task = asyncio.create_task(self._execute(handle))
        logger.debug("extractor_spawn_scheduled", token=token, command=cmd)
        return handle

    async def _execute(self, handle: RunnerHandle) -> None:
        """Run the process and publish its events."""
        try:
            process = await asyncio.create_subprocess_exec(
                *handle.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.scratch_dir,
            )
        except FileNotFoundError:
            logger.error("extractor_not_found", binary=self.binary)
            self._publish_spawn_error(handle, f"{self.binary} is not installed or not in PATH")
            return
        except (OSError, ValueError) as e:
            logger.error("extractor_spawn_failed", binary=self.binary, error=str(e))
            self._publish_spawn_error(handle, f"Failed to start {self.binary}: {e}")
            return

        handle.process = process
        logger.debug("extractor_started", pid=process.pid)

        returncode: Optional[int] = None
        try:
            await asyncio.gather(
                self._pump(process.stdout, "stdout", handle.events),
                self._pump(process.stderr, "stderr", handle.events),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            handle.terminate()
            raise
        except Exception as e:
            logger.error("extractor_output_failed", pid=process.pid, error=str(e), exc_info=True)
            handle.terminate()
        finally:
            # Negative return codes mean the process was killed by a signal.
            code = returncode if returncode is not None and returncode >= 0 else None
            handle.events.put_nowait(ExitEvent(code))

    def _publish_spawn_error(self, handle: RunnerHandle, message: str) -> None:
        handle.events.put_nowait(SpawnErrorEvent(message))
        handle.events.put_nowait(ExitEvent(None))

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        name: str,
        events: "asyncio.Queue[RunnerEvent]",
    ) -> None:
        """Split a pipe into lines and publish line/progress events."""
        if stream is None:
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            buffer += decoder.decode(chunk)
            *lines, buffer = LINE_SPLIT_PATTERN.split(buffer)
            for line in lines:
                publish_line(events, name, line)

        buffer += decoder.decode(b"", final=True)
        publish_line(events, name, buffer)


def publish_line(events: "asyncio.Queue[RunnerEvent]", stream: str, line: str) -> None:
    """Publish a line event, followed by a progress event when the line has one."""
    if not line.strip():
        return
    events.put_nowait(LineEvent(stream=stream, text=line))
    percent = parse_progress(line)
    if percent is not None:
        events.put_nowait(ProgressEvent(percent))

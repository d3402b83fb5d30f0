"""Job registry driving the lifecycle of download jobs.

The registry owns every Job record. Each submitted job gets one extractor
process and one consumer task that reads the process events in order and
applies them to the job, so all mutation of a job happens on the event loop
in arrival order. Terminal jobs are reclaimed either when their file has been
delivered or by a periodic expiry sweep.
"""

import asyncio
import contextlib
import os
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from mediadrop.core.metrics import MetricsCollector
from mediadrop.models.job import (
    MAX_ACTIVE_PROGRESS,
    Job,
    JobState,
    MediaFormat,
    Quality,
    ResolvedFile,
    utc_now,
)
from mediadrop.services.process_runner import (
    ExitEvent,
    LineEvent,
    ProcessRunner,
    ProgressEvent,
    RunnerEvent,
    RunnerHandle,
    SpawnErrorEvent,
)

logger = structlog.get_logger(__name__)

DESTINATION_PATTERN = re.compile(r"Destination:\s*(.+?)\s*$")
MERGE_PATTERN = re.compile(r'Merging formats into "(.*)"')
ERROR_MARKER = "error"

FILE_UNAVAILABLE_MESSAGE = "Output file not available after download"


class JobNotFoundError(Exception):
    """Raised when a job is not found."""

    pass


def parse_output_path(line: str) -> Optional[str]:
    """Extract a file path announced on an extractor output line.

    Recognizes destination announcements (``[download] Destination: ...``,
    ``[ExtractAudio] Destination: ...``) and merge announcements
    (``[Merger] Merging formats into "..."``).
    """
    merge = MERGE_PATTERN.search(line)
    if merge and merge.group(1):
        return merge.group(1)

    destination = DESTINATION_PATTERN.search(line)
    if destination and destination.group(1):
        return destination.group(1)

    return None


def is_error_line(line: str) -> bool:
    """Check if an output line reports an error."""
    return ERROR_MARKER in line.lower()


class JobRegistry:
    """In-memory registry of download jobs.

    Created once at startup and handed to the HTTP layer. ``start()`` launches
    the expiry sweep, ``stop()`` tears everything down.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        scratch_dir: str,
        active_ttl: timedelta = timedelta(minutes=15),
        completed_ttl: timedelta = timedelta(minutes=15),
        cleanup_interval: float = 300.0,
        clock: Optional[Callable[[], datetime]] = None,
        on_sweep: Optional[Callable[[], Any]] = None,
    ) -> None:
        """Initialize the registry.

        Args:
            runner: Spawns the extractor for each job.
            scratch_dir: Directory holding the token-prefixed output files.
            active_ttl: Expiry window assigned to a freshly submitted job.
            completed_ttl: Retention of a completed job, counted from completion.
            cleanup_interval: Seconds between expiry sweeps.
            clock: Source of timezone-aware "now", injectable for tests.
            on_sweep: Optional callback run after every scheduled sweep.
        """
        self.runner = runner
        self.scratch_dir = os.path.abspath(scratch_dir)
        self.active_ttl = active_ttl
        self.completed_ttl = completed_ttl
        self.cleanup_interval = cleanup_interval
        self._clock = clock or utc_now
        self._on_sweep = on_sweep

        self._jobs: Dict[str, Job] = {}
        self._handles: Dict[str, RunnerHandle] = {}
        self._consumers: Dict[str, asyncio.Task] = {}
        self._sweep_task: Optional[asyncio.Task] = None

        logger.debug(
            "job_registry_initialized",
            scratch_dir=self.scratch_dir,
            active_ttl_seconds=active_ttl.total_seconds(),
            completed_ttl_seconds=completed_ttl.total_seconds(),
            cleanup_interval_seconds=cleanup_interval,
        )

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def ensure_scratch_dir(self) -> None:
        """Create the scratch directory if needed."""
        os.makedirs(self.scratch_dir, exist_ok=True)

    async def start(self) -> None:
        """Start the periodic expiry sweep."""
        if self.running:
            logger.warning("job_registry_already_running")
            return

        self.ensure_scratch_dir()
        self._sweep_task = asyncio.create_task(self._sweep_loop())

        logger.info(
            "job_registry_started",
            cleanup_interval_seconds=self.cleanup_interval,
        )

    async def stop(self, purge: bool = True) -> None:
        """Stop the sweep and every running extractor.

        Args:
            purge: Also evict every job and delete its files. Nothing survives
                a restart, so leftovers would never be reclaimed otherwise.
        """
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        pending: List[asyncio.Task] = []
        for handle in list(self._handles.values()):
            handle.terminate()
            if handle.task and not handle.task.done():
                handle.task.cancel()
                pending.append(handle.task)
        for task in list(self._consumers.values()):
            task.cancel()
            pending.append(task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if purge:
            for token in list(self._jobs):
                self.evict(token, reason="shutdown")

        logger.info("job_registry_stopped", remaining_jobs=len(self._jobs))

    # Submission

    def _new_token(self) -> str:
        token = str(uuid.uuid4())
        while token in self._jobs:
            token = str(uuid.uuid4())
        return token

    async def submit(self, url: str, media_format: MediaFormat, quality: Quality) -> str:
        """Register a job and spawn its extractor.

        Returns as soon as the process is scheduled; progress and the outcome
        are applied asynchronously by the job's consumer task.

        Args:
            url: Source media URL.
            media_format: Requested output container.
            quality: Requested quality tier (already normalized for the format).

        Returns:
            The job token.
        """
        self.ensure_scratch_dir()

        token = self._new_token()
        now = self._clock()
        job = Job(
            token=token,
            url=url,
            format=media_format,
            quality=quality,
            state=JobState.IN_PROGRESS,
            created_at=now,
            updated_at=now,
            expires_at=now + self.active_ttl,
        )
        self._jobs[token] = job

        try:
            handle = self.runner.start(url, token, media_format, quality)
        except Exception:
            del self._jobs[token]
            raise

        self._handles[token] = handle
        self._consumers[token] = asyncio.create_task(self._consume(job, handle))

        MetricsCollector.record_job_submitted(media_format.value)
        MetricsCollector.update_active_jobs(len(self._handles))

        logger.info(
            "job_submitted",
            token=token,
            url=url,
            format=media_format.value,
            quality=quality.value,
        )

        return token

    # Event handling

    async def _consume(self, job: Job, handle: RunnerHandle) -> None:
        """Apply the events of one extractor to its job until it exits."""
        with structlog.contextvars.bound_contextvars(token=job.token):
            try:
                while True:
                    event = await handle.events.get()
                    if self._jobs.get(job.token) is not job:
                        # Evicted while the process was still reporting.
                        break
                    if isinstance(event, ExitEvent):
                        self._handle_exit(job, event.code)
                        break
                    self._handle_event(job, event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("job_event_handling_failed", error=str(e), exc_info=True)
                if not job.is_terminal():
                    self._fail(job, f"Unexpected error: {e}")
            finally:
                self._handles.pop(job.token, None)
                self._consumers.pop(job.token, None)
                MetricsCollector.update_active_jobs(len(self._handles))

    def _handle_event(self, job: Job, event: RunnerEvent) -> None:
        if isinstance(event, ProgressEvent):
            self._update_progress(job, event.percent)
        elif isinstance(event, LineEvent):
            self._handle_line(job, event.text)
        elif isinstance(event, SpawnErrorEvent):
            self._fail(job, event.message)

    def _update_progress(self, job: Job, percent: float) -> None:
        if job.state != JobState.IN_PROGRESS:
            return
        clamped = min(max(percent, 0.0), 100.0, MAX_ACTIVE_PROGRESS)
        job.progress = max(job.progress, clamped)
        job.updated_at = self._clock()

    def _handle_line(self, job: Job, line: str) -> None:
        path = parse_output_path(line)
        if path:
            if not os.path.isabs(path):
                path = os.path.join(self.scratch_dir, path)
            job.output_path = os.path.normpath(path)
            job.updated_at = self._clock()
            logger.debug("job_output_path_announced", output_path=job.output_path)
        elif is_error_line(line):
            job.error_message = line.strip()
            job.updated_at = self._clock()

    def _handle_exit(self, job: Job, code: Optional[int]) -> None:
        job.process_exited = True
        job.updated_at = self._clock()

        if job.is_terminal():
            return

        if code != 0:
            shown = code if code is not None else "unknown"
            self._fail(job, job.error_message or f"yt-dlp exited with code {shown}")
            return

        try:
            resolved = self._resolve_file(job)
        except OSError as e:
            self._fail(job, f"Failed to prepare file: {e}")
            return

        if resolved is None:
            self._fail(job, FILE_UNAVAILABLE_MESSAGE)
            return

        now = self._clock()
        job.resolved_file = resolved
        job.state = JobState.COMPLETED
        job.progress = 100.0
        job.error_message = None
        job.updated_at = now
        job.expires_at = now + self.completed_ttl

        MetricsCollector.record_job_finished(
            JobState.COMPLETED.value, (now - job.created_at).total_seconds()
        )
        logger.info(
            "job_completed",
            filename=resolved.filename,
            file_size=resolved.size,
            expires_at=job.expires_at.isoformat(),
        )

    def _fail(self, job: Job, message: str) -> None:
        """Move a job to ERROR, immediately eligible for cleanup."""
        now = self._clock()
        job.state = JobState.ERROR
        job.error_message = message
        job.resolved_file = None
        job.updated_at = now
        job.expires_at = now

        MetricsCollector.record_job_finished(
            JobState.ERROR.value, (now - job.created_at).total_seconds()
        )
        logger.warning("job_failed", token=job.token, error=message)

    # File resolution

    def _resolve_file(self, job: Job) -> Optional[ResolvedFile]:
        """Locate the output file of a successful job.

        The path announced on the extractor output is only a hint; it is used
        when it exists and carries the job prefix, otherwise the scratch
        directory is scanned for the token prefix.
        """
        path = self._announced_file(job) or self._scan_for_output(job)
        if path is None:
            return None

        size = os.path.getsize(path)
        return ResolvedFile(
            path=path,
            filename=job.display_name(os.path.basename(path)),
            size=size,
        )

    def _announced_file(self, job: Job) -> Optional[str]:
        path = job.output_path
        if not path:
            return None
        if not os.path.basename(path).startswith(job.file_prefix):
            return None
        return path if os.path.isfile(path) else None

    def _token_files(self, job: Job) -> List[str]:
        try:
            entries = os.listdir(self.scratch_dir)
        except FileNotFoundError:
            return []
        return [
            os.path.join(self.scratch_dir, name)
            for name in entries
            if name.startswith(job.file_prefix)
            and os.path.isfile(os.path.join(self.scratch_dir, name))
        ]

    def _scan_for_output(self, job: Job) -> Optional[str]:
        candidates = self._token_files(job)
        if not candidates:
            return None

        extension = f".{job.format.value}"
        candidates.sort(
            key=lambda p: (p.lower().endswith(extension), os.path.getsize(p)),
            reverse=True,
        )
        return candidates[0]

    # Eviction

    def evict(self, token: str, reason: str = "expired") -> bool:
        """Remove a job and delete its scratch files.

        File deletion is best-effort: failures are logged and swallowed.

        Returns:
            True if the job existed.
        """
        job = self._jobs.pop(token, None)
        if job is None:
            return False

        handle = self._handles.get(token)
        if handle is not None:
            handle.terminate()

        paths = set(self._token_files(job))
        if job.resolved_file:
            paths.add(job.resolved_file.path)
        if job.output_path:
            paths.add(job.output_path)

        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("job_file_delete_failed", token=token, path=path, error=str(e))

        MetricsCollector.record_eviction(reason)
        logger.info("job_evicted", token=token, state=job.state.value, reason=reason)
        return True

    def mark_consumed(self, token: str) -> bool:
        """Evict a job right after its file was delivered.

        Returns:
            True if the job existed.
        """
        job = self._jobs.get(token)
        if job is None:
            return False
        job.expires_at = self._clock()
        return self.evict(token, reason="consumed")

    def claim_for_delivery(self, token: str) -> Optional[Job]:
        """Reserve a completed job for a single transfer.

        Returns:
            The job, or None if it is unknown, not completed or already claimed.
        """
        job = self._jobs.get(token)
        if job is None or job.state != JobState.COMPLETED or job.delivering:
            return None
        job.delivering = True
        return job

    def release_delivery(self, token: str) -> None:
        """Give back a claim whose transfer never started."""
        job = self._jobs.get(token)
        if job is not None:
            job.delivering = False

    def sweep_expired(self) -> int:
        """Evict terminal jobs past their expiry. In-progress jobs are kept.

        Returns:
            Number of jobs removed.
        """
        now = self._clock()
        # A job being streamed is evicted by its transfer when the stream ends.
        expired = [
            token
            for token, job in self._jobs.items()
            if job.is_expired(now) and not job.delivering
        ]

        for token in expired:
            self.evict(token, reason="expired")

        if expired:
            logger.info("expired_jobs_swept", count=len(expired))

        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.sweep_expired()
                if self._on_sweep is not None:
                    self._on_sweep()
            except Exception as e:
                logger.error("job_sweep_failed", error=str(e), exc_info=True)

    # Queries

    def get(self, token: str) -> Optional[Job]:
        """Get a job by token, None if unknown, evicted or expired away."""
        return self._jobs.get(token)

    def get_or_raise(self, token: str) -> Job:
        """Get a job by token.

        Raises:
            JobNotFoundError: If the job is not found.
        """
        job = self.get(token)
        if job is None:
            raise JobNotFoundError(f"Job not found: {token}")
        return job

    def get_status(self, token: str) -> Optional[Dict[str, Any]]:
        """Client-safe status projection of a job, None if not found."""
        job = self.get(token)
        return job.to_status() if job else None

    def get_job_count(self) -> int:
        return len(self._jobs)

    def get_active_job_count(self) -> int:
        """Number of jobs whose extractor has not finished."""
        return sum(1 for job in self._jobs.values() if not job.is_terminal())

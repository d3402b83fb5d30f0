"""One-time delivery of completed job files.

A transfer stream reads the file in fixed-size chunks as the consumer pulls
them. Whatever ends the stream (EOF, a read failure, cancellation on client
disconnect or an explicit ``aclose()``) closes the file and evicts the job,
so every completed file can be fetched once.
"""

import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import aiofiles
import structlog

from mediadrop.core.metrics import MetricsCollector
from mediadrop.services.job_registry import JobRegistry

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

MIME_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "opus": "audio/ogg",
}


def guess_media_type(filename: str) -> str:
    """Content type for a delivered file, by extension."""
    ext = os.path.splitext(filename)[1].lstrip(".").lower()
    return MIME_TYPES.get(ext, "application/octet-stream")


class TransferStream:
    """Async iterator over a job file that evicts the job when it ends."""

    def __init__(
        self,
        registry: JobRegistry,
        token: str,
        path: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._registry = registry
        self._token = token
        self._path = path
        self._chunk_size = chunk_size
        self._file: Optional[Any] = None
        self._closed = False
        self._completed = False
        self.bytes_sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "TransferStream":
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration

        try:
            if self._file is None:
                self._file = await aiofiles.open(self._path, "rb")
            chunk = await self._file.read(self._chunk_size)
        except BaseException:
            # Read failure or cancellation (client went away).
            await self.aclose()
            raise

        if not chunk:
            self._completed = True
            await self.aclose()
            raise StopAsyncIteration

        self.bytes_sent += len(chunk)
        return chunk

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield the file and close the stream however the consumer stops.

        A response body abandoned mid-send (client disconnect) is finalized
        by the event loop, which runs the ``finally`` below.
        """
        try:
            async for chunk in self:
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Close the file and evict the job. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        try:
            if self._file is not None:
                await self._file.close()
        except OSError as e:
            logger.warning("transfer_file_close_failed", token=self._token, error=str(e))
        finally:
            self._file = None
            outcome = "complete" if self._completed else "aborted"
            MetricsCollector.record_transfer(outcome, self.bytes_sent)
            logger.info(
                "transfer_finished",
                token=self._token,
                outcome=outcome,
                bytes_sent=self.bytes_sent,
            )
            self._registry.mark_consumed(self._token)


@dataclass
class TransferHandle:
    """An opened transfer plus the metadata needed for response headers."""

    stream: TransferStream
    filename: str
    size: int
    media_type: str


class TransferGateway:
    """Opens byte streams for completed jobs."""

    def __init__(self, registry: JobRegistry, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.registry = registry
        self.chunk_size = chunk_size

    def open_stream(self, token: str) -> Optional[TransferHandle]:
        """Open the file of a completed job.

        Args:
            token: Job token.

        Returns:
            A TransferHandle, or None if the job is unknown, not completed,
            already being delivered, or its file no longer exists.
        """
        job = self.registry.claim_for_delivery(token)
        if job is None:
            return None

        resolved = job.resolved_file
        if resolved is None or not os.path.isfile(resolved.path):
            logger.warning(
                "transfer_file_missing", token=token, path=resolved.path if resolved else None
            )
            self.registry.release_delivery(token)
            return None

        logger.info("transfer_opened", token=token, filename=resolved.filename, size=resolved.size)

        return TransferHandle(
            stream=TransferStream(self.registry, token, resolved.path, self.chunk_size),
            filename=resolved.filename,
            size=resolved.size,
            media_type=guess_media_type(resolved.filename),
        )

"""Service layer implementations."""

from mediadrop.services.job_registry import (
    JobNotFoundError,
    JobRegistry,
    parse_output_path,
)
from mediadrop.services.process_runner import (
    ExitEvent,
    LineEvent,
    ProcessRunner,
    ProgressEvent,
    RunnerEvent,
    RunnerHandle,
    SpawnErrorEvent,
    build_format_args,
    parse_progress,
)
from mediadrop.services.transfer import (
    TransferGateway,
    TransferHandle,
    TransferStream,
    guess_media_type,
)

__all__ = [
    # Process runner
    "ExitEvent",
    "LineEvent",
    "ProcessRunner",
    "ProgressEvent",
    "RunnerEvent",
    "RunnerHandle",
    "SpawnErrorEvent",
    "build_format_args",
    "parse_progress",
    # Job registry
    "JobNotFoundError",
    "JobRegistry",
    "parse_output_path",
    # Transfer
    "TransferGateway",
    "TransferHandle",
    "TransferStream",
    "guess_media_type",
]

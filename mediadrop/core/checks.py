"""Extractor availability check shared by the health endpoint."""

import asyncio
from dataclasses import dataclass
from typing import Optional


@dataclass
class CheckResult:
    """Result of a component availability check.

    Attributes:
        name: Component name
        available: Whether the component is available and functional
        version: Version string if available
        error: Error message if check failed
    """

    name: str
    available: bool
    version: Optional[str] = None
    error: Optional[str] = None


async def check_ytdlp(binary: str = "yt-dlp", timeout: float = 5.0) -> CheckResult:
    """Run ``<binary> --version`` and report whether it answered.

    Args:
        binary: yt-dlp executable name or path.
        timeout: Maximum time to wait for the check in seconds.

    Returns:
        CheckResult with availability status and version if available.
    """
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            binary,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)

        if proc.returncode == 0:
            return CheckResult(name="ytdlp", available=True, version=stdout.decode().strip())

        return CheckResult(
            name="ytdlp",
            available=False,
            error=f"{binary} returned non-zero exit code",
        )
    except asyncio.TimeoutError:
        if proc:
            proc.kill()
            await proc.wait()
        return CheckResult(name="ytdlp", available=False, error=f"{binary} check timed out")
    except FileNotFoundError:
        return CheckResult(name="ytdlp", available=False, error=f"{binary} not found")
    except OSError as e:
        return CheckResult(name="ytdlp", available=False, error=str(e))

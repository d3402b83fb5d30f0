"""Tests for the yt-dlp process runner.

Real child processes are spawned with the current interpreter standing in for
the extractor, so line splitting, progress parsing and exit reporting are
exercised end to end.
"""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest

from mediadrop.models.job import MediaFormat, Quality
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
    publish_line,
)

TOKEN = "0b7a2c4e-1111-4222-8333-944455556666"

TRANSCRIPT_SCRIPT = r"""
import sys
sys.stdout.write("[youtube] Extracting URL\n")
sys.stdout.write("[download]  42.5% of 10.00MiB\r[download] 100.0% of 10.00MiB\n")
sys.stdout.write("\n   \n")
sys.stdout.write("[download] no trailing newline")
sys.stdout.flush()
sys.stderr.write("ERROR: boom\n")
sys.exit(3)
"""

SLEEP_SCRIPT = "import time\ntime.sleep(30)\n"


async def drain(handle: RunnerHandle, timeout: float = 10.0) -> List[RunnerEvent]:
    """Collect events up to and including the ExitEvent."""
    events: List[RunnerEvent] = []
    while True:
        event = await asyncio.wait_for(handle.events.get(), timeout=timeout)
        events.append(event)
        if isinstance(event, ExitEvent):
            return events


@pytest.fixture
def runner(tmp_path: Path) -> ProcessRunner:
    return ProcessRunner(str(tmp_path), binary="yt-dlp", max_file_size_mb=500)


def run_script(runner: ProcessRunner, script: str) -> RunnerHandle:
    handle = RunnerHandle([sys.executable, "-c", script])
    handle.task = asyncio.create_task(runner._execute(handle))
    return handle


class TestParseProgress:
    """Tests for percentage extraction."""

    @pytest.mark.parametrize(
        "line,expected",
        [
            ("[download]  42.5% of 10.00MiB at 1.00MiB/s ETA 00:05", 42.5),
            ("[download] 100% of 3.2MiB", 100.0),
            ("[download]   0.0% of ~4.00KiB", 0.0),
            ("7% then 9%", 7.0),
        ],
    )
    def test_extracts_first_percentage(self, line: str, expected: float) -> None:
        assert parse_progress(line) == expected

    @pytest.mark.parametrize("line", ["[youtube] Extracting URL", "", "% alone", "50 percent"])
    def test_none_without_percentage(self, line: str) -> None:
        assert parse_progress(line) is None


class TestFormatArgs:
    """Tests for format selection arguments."""

    def test_mp3_extracts_audio(self) -> None:
        args = build_format_args(MediaFormat.MP3, Quality.AUDIO)

        assert args == [
            "-f",
            "bestaudio/best",
            "--extract-audio",
            "--audio-format",
            "mp3",
            "--audio-quality",
            "0",
        ]

    def test_video_with_height_ceiling(self) -> None:
        args = build_format_args(MediaFormat.MP4, Quality.P720)

        assert args == [
            "-f",
            "bestvideo[ext=mp4][height<=720]+bestaudio/best[ext=mp4][height<=720]/best",
            "--merge-output-format",
            "mp4",
        ]

    def test_best_quality_has_no_ceiling(self) -> None:
        args = build_format_args(MediaFormat.WEBM, Quality.BEST)

        assert args[1] == "bestvideo[ext=webm]+bestaudio/best[ext=webm]/best"
        assert args[-1] == "webm"

    def test_audio_quality_on_video_falls_back_to_best(self) -> None:
        assert build_format_args(MediaFormat.MP4, Quality.AUDIO) == build_format_args(
            MediaFormat.MP4, Quality.BEST
        )


class TestBuildCommand:
    """Tests for the full extractor command line."""

    def test_command_layout(self, runner: ProcessRunner, tmp_path: Path) -> None:
        cmd = runner.build_command(
            "https://example.com/watch?v=1", TOKEN, MediaFormat.MP4, Quality.P1080
        )

        assert cmd[:2] == ["yt-dlp", "https://example.com/watch?v=1"]
        assert "--newline" in cmd
        assert cmd[cmd.index("--max-filesize") + 1] == "500M"
        assert cmd[-2] == "-o"
        assert cmd[-1] == str(tmp_path / f"{TOKEN}-%(title)s.%(ext)s")

    def test_size_cap_can_be_disabled(self, tmp_path: Path) -> None:
        runner = ProcessRunner(str(tmp_path), max_file_size_mb=0)

        cmd = runner.build_command("https://example.com/v", TOKEN, MediaFormat.MP3, Quality.AUDIO)

        assert "--max-filesize" not in cmd
        assert "--extract-audio" in cmd


class TestPublishLine:
    """Tests for line/progress event publication."""

    def test_blank_lines_are_dropped(self) -> None:
        events: "asyncio.Queue[RunnerEvent]" = asyncio.Queue()

        publish_line(events, "stdout", "")
        publish_line(events, "stdout", "   ")

        assert events.empty()

    def test_progress_follows_its_line(self) -> None:
        events: "asyncio.Queue[RunnerEvent]" = asyncio.Queue()

        publish_line(events, "stdout", "[download]  12.5% of 1MiB")

        assert events.get_nowait() == LineEvent("stdout", "[download]  12.5% of 1MiB")
        assert events.get_nowait() == ProgressEvent(12.5)
        assert events.empty()


class TestExecution:
    """Tests spawning real child processes."""

    @pytest.mark.asyncio
    async def test_transcript_events_and_exit_code(self, runner: ProcessRunner) -> None:
        handle = run_script(runner, TRANSCRIPT_SCRIPT)

        events = await drain(handle)

        assert events[-1] == ExitEvent(3)
        assert sum(isinstance(e, ExitEvent) for e in events) == 1

        stdout = [e.text for e in events if isinstance(e, LineEvent) and e.stream == "stdout"]
        assert stdout == [
            "[youtube] Extracting URL",
            "[download]  42.5% of 10.00MiB",
            "[download] 100.0% of 10.00MiB",
            "[download] no trailing newline",
        ]
        stderr = [e.text for e in events if isinstance(e, LineEvent) and e.stream == "stderr"]
        assert stderr == ["ERROR: boom"]

        progress = [e.percent for e in events if isinstance(e, ProgressEvent)]
        assert progress == [42.5, 100.0]

        first_progress = events.index(ProgressEvent(42.5))
        assert events[first_progress - 1] == LineEvent("stdout", "[download]  42.5% of 10.00MiB")

    @pytest.mark.asyncio
    async def test_zero_exit(self, runner: ProcessRunner) -> None:
        handle = run_script(runner, "print('done')")

        events = await drain(handle)

        assert events == [LineEvent("stdout", "done"), ExitEvent(0)]
        assert not handle.running

    @pytest.mark.asyncio
    async def test_missing_binary_reports_spawn_error(self, tmp_path: Path) -> None:
        runner = ProcessRunner(str(tmp_path), binary=str(tmp_path / "no-such-yt-dlp"))

        handle = runner.start("https://example.com/v", TOKEN, MediaFormat.MP4, Quality.BEST)
        events = await drain(handle)

        assert len(events) == 2
        assert isinstance(events[0], SpawnErrorEvent)
        assert "not installed or not in PATH" in events[0].message
        assert events[1] == ExitEvent(None)
        assert handle.process is None

    @pytest.mark.asyncio
    async def test_killed_process_exits_without_code(self, runner: ProcessRunner) -> None:
        handle = run_script(runner, SLEEP_SCRIPT)
        while handle.process is None:
            await asyncio.sleep(0.01)
        assert handle.running

        handle.terminate()
        events = await drain(handle)

        assert events == [ExitEvent(None)]
        assert not handle.running

    @pytest.mark.asyncio
    async def test_cancel_kills_process(self, runner: ProcessRunner) -> None:
        handle = run_script(runner, SLEEP_SCRIPT)
        while handle.process is None:
            await asyncio.sleep(0.01)

        handle.task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await handle.task

        await asyncio.wait_for(handle.process.wait(), timeout=5)
        assert handle.process.returncode is not None
        assert handle.events.get_nowait() == ExitEvent(None)

    @pytest.mark.asyncio
    async def test_output_failure_still_reports_exit(
        self, runner: ProcessRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def broken_pump(
            stream: Optional[asyncio.StreamReader],
            name: str,
            events: "asyncio.Queue[RunnerEvent]",
        ) -> None:
            if name == "stdout":
                raise RuntimeError("pipe went away")

        monkeypatch.setattr(runner, "_pump", broken_pump)
        handle = run_script(runner, SLEEP_SCRIPT)

        events = await drain(handle)
        await handle.task

        assert events == [ExitEvent(None)]
        await asyncio.wait_for(handle.process.wait(), timeout=5)
        assert handle.process.returncode is not None

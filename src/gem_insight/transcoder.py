"""ffmpeg/ffprobe invocations for video optimization, thumbnails and duration."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from gem_insight.config import MediaConfig
from gem_insight.errors import NormalizationFailed, TranscodeTimeout
from gem_insight.retry import RetryPolicy, call_with_retry
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "transcoder"})


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class CommandRunner(Protocol):
    async def run(self, argv: Sequence[str]) -> CommandResult: ...


class SubprocessRunner:
    """Run external tools with asyncio subprocesses; cancellation kills the child."""

    async def run(self, argv: Sequence[str]) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise NormalizationFailed(f"executable not found: {argv[0]}") from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        return CommandResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


@dataclass(frozen=True)
class VideoProbe:
    duration_seconds: float | None
    bit_rate: int | None


def parse_probe_output(output: str) -> VideoProbe:
    """Parse ``key=value`` lines printed by ``ffprobe -show_entries format=duration,bit_rate``."""

    values: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep:
            values[key.strip()] = value.strip()

    duration: float | None = None
    bit_rate: int | None = None
    try:
        duration = float(values["duration"])
    except (KeyError, ValueError):
        duration = None
    try:
        bit_rate = int(float(values["bit_rate"]))
    except (KeyError, ValueError):
        bit_rate = None
    return VideoProbe(duration_seconds=duration, bit_rate=bit_rate)


class VideoTranscoder:
    """Bounded-time wrappers around the ffmpeg command lines used for gemstone videos."""

    def __init__(self, config: MediaConfig, runner: CommandRunner | None = None) -> None:
        self._config = config
        self._runner = runner or SubprocessRunner()
        self._policy = RetryPolicy(attempts=1, timeout_s=config.transcode_timeout_s)

    async def _run(self, argv: list[str], label: str) -> CommandResult:
        result = await call_with_retry(
            lambda: self._runner.run(argv),
            self._policy,
            label=label,
            on_timeout=lambda seconds: TranscodeTimeout(f"{label} exceeded {seconds:.0f}s"),
        )
        if result.returncode != 0:
            tail = result.stderr.strip().splitlines()[-3:]
            LOGGER.error("transcode_command_failed", extra={"command": label, "returncode": result.returncode, "stderr": tail})
            raise NormalizationFailed(f"{label} exited with {result.returncode}: {' '.join(tail)}")
        return result

    async def probe(self, source: Path) -> VideoProbe:
        argv = [
            self._config.ffprobe_path,
            "-v",
            "error",
            "-show_entries",
            "format=duration,bit_rate",
            "-of",
            "default=noprint_wrappers=1",
            str(source),
        ]
        result = await self._run(argv, "ffprobe")
        return parse_probe_output(result.stdout)

    async def optimize(self, source: Path, output: Path) -> None:
        """Re-encode with a bounded bitrate and move the moov atom to the front."""

        max_rate = self._config.video_max_bitrate_bps
        argv = [
            self._config.ffmpeg_path,
            "-y",
            "-i",
            str(source),
            "-c:v",
            "libx264",
            "-preset",
            self._config.video_preset,
            "-crf",
            str(self._config.video_crf),
            "-maxrate",
            str(max_rate),
            "-bufsize",
            str(max_rate * 2),
            "-c:a",
            "aac",
            "-b:a",
            self._config.audio_bitrate,
            "-movflags",
            "+faststart",
            str(output),
        ]
        await self._run(argv, "ffmpeg_optimize")

    async def extract_thumbnail(self, source: Path, output: Path, offset_seconds: float) -> None:
        argv = [
            self._config.ffmpeg_path,
            "-y",
            "-ss",
            f"{max(0.0, offset_seconds):.3f}",
            "-i",
            str(source),
            "-frames:v",
            "1",
            "-q:v",
            "2",
            str(output),
        ]
        await self._run(argv, "ffmpeg_thumbnail")


__all__ = [
    "CommandResult",
    "CommandRunner",
    "SubprocessRunner",
    "VideoProbe",
    "VideoTranscoder",
    "parse_probe_output",
]

"""Thin async wrappers around the ffmpeg and ffprobe executables.

WHY: Decoder-based chunk extraction, compression and duration probing for
compressed containers all depend on an external decoder. Detecting it once
and running it as a subprocess keeps that dependency optional: PCM WAV
input never needs it.

HOW: Availability is detected with shutil.which plus a ``-version`` probe
and cached per process. Commands run through asyncio.create_subprocess_exec
so the event loop stays free while ffmpeg works; a timeout kills the
process.

RULES:
- ffmpeg_available()/ffprobe_available() never raise
- run_ffmpeg() raises CapabilityUnavailableError when ffmpeg is missing
- Non-zero exit codes raise FFmpegError with the tail of stderr
- Default command timeout is 300 seconds
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
from functools import lru_cache
from pathlib import Path

from scribeflow.errors import CapabilityUnavailableError, ScribeflowError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 300.0
_STDERR_TAIL_CHARS = 500


class FFmpegError(ScribeflowError):
    """ffmpeg or ffprobe exited with an error or timed out."""

    kind = "decoder_failed"


@lru_cache(maxsize=None)
def _tool_works(name: str) -> bool:
    if shutil.which(name) is None:
        return False
    try:
        result = subprocess.run(
            [name, "-version"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0


def ffmpeg_available() -> bool:
    available = _tool_works("ffmpeg")
    if not available:
        logger.debug("ffmpeg not found on PATH")
    return available


def ffprobe_available() -> bool:
    return _tool_works("ffprobe")


async def _run(args: list[str], timeout_s: float) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise FFmpegError("{} timed out after {:.0f}s".format(args[0], timeout_s))
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def run_ffmpeg(args: list[str], timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
    """Run ``ffmpeg -y <args>``.

    Raises:
        CapabilityUnavailableError: ffmpeg is not installed.
        FFmpegError: ffmpeg exited non-zero or timed out.
    """
    if not ffmpeg_available():
        raise CapabilityUnavailableError(
            "ffmpeg is required for this operation but was not found on PATH"
        )
    command = ["ffmpeg", "-y"] + list(args)
    logger.debug("Running: %s", " ".join(command))
    returncode, _, stderr = await _run(command, timeout_s)
    if returncode != 0:
        raise FFmpegError(
            "ffmpeg exited with code {}: {}".format(returncode, stderr[-_STDERR_TAIL_CHARS:].strip())
        )


async def probe_duration(path: Path, timeout_s: float = 10.0) -> float | None:
    """Return the container duration in seconds, or None when unknown.

    Probe failures are logged and reported as None; callers fall back to a
    bitrate estimate.
    """
    if not ffprobe_available():
        return None
    command = [
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]
    try:
        returncode, stdout, stderr = await _run(command, timeout_s)
    except FFmpegError as exc:
        logger.warning("ffprobe failed for %s: %s", Path(path).name, exc)
        return None
    if returncode != 0:
        logger.warning("ffprobe failed for %s: %s", Path(path).name, stderr.strip())
        return None
    try:
        duration = float(stdout.strip())
    except ValueError:
        return None
    return duration if duration > 0 else None


async def extract_segment(
    source: Path,
    output: Path,
    start_s: float,
    duration_s: float,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> Path:
    """Decode ``[start_s, start_s + duration_s)`` into a 16 kHz mono PCM WAV."""
    await run_ffmpeg(
        [
            "-i", str(source),
            "-ss", "{:.3f}".format(start_s),
            "-t", "{:.3f}".format(duration_s),
            "-acodec", "pcm_s16le",
            "-ar", "16000",
            "-ac", "1",
            str(output),
        ],
        timeout_s=timeout_s,
    )
    return output


async def encode_mp3(
    source: Path,
    output: Path,
    bitrate_kbps: int,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> Path:
    """Re-encode ``source`` to 16 kHz mono MP3 at the given bitrate."""
    await run_ffmpeg(
        [
            "-i", str(source),
            "-ar", "16000",
            "-ac", "1",
            "-b:a", "{}k".format(bitrate_kbps),
            "-acodec", "libmp3lame",
            str(output),
        ],
        timeout_s=timeout_s,
    )
    return output

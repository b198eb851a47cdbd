"""Pre-flight analysis of an audio file before any upload.

WHY: The transcription backend rejects payloads above a hard size limit.
Before spending time on silence removal or network calls, the session
needs to know the file's format, size, duration and which mitigation
strategies are actually possible on this machine.

HOW: The container format comes from the file's magic bytes, with the
extension as a fallback hint. Duration is exact for WAV (header, read with
soundfile), probed with ffprobe for everything else when available, and
otherwise estimated from typical bitrates. Capabilities depend on the
format and on whether ffmpeg is installed. choose_strategy() then picks
exactly one handling policy for the file.

RULES:
- exceeds_limit = size_bytes > hard_limit_bytes
- NATIVE_SPLIT requires integer PCM WAV; DECODER_SPLIT and COMPRESS require ffmpeg
- Float WAV is valid input: decodable for silence removal, split via ffmpeg
- A file with RIFF/WAVE magic that cannot be parsed raises UnreadableFileError
- Unknown formats report "unknown" and an unknown (None) duration
- One strategy per file; split strategies are never mixed
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

import soundfile as sf

from scribeflow.audio import ffmpeg
from scribeflow.config import HARD_LIMIT_BYTES, TARGET_CHUNK_BYTES
from scribeflow.errors import (
    CapabilityUnavailableError,
    ConfigError,
    FileSizeError,
    UnreadableFileError,
)

logger = logging.getLogger(__name__)

# Typical bitrates (bits per second) used when nothing better is known
_TYPICAL_BITRATES = {
    "mp3": 128_000,
    "m4a": 128_000,
    "ogg": 112_000,
    "flac": 800_000,
}

# libsndfile subtypes the native frame copier handles
_NATIVE_PCM_SUBTYPES = {"PCM_U8", "PCM_16", "PCM_24", "PCM_32"}

_EXTENSION_FORMATS = {
    ".wav": "wav",
    ".mp3": "mp3",
    ".m4a": "m4a",
    ".aac": "m4a",
    ".mp4": "m4a",
    ".ogg": "ogg",
    ".oga": "ogg",
    ".flac": "flac",
    ".webm": "webm",
}


class Strategy(str, enum.Enum):
    """How an analyzed file will be brought to the backend."""

    DIRECT = "direct"
    NATIVE_SPLIT = "native_split"
    DECODER_SPLIT = "decoder_split"
    COMPRESS = "compress"


# Request for "whichever split this file supports"
SPLIT = "split"


def parse_strategy(name: str | None):
    """Map a user-facing strategy name to a choose_strategy() request.

    "auto" (or None) lets choose_strategy decide, "split" picks the best
    available split, anything else must be a Strategy value.

    Raises:
        ConfigError: Unknown strategy name.
    """
    if name is None or name == "auto":
        return None
    if name == SPLIT:
        return SPLIT
    try:
        return Strategy(name)
    except ValueError:
        choices = ["auto", SPLIT] + [s.value for s in Strategy]
        raise ConfigError(
            "Unknown strategy '{}'. Choose one of: {}".format(name, ", ".join(choices))
        )


@dataclass
class PreflightReport:
    """Everything the session needs to decide how to handle one file."""

    path: Path
    size_bytes: int
    format: str
    estimated_duration_s: float | None
    exceeds_limit: bool
    capabilities: set[Strategy] = field(default_factory=set)
    suggested_chunk_count: int = 1
    is_pcm_wav: bool = False
    decodable_wav: bool = False
    hard_limit_bytes: int = HARD_LIMIT_BYTES

    @property
    def formatted_size(self) -> str:
        return format_file_size(self.size_bytes)

    @property
    def formatted_duration(self) -> str:
        return format_duration(self.estimated_duration_s)


# ---------------------------------------------------------------------------
# Human-readable helpers
# ---------------------------------------------------------------------------


def format_file_size(size_bytes: int) -> str:
    if size_bytes >= 1024 ** 3:
        return "{:.2f} GB".format(size_bytes / 1024.0 ** 3)
    if size_bytes >= 1024 ** 2:
        return "{:.1f} MB".format(size_bytes / 1024.0 ** 2)
    if size_bytes >= 1024:
        return "{:.1f} KB".format(size_bytes / 1024.0)
    return "{} bytes".format(size_bytes)


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "Unknown"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def estimate_transcription_time(chunk_count: int) -> str:
    """Rough wall-clock estimate: two to three minutes per chunk."""
    if chunk_count <= 1:
        return "1-2 minutes"
    return "{}-{} minutes".format(chunk_count * 2, chunk_count * 3)


def chunk_count(size_bytes: int, target_chunk_bytes: int) -> int:
    """Number of chunks needed so each stays under the target size."""
    if target_chunk_bytes <= 0:
        raise ValueError("target_chunk_bytes must be positive")
    return max(1, math.ceil(size_bytes / target_chunk_bytes))


# ---------------------------------------------------------------------------
# Format and duration detection
# ---------------------------------------------------------------------------


def detect_format_from_header(header: bytes) -> str | None:
    """Identify a container from its first 12 bytes, or None."""
    if len(header) >= 12 and header[0:4] == b"RIFF" and header[8:12] == b"WAVE":
        return "wav"
    if header[0:3] == b"ID3" or (len(header) >= 2 and header[0] == 0xFF and (header[1] & 0xE0) == 0xE0):
        return "mp3"
    if len(header) >= 8 and header[4:8] == b"ftyp":
        return "m4a"
    if header[0:4] == b"OggS":
        return "ogg"
    if header[0:4] == b"fLaC":
        return "flac"
    if header[0:4] == b"\x1a\x45\xdf\xa3":
        return "webm"
    return None


def detect_format(path: Path, header: bytes) -> str:
    fmt = detect_format_from_header(header)
    if fmt is not None:
        return fmt
    return _EXTENSION_FORMATS.get(path.suffix.lower(), "unknown")


def estimate_duration_from_size(size_bytes: int, fmt: str) -> float | None:
    bitrate = _TYPICAL_BITRATES.get(fmt)
    if bitrate is None:
        return None
    return size_bytes * 8.0 / bitrate


def _wav_info(path: Path) -> tuple:
    """``(duration_s, is_pcm)`` from a RIFF/WAVE header.

    ``is_pcm`` is True only for plain integer PCM, which the native frame
    copier can split. Float and WAVE_FORMAT_EXTENSIBLE files still decode
    for silence removal but split through ffmpeg.

    Raises:
        UnreadableFileError: The RIFF/WAVE container cannot be parsed.
    """
    try:
        info = sf.info(str(path))
    except (sf.SoundFileError, OSError) as exc:
        raise UnreadableFileError(
            "{} looks like a WAV file but cannot be parsed: {}".format(path.name, exc)
        )
    if info.samplerate <= 0:
        raise UnreadableFileError("{} has an invalid sample rate".format(path.name))
    is_pcm = info.format == "WAV" and info.subtype in _NATIVE_PCM_SUBTYPES
    return info.frames / float(info.samplerate), is_pcm


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class PreflightAnalyzer:
    """Produces a PreflightReport for one audio file."""

    def __init__(
        self,
        hard_limit_bytes: int = HARD_LIMIT_BYTES,
        target_chunk_bytes: int = TARGET_CHUNK_BYTES,
    ) -> None:
        self.hard_limit_bytes = hard_limit_bytes
        self.target_chunk_bytes = target_chunk_bytes

    async def analyze(self, path: Path) -> PreflightReport:
        """Inspect ``path`` without modifying it.

        Raises:
            UnreadableFileError: The file cannot be opened, or claims to be
                WAV but its header is not parsable.
        """
        path = Path(path)
        try:
            size_bytes = path.stat().st_size
            with open(path, "rb") as f:
                header = f.read(12)
        except OSError as exc:
            raise UnreadableFileError("Cannot open {}: {}".format(path, exc))

        fmt = detect_format(path, header)
        is_pcm_wav = False
        decodable_wav = False
        if fmt == "wav":
            duration, is_pcm_wav = _wav_info(path)
            decodable_wav = True
        else:
            duration = await ffmpeg.probe_duration(path)
            if duration is None:
                duration = estimate_duration_from_size(size_bytes, fmt)

        exceeds = size_bytes > self.hard_limit_bytes
        has_ffmpeg = ffmpeg.ffmpeg_available()

        capabilities: set[Strategy] = set()
        if not exceeds:
            capabilities.add(Strategy.DIRECT)
        if is_pcm_wav:
            capabilities.add(Strategy.NATIVE_SPLIT)
        if has_ffmpeg:
            capabilities.add(Strategy.DECODER_SPLIT)
            capabilities.add(Strategy.COMPRESS)

        report = PreflightReport(
            path=path,
            size_bytes=size_bytes,
            format=fmt,
            estimated_duration_s=duration,
            exceeds_limit=exceeds,
            capabilities=capabilities,
            suggested_chunk_count=chunk_count(size_bytes, self.target_chunk_bytes),
            is_pcm_wav=is_pcm_wav,
            decodable_wav=decodable_wav,
            hard_limit_bytes=self.hard_limit_bytes,
        )
        logger.info(
            "Preflight %s: format=%s size=%s duration=%s exceeds=%s ffmpeg=%s",
            path.name, fmt, report.formatted_size, report.formatted_duration,
            exceeds, has_ffmpeg,
        )
        return report


def split_strategy(report: PreflightReport) -> Strategy:
    """Best available split strategy: native for PCM WAV, else the decoder."""
    if Strategy.NATIVE_SPLIT in report.capabilities:
        return Strategy.NATIVE_SPLIT
    if Strategy.DECODER_SPLIT in report.capabilities:
        return Strategy.DECODER_SPLIT
    raise CapabilityUnavailableError(
        "Cannot split {} file {}: install ffmpeg to split compressed formats".format(
            report.format, report.path.name
        )
    )


def choose_strategy(report: PreflightReport, requested=None) -> Strategy:
    """Pick the single handling policy for an analyzed file.

    RULES:
    - requested=None: DIRECT when within the limit, else the best split
    - requested=SPLIT: the best split this file supports
    - A requested Strategy must be in report.capabilities
    - DIRECT on an oversized file raises FileSizeError

    Raises:
        CapabilityUnavailableError: The requested strategy cannot run here.
        FileSizeError: The file is over the limit and no mitigation exists.
    """
    if requested == SPLIT:
        return split_strategy(report)
    if requested is None:
        if not report.exceeds_limit:
            return Strategy.DIRECT
        try:
            return split_strategy(report)
        except CapabilityUnavailableError:
            raise FileSizeError(
                report.size_bytes,
                report.hard_limit_bytes,
                "File too large ({}) and no splitting or compression is "
                "available for {} files without ffmpeg".format(report.formatted_size, report.format),
            )

    if requested == Strategy.DIRECT and report.exceeds_limit:
        raise FileSizeError(report.size_bytes, report.hard_limit_bytes)
    if requested not in report.capabilities:
        raise CapabilityUnavailableError(
            "Strategy '{}' is not available for {} ({} file{})".format(
                requested.value,
                report.path.name,
                report.format,
                "" if ffmpeg.ffmpeg_available() else ", ffmpeg not installed",
            )
        )
    return requested

"""Speech-oriented MP3 compression as an alternative to splitting.

WHY: A long recording that is only slightly over the backend's size limit
can often be uploaded as a single low-bitrate MP3, which avoids chunk
boundaries entirely.

HOW: Presets go from the highest to the lowest bitrate. The chosen preset
is the first whose estimated output (duration * bitrate / 8 * 1.1) fits the
target size; ULTRA is used when none fits, and the caller then checks
within_limit and falls back to splitting. ffmpeg re-encodes to 16 kHz mono.

RULES:
- Presets in order: 64k, 48k, 32k, 24k
- Unknown duration picks BALANCED
- within_limit = 0 < compressed_size <= target size
- An empty ffmpeg output raises FFmpegError
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path

from scribeflow.audio import ffmpeg
from scribeflow.audio.preflight import format_file_size
from scribeflow.config import TARGET_CHUNK_BYTES

logger = logging.getLogger(__name__)

# Container overhead on top of the raw bitrate
_SIZE_OVERHEAD = 1.1


class CompressionPreset(enum.Enum):
    HIGH_QUALITY = (64, "High Quality (64kbps)")
    BALANCED = (48, "Balanced (48kbps)")
    MAXIMUM = (32, "Maximum Compression (32kbps)")
    ULTRA = (24, "Ultra Compression (24kbps)")

    def __init__(self, bitrate_kbps: int, description: str) -> None:
        self.bitrate_kbps = bitrate_kbps
        self.description = description

    def estimate_output_size(self, duration_s: float) -> int:
        return int(duration_s * self.bitrate_kbps * 1000 / 8 * _SIZE_OVERHEAD)


@dataclass
class CompressionResult:
    path: Path
    preset: CompressionPreset
    original_size: int
    compressed_size: int
    target_size: int = TARGET_CHUNK_BYTES

    @property
    def compression_ratio(self) -> float:
        if self.compressed_size <= 0:
            return 0.0
        return self.original_size / float(self.compressed_size)

    @property
    def within_limit(self) -> bool:
        return 0 < self.compressed_size <= self.target_size

    def summary(self) -> str:
        return "Compressed {} -> {} ({:.1f}x reduction){}".format(
            format_file_size(self.original_size),
            format_file_size(self.compressed_size),
            self.compression_ratio,
            "" if self.within_limit else " - still exceeds limit!",
        )


def choose_preset(duration_s: float | None, target_size: int = TARGET_CHUNK_BYTES) -> CompressionPreset:
    """Highest-quality preset whose estimated output fits ``target_size``."""
    if duration_s is None:
        return CompressionPreset.BALANCED
    for preset in CompressionPreset:
        if preset.estimate_output_size(duration_s) <= target_size:
            return preset
    return CompressionPreset.ULTRA


class Compressor:
    """Re-encodes audio files to low-bitrate mono MP3 with ffmpeg."""

    def __init__(self, target_size: int = TARGET_CHUNK_BYTES, timeout_s: float = ffmpeg.DEFAULT_TIMEOUT_S) -> None:
        self.target_size = target_size
        self.timeout_s = timeout_s

    async def compress(
        self,
        source: Path,
        work_dir: Path,
        duration_s: float | None = None,
        preset: CompressionPreset | None = None,
    ) -> CompressionResult:
        """Compress ``source`` into ``work_dir``.

        Raises:
            CapabilityUnavailableError: ffmpeg is not installed.
            FFmpegError: ffmpeg failed, timed out, or wrote nothing.
        """
        source = Path(source)
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        if preset is None:
            preset = choose_preset(duration_s, self.target_size)

        original_size = source.stat().st_size
        logger.info(
            "Compressing %s (%s) with preset %s",
            source.name, format_file_size(original_size), preset.description,
        )
        out = work_dir / "{}_compressed.mp3".format(source.stem)
        await ffmpeg.encode_mp3(source, out, preset.bitrate_kbps, timeout_s=self.timeout_s)

        compressed_size = out.stat().st_size if out.exists() else 0
        if compressed_size == 0:
            raise ffmpeg.FFmpegError("ffmpeg produced an empty output file")

        result = CompressionResult(
            path=out,
            preset=preset,
            original_size=original_size,
            compressed_size=compressed_size,
            target_size=self.target_size,
        )
        logger.info(result.summary())
        if not result.within_limit:
            logger.warning("Compressed file still exceeds the size limit; it will need splitting")
        return result

"""Chunk planning and extraction for files over the backend size limit.

WHY: Recordings larger than the transcription backend's hard limit must be
sent as several self-contained pieces. Planning is pure arithmetic over
size and duration; extraction either slices PCM WAV frames directly or
asks ffmpeg to cut and re-encode each range.

HOW: plan_chunks() derives the chunk count from the byte size and the
target chunk size, then spreads the duration evenly. An extractor turns a
plan into WAV files in a work directory. extractor_for() maps the chosen
Strategy to exactly one extractor so a file is never split two ways.

RULES:
- chunk_count = ceil(size / target), and 1 when the file fits the target
- Chunk i > 0 starts overlap_s earlier than its nominal start (clamped at 0)
- Indices are contiguous from 0; chunks cover the source with no gaps
- Overlap can duplicate words at boundaries; nothing deduplicates them
- Cancellation is checked before each chunk extraction
"""

from __future__ import annotations

import asyncio
import logging
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from scribeflow.audio import ffmpeg
from scribeflow.audio.preflight import Strategy, chunk_count
from scribeflow.errors import CapabilityUnavailableError, UnreadableFileError

logger = logging.getLogger(__name__)

# 16 kHz mono 16-bit PCM, the format DecoderExtractor writes
DECODED_BYTES_PER_SECOND = 16000 * 2


@dataclass(frozen=True)
class ChunkSpec:
    index: int
    start_s: float
    duration_s: float

    @property
    def end_s(self) -> float:
        return self.start_s + self.duration_s


@dataclass(frozen=True)
class ChunkPlan:
    """Ordered chunk layout for one source file."""

    chunks: tuple
    total_duration_s: float
    overlap_s: float = 0.0

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def __iter__(self):
        return iter(self.chunks)

    def __len__(self) -> int:
        return len(self.chunks)


def plan_chunks(
    size_bytes: int,
    total_duration_s: float,
    target_chunk_bytes: int,
    overlap_s: float = 0.0,
) -> ChunkPlan:
    """Lay out evenly sized chunks that each stay under the target size.

    Raises:
        ValueError: Duration is not positive, overlap is negative or the
            target size is not positive.
    """
    if total_duration_s is None or total_duration_s <= 0:
        raise ValueError("total_duration_s must be positive to plan chunks")
    if overlap_s < 0:
        raise ValueError("overlap_s cannot be negative")

    count = chunk_count(size_bytes, target_chunk_bytes)
    nominal = total_duration_s / count
    specs = []
    for i in range(count):
        nominal_start = i * nominal
        nominal_end = total_duration_s if i == count - 1 else (i + 1) * nominal
        start = nominal_start if i == 0 else max(0.0, nominal_start - overlap_s)
        specs.append(ChunkSpec(index=i, start_s=start, duration_s=nominal_end - start))

    logger.info(
        "Planned %d chunk(s) of ~%.1fs (overlap %.1fs) for %.1fs of audio",
        count, nominal, overlap_s, total_duration_s,
    )
    return ChunkPlan(chunks=tuple(specs), total_duration_s=total_duration_s, overlap_s=overlap_s)


def planning_size(strategy: Strategy, size_bytes: int, duration_s: float) -> int:
    """Byte size to plan with: decoder chunks are sized by their PCM output."""
    if strategy == Strategy.DECODER_SPLIT:
        return max(size_bytes, int(duration_s * DECODED_BYTES_PER_SECOND))
    return size_bytes


def chunk_filename(source: Path, index: int) -> str:
    return "chunk_{:02d}_{}.wav".format(index + 1, Path(source).stem)


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------


class ChunkExtractor:
    """Turns a ChunkPlan into ordered, self-contained WAV files.

    Subclasses implement extract_one(); extract() drives the plan in index
    order and stops early when cancel_event is set, returning the chunks
    written so far.
    """

    name = "base"

    async def extract(
        self,
        source: Path,
        plan: ChunkPlan,
        work_dir: Path,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Path]:
        source = Path(source)
        work_dir = Path(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        paths: List[Path] = []
        for spec in plan:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Chunk extraction cancelled after %d/%d chunk(s)", len(paths), len(plan))
                break
            out = work_dir / chunk_filename(source, spec.index)
            await self.extract_one(source, spec, out)
            logger.info(
                "Created chunk %d/%d: %s (start %.1fs, %.1fs)",
                spec.index + 1, len(plan), out.name, spec.start_s, spec.duration_s,
            )
            paths.append(out)
        return paths

    async def extract_one(self, source: Path, spec: ChunkSpec, out: Path) -> Path:
        raise NotImplementedError


class NativeWavExtractor(ChunkExtractor):
    """Slices PCM WAV frame ranges without re-encoding."""

    name = "native"

    async def extract_one(self, source: Path, spec: ChunkSpec, out: Path) -> Path:
        return await asyncio.to_thread(self._copy_frames, source, spec, out)

    @staticmethod
    def _copy_frames(source: Path, spec: ChunkSpec, out: Path) -> Path:
        try:
            with wave.open(str(source), "rb") as src:
                params = src.getparams()
                rate = src.getframerate()
                total = src.getnframes()
                start = min(total, int(round(spec.start_s * rate)))
                end = min(total, int(round(spec.end_s * rate)))
                src.setpos(start)
                frames = src.readframes(end - start)
        except (wave.Error, EOFError) as exc:
            raise UnreadableFileError(
                "Only PCM WAV files can be split natively ({}): {}".format(Path(source).name, exc)
            )
        with wave.open(str(out), "wb") as dst:
            dst.setparams(params)
            dst.writeframes(frames)
        return out


class DecoderExtractor(ChunkExtractor):
    """Cuts each range with ffmpeg into 16 kHz mono PCM WAV."""

    name = "decoder"

    def __init__(self, timeout_s: float = ffmpeg.DEFAULT_TIMEOUT_S) -> None:
        self.timeout_s = timeout_s

    async def extract(self, source, plan, work_dir, cancel_event=None):
        if not ffmpeg.ffmpeg_available():
            raise CapabilityUnavailableError("ffmpeg is required to split compressed audio")
        return await super().extract(source, plan, work_dir, cancel_event)

    async def extract_one(self, source: Path, spec: ChunkSpec, out: Path) -> Path:
        return await ffmpeg.extract_segment(
            source, out, spec.start_s, spec.duration_s, timeout_s=self.timeout_s
        )


def extractor_for(strategy: Strategy) -> ChunkExtractor:
    """Return the single extractor a split strategy uses."""
    if strategy == Strategy.NATIVE_SPLIT:
        return NativeWavExtractor()
    if strategy == Strategy.DECODER_SPLIT:
        return DecoderExtractor()
    raise ValueError("Strategy '{}' does not split files".format(strategy.value))


def cleanup_chunks(paths: Iterable[Path]) -> None:
    """Delete transient chunk files; failures are logged, not raised."""
    for path in paths:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            continue
        except OSError:
            logger.warning("Could not delete temp chunk: %s", Path(path).name, exc_info=True)

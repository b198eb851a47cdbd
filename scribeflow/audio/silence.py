"""RMS-window silence detection and removal.

WHY: Long pauses cost transcription time and money and push recordings
over the backend's size limit. Cutting them out before upload shortens the
payload without touching speech.

HOW: The buffer is partitioned into fixed 100 ms windows. Each window's RMS
is computed over all of its samples (all channels). Consecutive windows
below the threshold form candidate runs; a run is removed only when it
spans at least ``min_silence_duration_ms``. The kept slices are spliced
back together in their original order.

RULES:
- window_frames = round(sample_rate * 0.1)
- min/max/avg RMS across windows are always reported
- A run qualifies when window_count * 100 ms >= min_silence_duration_ms
- Trailing silence is treated exactly like interior silence
- Removal only runs when the recording is at least
  min_recording_duration_s long (0 disables the gate)
- If every window is below the threshold, nothing is spliced away except
  down to a single window: the output keeps the first window and the
  result carries all_below_threshold=True plus a warning
- Otherwise a removal that would cut more than max_reduction_percent or
  leave less than min_output_duration_s is skipped with a warning; the
  input is returned unchanged
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import numpy as np

from scribeflow.audio.buffer import AudioBuffer
from scribeflow.config import Settings

logger = logging.getLogger(__name__)

WINDOW_MS = 100

# Safety guards against degenerate output
MAX_REDUCTION_PERCENT = 90.0
MIN_OUTPUT_DURATION_S = 0.5

ALL_SILENT_WARNING = (
    "Every analysis window is below the silence threshold; the recording "
    "looks silent or the threshold is too high"
)


@dataclass(frozen=True)
class SilenceRegion:
    """A removable span of frames: start_frame < end_frame <= total_frames."""

    start_frame: int
    end_frame: int

    @property
    def duration_frames(self) -> int:
        return self.end_frame - self.start_frame


@dataclass
class SilenceAnalysis:
    """Diagnostic output of one analysis pass."""

    threshold: float
    window_frames: int
    window_count: int
    silent_window_count: int
    min_rms: float
    max_rms: float
    avg_rms: float
    regions: List[SilenceRegion] = field(default_factory=list)

    @property
    def all_below_threshold(self) -> bool:
        return self.window_count > 0 and self.silent_window_count == self.window_count

    @property
    def silence_frames(self) -> int:
        return sum(r.duration_frames for r in self.regions)


@dataclass
class SilenceRemovalResult:
    """Outcome of SilenceRemover.remove()."""

    buffer: AudioBuffer
    analysis: SilenceAnalysis
    applied: bool
    original_duration_s: float
    new_duration_s: float
    skipped_reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def reduction_percent(self) -> float:
        if self.original_duration_s <= 0:
            return 0.0
        return (self.original_duration_s - self.new_duration_s) / self.original_duration_s * 100.0

    @property
    def all_below_threshold(self) -> bool:
        return self.analysis.all_below_threshold


def window_frames_for(sample_rate: int) -> int:
    return max(1, int(round(sample_rate * WINDOW_MS / 1000.0)))


class SilenceAnalyzer:
    """Computes per-window RMS and the removable silence regions."""

    def __init__(self, threshold: float, min_silence_duration_ms: int) -> None:
        self.threshold = threshold
        self.min_silence_duration_ms = min_silence_duration_ms

    def window_rms(self, buffer: AudioBuffer) -> np.ndarray:
        """Return the RMS of every 100 ms window (last window may be partial)."""
        if buffer.samples.size == 0:
            return np.zeros(0, dtype=np.float64)
        window_samples = window_frames_for(buffer.sample_rate) * buffer.channels
        squared = np.square(buffer.samples, dtype=np.float64)
        starts = np.arange(0, squared.size, window_samples)
        sums = np.add.reduceat(squared, starts)
        counts = np.minimum(window_samples, squared.size - starts)
        return np.sqrt(sums / counts)

    def analyze(self, buffer: AudioBuffer) -> SilenceAnalysis:
        window_frames = window_frames_for(buffer.sample_rate)
        rms = self.window_rms(buffer)

        if rms.size == 0:
            return SilenceAnalysis(
                threshold=self.threshold,
                window_frames=window_frames,
                window_count=0,
                silent_window_count=0,
                min_rms=0.0,
                max_rms=0.0,
                avg_rms=0.0,
            )

        silent = rms < self.threshold
        min_windows = int(math.ceil(self.min_silence_duration_ms / float(WINDOW_MS)))
        regions: List[SilenceRegion] = []
        run_start: Optional[int] = None

        # Sentinel False closes a trailing run the same way as an interior one
        for i, is_silent in enumerate(list(silent) + [False]):
            if is_silent:
                if run_start is None:
                    run_start = i
                continue
            if run_start is not None:
                if i - run_start >= min_windows:
                    regions.append(
                        SilenceRegion(
                            start_frame=run_start * window_frames,
                            end_frame=min(i * window_frames, buffer.total_frames),
                        )
                    )
                run_start = None

        analysis = SilenceAnalysis(
            threshold=self.threshold,
            window_frames=window_frames,
            window_count=int(rms.size),
            silent_window_count=int(np.count_nonzero(silent)),
            min_rms=float(rms.min()),
            max_rms=float(rms.max()),
            avg_rms=float(rms.mean()),
            regions=regions,
        )
        logger.info(
            "RMS analysis: min=%.4f max=%.4f avg=%.4f threshold=%.4f (%d/%d windows silent)",
            analysis.min_rms, analysis.max_rms, analysis.avg_rms, self.threshold,
            analysis.silent_window_count, analysis.window_count,
        )
        return analysis


def splice(buffer: AudioBuffer, regions: List[SilenceRegion]) -> AudioBuffer:
    """Concatenate every slice of ``buffer`` that lies outside ``regions``."""
    kept = []
    last_end = 0
    for region in regions:
        if region.start_frame > last_end:
            kept.append(buffer.slice_frames(last_end, region.start_frame))
        last_end = max(last_end, region.end_frame)
    if last_end < buffer.total_frames:
        kept.append(buffer.slice_frames(last_end, buffer.total_frames))
    return AudioBuffer.concat(kept, buffer.sample_rate, buffer.channels)


class SilenceRemover:
    """Applies silence analysis and splicing under the duration gate."""

    def __init__(
        self,
        threshold: float = 0.01,
        min_silence_duration_ms: int = 1500,
        min_recording_duration_s: float = 0.0,
        max_reduction_percent: float = MAX_REDUCTION_PERCENT,
        min_output_duration_s: float = MIN_OUTPUT_DURATION_S,
    ) -> None:
        self.analyzer = SilenceAnalyzer(threshold, min_silence_duration_ms)
        self.min_recording_duration_s = min_recording_duration_s
        self.max_reduction_percent = max_reduction_percent
        self.min_output_duration_s = min_output_duration_s

    @classmethod
    def from_settings(cls, settings: Settings) -> SilenceRemover:
        return cls(
            threshold=settings.silence_threshold,
            min_silence_duration_ms=settings.min_silence_duration_ms,
            min_recording_duration_s=settings.min_recording_duration_for_removal_s,
        )

    def remove(self, buffer: AudioBuffer) -> SilenceRemovalResult:
        original_duration = buffer.duration_s
        analysis = self.analyzer.analyze(buffer)
        warnings: List[str] = []

        def skipped(reason: str) -> SilenceRemovalResult:
            return SilenceRemovalResult(
                buffer=buffer,
                analysis=analysis,
                applied=False,
                original_duration_s=original_duration,
                new_duration_s=original_duration,
                skipped_reason=reason,
                warnings=warnings,
            )

        if analysis.all_below_threshold:
            logger.warning(ALL_SILENT_WARNING)
            warnings.append(ALL_SILENT_WARNING)

        if self.min_recording_duration_s > 0 and original_duration < self.min_recording_duration_s:
            reason = "Recording shorter than {:.1f}s; silence removal skipped".format(
                self.min_recording_duration_s
            )
            logger.info(reason)
            return skipped(reason)

        if not analysis.regions:
            logger.info("No significant silence detected")
            return skipped("No silence region long enough")

        if analysis.all_below_threshold:
            # Keep the first window rather than emitting an empty buffer
            result_buffer = buffer.slice_frames(0, analysis.window_frames)
        else:
            result_buffer = splice(buffer, analysis.regions)
            reduction = (original_duration - result_buffer.duration_s) / original_duration * 100.0
            reason = None
            if reduction > self.max_reduction_percent:
                reason = (
                    "Silence removal would cut {:.1f}% of the recording (limit {:.0f}%); "
                    "using the original audio"
                ).format(reduction, self.max_reduction_percent)
            elif result_buffer.duration_s < self.min_output_duration_s:
                reason = (
                    "Silence removal would leave only {:.2f}s of audio (minimum {:.1f}s); "
                    "using the original audio"
                ).format(result_buffer.duration_s, self.min_output_duration_s)
            if reason is not None:
                logger.warning(reason)
                warnings.append(reason)
                return skipped(reason)

        result = SilenceRemovalResult(
            buffer=result_buffer,
            analysis=analysis,
            applied=True,
            original_duration_s=original_duration,
            new_duration_s=result_buffer.duration_s,
            warnings=warnings,
        )
        logger.info(
            "Silence removal: %d region(s), %.1f%% reduction (%.2fs -> %.2fs)",
            len(analysis.regions), result.reduction_percent,
            original_duration, result.new_duration_s,
        )
        return result


def remove_silence_from_file(path: Path, settings: Settings, out_dir: Optional[Path] = None) -> tuple:
    """Remove silence from a WAV file on disk.

    Writes ``<stem>_nosilence.wav`` into ``out_dir`` (default: next to the
    source) when anything was removed. Returns ``(output_path, result)``;
    ``output_path`` is the original path when nothing was removed. Deleting
    the intermediate file is left to the caller (see keep_intermediate_files).
    """
    started = time.monotonic()
    path = Path(path)
    buffer = AudioBuffer.from_wav(path)
    result = SilenceRemover.from_settings(settings).remove(buffer)
    if not result.applied:
        return path, result

    out_path = Path(out_dir or path.parent) / "{}_nosilence.wav".format(path.stem)
    result.buffer.to_wav(out_path)
    logger.info(
        "Silence removed: %s (took %.0fms)", out_path.name, (time.monotonic() - started) * 1000
    )
    return out_path, result

"""In-memory audio buffer and WAV codec.

WHY: Silence analysis, splicing and native chunking all operate on decoded
samples. A single buffer type with a small WAV codec keeps that math
independent from file handling and from any external decoder.

HOW: AudioBuffer wraps a 1-D float32 numpy array of interleaved samples in
[-1.0, 1.0] together with the sample rate and channel count. WAV files are
decoded with soundfile (libsndfile), which covers integer PCM of any width
as well as IEEE float data. Output is always 16-bit PCM written with the
standard-library ``wave`` module.

RULES:
- len(samples) % channels == 0, checked at construction
- A frame is one sample per channel; frame indices address the buffer
- Buffers are treated as read-only; operations return new buffers
"""

from __future__ import annotations

import logging
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Union

import numpy as np
import soundfile as sf

from scribeflow.errors import UnreadableFileError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True, eq=False)
class AudioBuffer:
    """Decoded audio: interleaved normalized samples plus format info."""

    samples: np.ndarray
    sample_rate: int
    channels: int = 1

    def __post_init__(self) -> None:
        samples = np.asarray(self.samples, dtype=np.float32).reshape(-1)
        object.__setattr__(self, "samples", samples)
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive, got {}".format(self.sample_rate))
        if self.channels <= 0:
            raise ValueError("channels must be positive, got {}".format(self.channels))
        if samples.size % self.channels != 0:
            raise ValueError(
                "Sample count {} is not a multiple of channel count {}".format(
                    samples.size, self.channels
                )
            )

    @property
    def total_frames(self) -> int:
        return self.samples.size // self.channels

    @property
    def duration_s(self) -> float:
        return self.total_frames / float(self.sample_rate)

    def slice_frames(self, start_frame: int, end_frame: int) -> AudioBuffer:
        """Return a new buffer holding frames [start_frame, end_frame)."""
        start_frame = max(0, start_frame)
        end_frame = min(self.total_frames, end_frame)
        if end_frame < start_frame:
            end_frame = start_frame
        data = self.samples[start_frame * self.channels:end_frame * self.channels]
        return AudioBuffer(data.copy(), self.sample_rate, self.channels)

    @classmethod
    def concat(cls, buffers: Iterable[AudioBuffer], sample_rate: int, channels: int) -> AudioBuffer:
        """Join buffers that share one format, in the given order."""
        parts = []
        for buf in buffers:
            if buf.sample_rate != sample_rate or buf.channels != channels:
                raise ValueError("Cannot concatenate buffers with different formats")
            parts.append(buf.samples)
        if not parts:
            return cls(np.zeros(0, dtype=np.float32), sample_rate, channels)
        return cls(np.concatenate(parts), sample_rate, channels)

    # ------------------------------------------------------------------
    # WAV codec
    # ------------------------------------------------------------------

    @classmethod
    def from_wav(cls, path: PathLike) -> AudioBuffer:
        """Decode a WAV file (integer PCM or IEEE float).

        Raises:
            UnreadableFileError: The file is missing or cannot be decoded.
        """
        path = Path(path)
        try:
            data, sample_rate = sf.read(str(path), dtype="float32", always_2d=True)
        except (sf.SoundFileError, OSError) as exc:
            raise UnreadableFileError("Cannot read WAV file {}: {}".format(path.name, exc))

        buffer = cls(data.reshape(-1), sample_rate, data.shape[1])
        logger.debug(
            "Read WAV %s: %d channel(s), %d Hz, %.2fs",
            path.name, buffer.channels, buffer.sample_rate, buffer.duration_s,
        )
        return buffer

    def to_wav(self, path: PathLike) -> Path:
        """Encode as 16-bit PCM WAV."""
        path = Path(path)
        clipped = np.clip(self.samples, -1.0, 1.0)
        pcm16 = (clipped * 32767.0).astype("<i2")
        with wave.open(str(path), "wb") as wf:
            wf.setnchannels(self.channels)
            wf.setsampwidth(2)
            wf.setframerate(self.sample_rate)
            wf.writeframes(pcm16.tobytes())
        logger.info("Wrote %d frames to %s", self.total_frames, path.name)
        return path

"""Shared test fixtures for the scribeflow test suite.

WHY: Most modules need the same building blocks: small synthetic WAV
files with known speech/silence layout, a Settings value without the
duration gate or retry delays, and in-process stand-ins for the two
remote backends.

HOW: make_wav() writes a mono 16-bit WAV built from (seconds, amplitude)
segments, where amplitude 0.0 is digital silence and anything else is a
440 Hz tone. FakeTranscriber and FakePromptBackend implement the same
methods as TranscriptionClient and PromptClient and record every call.

RULES:
- Tests never touch the network or need ffmpeg unless they patch it in
- Synthetic audio uses 8 kHz so files stay tiny
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from scribeflow.api.models import TranscriptionResponse
from scribeflow.audio.buffer import AudioBuffer
from scribeflow.config import Settings
from scribeflow.errors import FileSizeError

SAMPLE_RATE = 8000


def tone_buffer(segments: Sequence[Tuple[float, float]], sample_rate: int = SAMPLE_RATE) -> AudioBuffer:
    """Mono buffer made of (seconds, amplitude) segments."""
    parts = []
    for seconds, amplitude in segments:
        n = int(round(seconds * sample_rate))
        if amplitude == 0.0:
            parts.append(np.zeros(n, dtype=np.float32))
        else:
            t = np.arange(n, dtype=np.float32) / sample_rate
            parts.append((amplitude * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32))
    samples = np.concatenate(parts) if parts else np.zeros(0, dtype=np.float32)
    return AudioBuffer(samples, sample_rate, 1)


def make_wav(path: Path, segments: Sequence[Tuple[float, float]], sample_rate: int = SAMPLE_RATE) -> Path:
    return tone_buffer(segments, sample_rate).to_wav(path)


@pytest.fixture
def wav_factory(tmp_path):
    """Write WAV files into tmp_path: wav_factory("a.wav", [(1.0, 0.5)])."""

    def factory(name: str, segments: Sequence[Tuple[float, float]], sample_rate: int = SAMPLE_RATE) -> Path:
        return make_wav(tmp_path / name, segments, sample_rate)

    return factory


@pytest.fixture
def settings():
    """Defaults without the 10s duration gate and with instant retries."""
    return Settings(min_recording_duration_for_removal_s=0.0, retry_delay_s=0.0)


# ---------------------------------------------------------------------------
# Backend doubles
# ---------------------------------------------------------------------------


class FakeTranscriber:
    """Stands in for an entered TranscriptionClient.

    ``responses`` is consumed one item per transcribe() call; an item is
    either the text to return or an exception to raise. When it runs out,
    the chunk file name is returned as the text.
    """

    def __init__(self, responses: Optional[List] = None, hard_limit_bytes: int = 25 * 1024 * 1024) -> None:
        self.responses = list(responses or [])
        self.hard_limit_bytes = hard_limit_bytes
        self.calls: List[Path] = []
        self.on_call: Optional[Callable[[Path], None]] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    def check_size(self, file_path: Path) -> int:
        size = Path(file_path).stat().st_size
        if size > self.hard_limit_bytes:
            raise FileSizeError(size, self.hard_limit_bytes)
        return size

    async def transcribe(self, file_path: Path, prompt: Optional[str] = None) -> TranscriptionResponse:
        self.calls.append(Path(file_path))
        if self.on_call is not None:
            self.on_call(Path(file_path))
        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return TranscriptionResponse(text=item)
        return TranscriptionResponse(text=Path(file_path).stem)


class FakePromptBackend:
    """Stands in for PromptClient; ``reply(model, system, user)`` builds the answer."""

    def __init__(self, reply: Optional[Callable[[str, str, str], str]] = None, fail_times: int = 0, error=None) -> None:
        self.reply = reply or (lambda model, system, user: user)
        self.calls: List[Tuple[str, str, str]] = []
        self.fail_times = fail_times
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    async def complete(self, model: str, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((model, system_prompt, user_prompt))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        return self.reply(model, system_prompt, user_prompt)


@pytest.fixture
def fake_transcriber():
    return FakeTranscriber()


@pytest.fixture
def fake_backend():
    return FakePromptBackend()

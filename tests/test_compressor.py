"""Tests for MP3 compression presets and the ffmpeg wrappers.

WHY: Compression is the alternative to splitting for files slightly over
the limit. Choosing too low a bitrate hurts accuracy; choosing too high a
bitrate produces a file the backend still rejects.

HOW: Preset arithmetic is tested directly. The Compressor and the ffmpeg
helpers run with the subprocess layer patched, so no ffmpeg binary is
needed.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from scribeflow.audio import ffmpeg
from scribeflow.audio.compressor import (
    CompressionPreset,
    CompressionResult,
    Compressor,
    choose_preset,
)
from scribeflow.config import MB
from scribeflow.errors import CapabilityUnavailableError


class TestPresets:
    def test_estimated_size(self):
        # 60s at 64 kbps = 480 KB, plus 10% container overhead
        assert CompressionPreset.HIGH_QUALITY.estimate_output_size(60) == 528_000

    @pytest.mark.parametrize(
        "duration, expected",
        [
            (1800, CompressionPreset.HIGH_QUALITY),
            (3000, CompressionPreset.BALANCED),
            (4000, CompressionPreset.MAXIMUM),
            (5000, CompressionPreset.ULTRA),
            (10_000, CompressionPreset.ULTRA),
        ],
    )
    def test_choose_preset(self, duration, expected):
        assert choose_preset(duration, 20 * MB) == expected

    def test_unknown_duration_is_balanced(self):
        assert choose_preset(None) == CompressionPreset.BALANCED


class TestCompressionResult:
    def test_within_limit_and_summary(self, tmp_path):
        result = CompressionResult(tmp_path / "x.mp3", CompressionPreset.MAXIMUM, 40 * MB, 10 * MB, 20 * MB)
        assert result.within_limit
        assert result.compression_ratio == pytest.approx(4.0)
        assert "still exceeds" not in result.summary()

    def test_over_limit(self, tmp_path):
        result = CompressionResult(tmp_path / "x.mp3", CompressionPreset.ULTRA, 90 * MB, 30 * MB, 20 * MB)
        assert not result.within_limit
        assert "still exceeds limit" in result.summary()


class TestCompressor:
    def test_compress_writes_mp3(self, tmp_path, monkeypatch):
        source = tmp_path / "long.wav"
        source.write_bytes(b"\x00" * 4000)

        async def fake_encode(src, out, kbps, timeout_s=None):
            out.write_bytes(b"\xff" * 1000)
            return out

        monkeypatch.setattr(ffmpeg, "encode_mp3", fake_encode)
        result = asyncio.run(Compressor(target_size=2000).compress(source, tmp_path / "work", duration_s=0.1))
        assert result.path.name == "long_compressed.mp3"
        assert result.preset == CompressionPreset.HIGH_QUALITY
        assert result.compressed_size == 1000
        assert result.within_limit

    def test_empty_output_raises(self, tmp_path, monkeypatch):
        source = tmp_path / "long.wav"
        source.write_bytes(b"\x00" * 4000)
        monkeypatch.setattr(ffmpeg, "encode_mp3", AsyncMock())
        with pytest.raises(ffmpeg.FFmpegError):
            asyncio.run(Compressor().compress(source, tmp_path / "work"))


class TestFFmpegWrappers:
    def test_missing_ffmpeg(self, monkeypatch):
        monkeypatch.setattr(ffmpeg, "ffmpeg_available", lambda: False)
        with pytest.raises(CapabilityUnavailableError):
            asyncio.run(ffmpeg.run_ffmpeg(["-i", "x"]))

    def test_encode_command(self, tmp_path, monkeypatch):
        run = AsyncMock(return_value=(0, "", ""))
        monkeypatch.setattr(ffmpeg, "ffmpeg_available", lambda: True)
        monkeypatch.setattr(ffmpeg, "_run", run)
        asyncio.run(ffmpeg.encode_mp3(tmp_path / "in.wav", tmp_path / "out.mp3", 32))
        command = run.await_args.args[0]
        assert command[:2] == ["ffmpeg", "-y"]
        assert "32k" in command
        assert "libmp3lame" in command

    def test_nonzero_exit_raises(self, tmp_path, monkeypatch):
        monkeypatch.setattr(ffmpeg, "ffmpeg_available", lambda: True)
        monkeypatch.setattr(ffmpeg, "_run", AsyncMock(return_value=(1, "", "Invalid data found")))
        with pytest.raises(ffmpeg.FFmpegError) as exc_info:
            asyncio.run(ffmpeg.extract_segment(tmp_path / "in.mp3", tmp_path / "out.wav", 0.0, 10.0))
        assert "Invalid data found" in str(exc_info.value)

    @pytest.mark.parametrize("stdout, expected", [("123.45\n", 123.45), ("N/A\n", None), ("0\n", None)])
    def test_probe_duration(self, tmp_path, monkeypatch, stdout, expected):
        monkeypatch.setattr(ffmpeg, "ffprobe_available", lambda: True)
        monkeypatch.setattr(ffmpeg, "_run", AsyncMock(return_value=(0, stdout, "")))
        assert asyncio.run(ffmpeg.probe_duration(tmp_path / "a.mp3")) == expected

    def test_probe_without_ffprobe(self, tmp_path, monkeypatch):
        monkeypatch.setattr(ffmpeg, "ffprobe_available", lambda: False)
        assert asyncio.run(ffmpeg.probe_duration(tmp_path / "a.mp3")) is None

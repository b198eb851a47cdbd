"""Tests for pre-flight analysis and strategy selection.

WHY: Picking the wrong strategy either uploads a file the backend will
reject or asks for a tool that is not installed. Format detection by magic
bytes decides whether a file can be split natively at all.

HOW: Small WAV files come from conftest; other containers are faked with
their magic bytes. ffmpeg detection and probing are patched so results do
not depend on the machine running the tests.

RULES:
- ffmpeg is never actually invoked here
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import soundfile as sf

from conftest import SAMPLE_RATE, tone_buffer
from scribeflow.audio import ffmpeg
from scribeflow.audio.preflight import (
    SPLIT,
    PreflightAnalyzer,
    PreflightReport,
    Strategy,
    choose_strategy,
    chunk_count,
    detect_format,
    detect_format_from_header,
    estimate_transcription_time,
    format_duration,
    format_file_size,
    parse_strategy,
)
from scribeflow.config import MB
from scribeflow.errors import CapabilityUnavailableError, ConfigError, FileSizeError, UnreadableFileError


@pytest.fixture
def no_ffmpeg(monkeypatch):
    monkeypatch.setattr(ffmpeg, "ffmpeg_available", lambda: False)
    monkeypatch.setattr(ffmpeg, "probe_duration", AsyncMock(return_value=None))


@pytest.fixture
def with_ffmpeg(monkeypatch):
    monkeypatch.setattr(ffmpeg, "ffmpeg_available", lambda: True)
    monkeypatch.setattr(ffmpeg, "probe_duration", AsyncMock(return_value=600.0))


def _report(fmt="mp3", size=10 * MB, limit=25 * MB, caps=(), pcm=False, duration=600.0):
    return PreflightReport(
        path=Path("rec." + fmt),
        size_bytes=size,
        format=fmt,
        estimated_duration_s=duration,
        exceeds_limit=size > limit,
        capabilities=set(caps),
        is_pcm_wav=pcm,
        hard_limit_bytes=limit,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestFormatDetection:
    @pytest.mark.parametrize(
        "header, expected",
        [
            (b"RIFF\x24\x00\x00\x00WAVE", "wav"),
            (b"ID3\x04\x00\x00\x00\x00\x00\x00\x00\x00", "mp3"),
            (b"\xff\xfb\x90\x00\x00\x00\x00\x00\x00\x00\x00\x00", "mp3"),
            (b"\x00\x00\x00\x20ftypM4A ", "m4a"),
            (b"OggS\x00\x02\x00\x00\x00\x00\x00\x00", "ogg"),
            (b"fLaC\x00\x00\x00\x22\x00\x00\x00\x00", "flac"),
            (b"\x1a\x45\xdf\xa3\x00\x00\x00\x00\x00\x00\x00\x00", "webm"),
            (b"hello world!", None),
        ],
    )
    def test_magic_bytes(self, header, expected):
        assert detect_format_from_header(header) == expected

    def test_magic_bytes_beat_extension(self):
        assert detect_format(Path("actually.mp3"), b"RIFF\x24\x00\x00\x00WAVE") == "wav"

    def test_extension_fallback(self):
        assert detect_format(Path("clip.flac"), b"????????????") == "flac"
        assert detect_format(Path("notes.xyz"), b"????????????") == "unknown"


class TestHumanReadable:
    def test_file_size(self):
        assert format_file_size(512) == "512 bytes"
        assert format_file_size(2048) == "2.0 KB"
        assert format_file_size(30 * MB) == "30.0 MB"

    def test_duration(self):
        assert format_duration(None) == "Unknown"
        assert format_duration(42) == "42s"
        assert format_duration(125) == "2m 5s"
        assert format_duration(3723) == "1h 2m 3s"

    def test_transcription_time(self):
        assert estimate_transcription_time(1) == "1-2 minutes"
        assert estimate_transcription_time(5) == "10-15 minutes"

    def test_chunk_count(self):
        assert chunk_count(100 * MB, 20 * MB) == 5
        assert chunk_count(19 * MB, 20 * MB) == 1
        assert chunk_count(41 * MB, 20 * MB) == 3
        assert chunk_count(0, 20 * MB) == 1


# ---------------------------------------------------------------------------
# PreflightAnalyzer
# ---------------------------------------------------------------------------


class TestPreflightAnalyzer:
    def test_small_wav(self, wav_factory, no_ffmpeg):
        path = wav_factory("short.wav", [(2.0, 0.5)])
        report = asyncio.run(PreflightAnalyzer().analyze(path))
        assert report.format == "wav"
        assert report.is_pcm_wav
        assert report.decodable_wav
        assert report.estimated_duration_s == pytest.approx(2.0)
        assert not report.exceeds_limit
        assert report.capabilities == {Strategy.DIRECT, Strategy.NATIVE_SPLIT}
        assert report.suggested_chunk_count == 1

    def test_oversized_wav(self, wav_factory, no_ffmpeg):
        path = wav_factory("long.wav", [(2.0, 0.5)])  # 32044 bytes
        report = asyncio.run(PreflightAnalyzer(hard_limit_bytes=10_000, target_chunk_bytes=8_000).analyze(path))
        assert report.exceeds_limit
        assert Strategy.DIRECT not in report.capabilities
        assert report.suggested_chunk_count == 5
        assert report.hard_limit_bytes == 10_000

    def test_ffmpeg_adds_capabilities(self, wav_factory, with_ffmpeg):
        path = wav_factory("short.wav", [(1.0, 0.5)])
        report = asyncio.run(PreflightAnalyzer().analyze(path))
        assert {Strategy.DECODER_SPLIT, Strategy.COMPRESS} <= report.capabilities

    def test_float_wav_is_valid_input(self, tmp_path, no_ffmpeg):
        path = tmp_path / "float.wav"
        sf.write(str(path), tone_buffer([(1.0, 0.5)]).samples, SAMPLE_RATE, subtype="FLOAT")
        report = asyncio.run(PreflightAnalyzer().analyze(path))
        assert report.format == "wav"
        assert not report.is_pcm_wav
        assert report.decodable_wav
        assert report.estimated_duration_s == pytest.approx(1.0)
        assert report.capabilities == {Strategy.DIRECT}

    def test_float_wav_splits_with_ffmpeg(self, tmp_path, with_ffmpeg):
        path = tmp_path / "float.wav"
        sf.write(str(path), tone_buffer([(1.0, 0.5)]).samples, SAMPLE_RATE, subtype="FLOAT")
        report = asyncio.run(PreflightAnalyzer().analyze(path))
        assert Strategy.NATIVE_SPLIT not in report.capabilities
        assert {Strategy.DECODER_SPLIT, Strategy.COMPRESS} <= report.capabilities

    def test_unparsable_wav_raises(self, tmp_path, no_ffmpeg):
        path = tmp_path / "broken.wav"
        path.write_bytes(b"RIFF\x00\x00\x00\x00WAVEjunkjunkjunk")
        with pytest.raises(UnreadableFileError):
            asyncio.run(PreflightAnalyzer().analyze(path))

    def test_missing_file_raises(self, tmp_path, no_ffmpeg):
        with pytest.raises(UnreadableFileError):
            asyncio.run(PreflightAnalyzer().analyze(tmp_path / "nope.wav"))

    def test_mp3_duration_estimated_without_probe(self, tmp_path, no_ffmpeg):
        path = tmp_path / "talk.mp3"
        path.write_bytes(b"ID3" + b"\x00" * 15997)
        report = asyncio.run(PreflightAnalyzer().analyze(path))
        assert report.format == "mp3"
        assert not report.is_pcm_wav
        assert report.estimated_duration_s == pytest.approx(16000 * 8 / 128_000)
        assert report.capabilities == {Strategy.DIRECT}

    def test_mp3_duration_probed_with_ffmpeg(self, tmp_path, with_ffmpeg):
        path = tmp_path / "talk.mp3"
        path.write_bytes(b"ID3" + b"\x00" * 100)
        report = asyncio.run(PreflightAnalyzer().analyze(path))
        assert report.estimated_duration_s == 600.0

    def test_unknown_format(self, tmp_path, no_ffmpeg):
        path = tmp_path / "mystery.bin"
        path.write_bytes(b"\x00" * 64)
        report = asyncio.run(PreflightAnalyzer().analyze(path))
        assert report.format == "unknown"
        assert report.estimated_duration_s is None
        assert report.formatted_duration == "Unknown"


# ---------------------------------------------------------------------------
# Strategy selection
# ---------------------------------------------------------------------------


class TestChooseStrategy:
    def test_direct_when_within_limit(self):
        report = _report(caps=[Strategy.DIRECT])
        assert choose_strategy(report) == Strategy.DIRECT

    def test_native_split_for_oversized_wav(self):
        report = _report(fmt="wav", size=100 * MB, caps=[Strategy.NATIVE_SPLIT, Strategy.DECODER_SPLIT], pcm=True)
        assert choose_strategy(report) == Strategy.NATIVE_SPLIT

    def test_decoder_split_for_oversized_mp3(self):
        report = _report(size=100 * MB, caps=[Strategy.DECODER_SPLIT, Strategy.COMPRESS])
        assert choose_strategy(report) == Strategy.DECODER_SPLIT

    def test_oversized_without_mitigation_raises(self, no_ffmpeg):
        report = _report(size=100 * MB, caps=[])
        with pytest.raises(FileSizeError) as exc_info:
            choose_strategy(report)
        assert "without ffmpeg" in str(exc_info.value)

    def test_requested_direct_on_oversized_raises(self):
        report = _report(fmt="wav", size=100 * MB, caps=[Strategy.NATIVE_SPLIT], pcm=True)
        with pytest.raises(FileSizeError):
            choose_strategy(report, Strategy.DIRECT)

    def test_requested_compress_without_ffmpeg(self, no_ffmpeg):
        report = _report(caps=[Strategy.DIRECT])
        with pytest.raises(CapabilityUnavailableError):
            choose_strategy(report, Strategy.COMPRESS)

    def test_requested_native_split_on_mp3(self, no_ffmpeg):
        report = _report(caps=[Strategy.DIRECT])
        with pytest.raises(CapabilityUnavailableError):
            choose_strategy(report, Strategy.NATIVE_SPLIT)

    def test_split_request_picks_available_split(self):
        wav = _report(fmt="wav", caps=[Strategy.DIRECT, Strategy.NATIVE_SPLIT], pcm=True)
        mp3 = _report(caps=[Strategy.DIRECT, Strategy.DECODER_SPLIT, Strategy.COMPRESS])
        assert choose_strategy(wav, SPLIT) == Strategy.NATIVE_SPLIT
        assert choose_strategy(mp3, SPLIT) == Strategy.DECODER_SPLIT

    def test_split_request_without_any_split(self):
        with pytest.raises(CapabilityUnavailableError):
            choose_strategy(_report(caps=[Strategy.DIRECT]), SPLIT)

    def test_requested_strategy_honored(self):
        report = _report(size=100 * MB, caps=[Strategy.DECODER_SPLIT, Strategy.COMPRESS])
        assert choose_strategy(report, Strategy.COMPRESS) == Strategy.COMPRESS


class TestParseStrategy:
    def test_names(self):
        assert parse_strategy(None) is None
        assert parse_strategy("auto") is None
        assert parse_strategy("split") == SPLIT
        assert parse_strategy("compress") == Strategy.COMPRESS
        assert parse_strategy("native_split") == Strategy.NATIVE_SPLIT

    def test_unknown_name(self):
        with pytest.raises(ConfigError):
            parse_strategy("shrink")

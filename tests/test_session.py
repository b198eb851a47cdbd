"""End-to-end tests for the session controller.

WHY: The session is where analysis, silence removal, splitting,
transcription and post-processing meet. These tests follow real files
through that whole path with only the remote backends replaced.

HOW: Synthetic WAV files from conftest; FakeTranscriber answers with the
uploaded file's stem so each test can see exactly which files reached the
backend. ffmpeg is reported missing unless a test patches it in.

RULES:
- Work directories are removed after every run unless kept explicitly
- A cancelled run does not start a history session
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
import soundfile as sf

from conftest import SAMPLE_RATE, FakePromptBackend, FakeTranscriber, tone_buffer
from scribeflow.audio import ffmpeg
from scribeflow.audio.preflight import SPLIT, Strategy
from scribeflow.audio.silence import ALL_SILENT_WARNING
from scribeflow.core.events import (
    AnalysisComplete,
    ChunkProgress,
    ErrorEvent,
    ListEventSink,
    QueueEventSink,
    TranscriptionComplete,
    Warning,
)
from scribeflow.core.session import Session
from scribeflow.errors import BackendError, FileSizeError, PartialFailure, UnreadableFileError
from scribeflow.pipeline.executor import PipelineExecutor
from scribeflow.pipeline.models import Pipeline, PromptUnit, TextReplacementUnit, UnitLibrary


@pytest.fixture(autouse=True)
def no_ffmpeg(monkeypatch):
    monkeypatch.setattr(ffmpeg, "ffmpeg_available", lambda: False)
    monkeypatch.setattr(ffmpeg, "probe_duration", AsyncMock(return_value=None))


@pytest.fixture
def small_limits(settings):
    # 3s of 8 kHz mono 16-bit audio is 48044 bytes: four 16000-byte chunks
    return settings.with_overrides(
        silence_removal_enabled=False, target_chunk_bytes=16_000, hard_limit_bytes=20_000
    )


def _transcribe(session, path, requested=None):
    return asyncio.run(session.transcribe_file(path, requested))


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------


class TestTranscribeFile:
    def test_direct_upload(self, wav_factory, settings):
        path = wav_factory("memo.wav", [(2.0, 0.5)])
        transcriber = FakeTranscriber(["Hello there."])
        events = ListEventSink()
        session = Session(settings, transcriber, events=events)
        outcome = _transcribe(session, path)
        assert outcome.text == "Hello there."
        assert outcome.strategy == Strategy.DIRECT
        assert transcriber.calls == [path]
        assert outcome.recording_id == session.history.recording_id
        assert events.of_type(AnalysisComplete)[0].strategy == "direct"
        assert events.of_type(TranscriptionComplete) == [TranscriptionComplete(text="Hello there.")]

    def test_silence_removed_before_upload(self, wav_factory, settings):
        path = wav_factory("talk.wav", [(1.0, 0.5), (3.0, 0.0), (1.0, 0.5)])
        transcriber = FakeTranscriber()
        outcome = _transcribe(Session(settings, transcriber), path)
        assert outcome.silence.applied
        assert outcome.silence.new_duration_s == pytest.approx(2.0)
        assert outcome.text == "talk_nosilence"

    def test_float_wav_is_accepted(self, tmp_path, settings):
        path = tmp_path / "talk.wav"
        buffer = tone_buffer([(1.0, 0.5), (3.0, 0.0), (1.0, 0.5)])
        sf.write(str(path), buffer.samples, SAMPLE_RATE, subtype="FLOAT")
        transcriber = FakeTranscriber()
        outcome = _transcribe(Session(settings, transcriber), path)
        assert outcome.silence.applied
        assert outcome.silence.new_duration_s == pytest.approx(2.0)
        assert outcome.text == "talk_nosilence"

    def test_start_streams_events(self, wav_factory, settings):
        path = wav_factory("memo.wav", [(1.0, 0.5)])

        async def run():
            events = QueueEventSink()
            session = Session(settings, FakeTranscriber(["hi"]), events=events)
            outcome, execution = await session.start(path)
            return outcome, execution, events.drain()

        outcome, execution, events = asyncio.run(run())
        assert outcome.text == "hi"
        assert execution is None
        assert [type(e) for e in events] == [AnalysisComplete, ChunkProgress, TranscriptionComplete]
        assert events[0].chunk_count == 1

    def test_split_reports_chunk_count(self, wav_factory, small_limits):
        path = wav_factory("long.wav", [(3.0, 0.5)])
        events = ListEventSink()
        _transcribe(Session(small_limits, FakeTranscriber(), events=events), path)
        assert events.of_type(AnalysisComplete)[0].chunk_count == 4

    def test_silence_removal_disabled(self, wav_factory, settings):
        path = wav_factory("talk.wav", [(1.0, 0.5), (3.0, 0.0), (1.0, 0.5)])
        transcriber = FakeTranscriber()
        outcome = _transcribe(Session(settings.with_overrides(silence_removal_enabled=False), transcriber), path)
        assert outcome.silence is None
        assert transcriber.calls == [path]

    def test_all_silent_recording_warns(self, wav_factory, settings):
        path = wav_factory("quiet.wav", [(3.0, 0.0)])
        events = ListEventSink()
        outcome = _transcribe(Session(settings, FakeTranscriber(["."]), events=events), path)
        assert ALL_SILENT_WARNING in outcome.warnings
        assert events.of_type(Warning)[0].details == {"all_below_threshold": True}

    def test_native_split_merges_in_order(self, wav_factory, small_limits):
        path = wav_factory("long.wav", [(3.0, 0.5)])
        transcriber = FakeTranscriber()
        events = ListEventSink()
        outcome = _transcribe(Session(small_limits, transcriber, events=events), path)
        assert outcome.strategy == Strategy.NATIVE_SPLIT
        assert outcome.text == "chunk_01_long chunk_02_long chunk_03_long chunk_04_long"
        assert len(events.of_type(ChunkProgress)) == 4

    def test_forced_split_on_small_file(self, wav_factory, settings):
        path = wav_factory("memo.wav", [(1.0, 0.5)])
        outcome = _transcribe(Session(settings, FakeTranscriber()), path, SPLIT)
        assert outcome.strategy == Strategy.NATIVE_SPLIT
        assert outcome.text == "chunk_01_memo"

    def test_work_dir_removed(self, wav_factory, small_limits):
        path = wav_factory("long.wav", [(3.0, 0.5)])
        transcriber = FakeTranscriber()
        _transcribe(Session(small_limits, transcriber), path)
        assert transcriber.calls
        assert not any(p.exists() for p in transcriber.calls)
        assert path.exists()

    def test_keep_intermediate_files(self, wav_factory, small_limits):
        path = wav_factory("long.wav", [(3.0, 0.5)])
        transcriber = FakeTranscriber()
        _transcribe(Session(small_limits.with_overrides(keep_intermediate_files=True), transcriber), path)
        assert all(p.exists() for p in transcriber.calls)

    def test_compress_strategy(self, wav_factory, settings, monkeypatch):
        monkeypatch.setattr(ffmpeg, "ffmpeg_available", lambda: True)

        async def fake_encode(src, out, kbps, timeout_s=None):
            out.write_bytes(b"\xff" * 500)
            return out

        monkeypatch.setattr(ffmpeg, "encode_mp3", fake_encode)
        path = wav_factory("long.wav", [(2.0, 0.5)])
        outcome = _transcribe(
            Session(settings.with_overrides(silence_removal_enabled=False), FakeTranscriber()), path, Strategy.COMPRESS
        )
        assert outcome.strategy == Strategy.COMPRESS
        assert outcome.compression.within_limit
        assert outcome.text == "long_compressed"

    def test_cancel_keeps_finished_chunks(self, wav_factory, small_limits):
        path = wav_factory("long.wav", [(3.0, 0.5)])
        transcriber = FakeTranscriber()
        session = Session(small_limits, transcriber)
        transcriber.on_call = lambda p: session.cancel()
        outcome = _transcribe(session, path)
        assert outcome.cancelled
        assert outcome.text == "chunk_01_long"
        assert outcome.recording_id is None
        assert not session.history.has_active_session

    def test_some_chunks_failed(self, wav_factory, small_limits):
        path = wav_factory("long.wav", [(3.0, 0.5)])
        transcriber = FakeTranscriber(["one", BackendError(400, "bad"), "three", "four"])
        events = ListEventSink()
        outcome = _transcribe(Session(small_limits, transcriber, events=events), path)
        assert outcome.failed_indices == [1]
        assert outcome.text == "one three four"
        assert any("partial transcript" in w for w in outcome.warnings)
        assert events.of_type(Warning)[0].details == {"kind": PartialFailure.kind, "failed_indices": [1]}
        assert not events.of_type(ErrorEvent)

    def test_every_chunk_failed(self, wav_factory, settings):
        path = wav_factory("memo.wav", [(1.0, 0.5)])
        events = ListEventSink()
        session = Session(settings, FakeTranscriber([BackendError(400, "rejected")]), events=events)
        with pytest.raises(BackendError) as exc_info:
            _transcribe(session, path)
        assert exc_info.value.status_code == 400
        assert "rejected" in exc_info.value.message
        assert events.of_type(ErrorEvent)[0].kind == BackendError.kind

    def test_every_chunk_failed_reports_last_error(self, wav_factory, small_limits):
        path = wav_factory("long.wav", [(3.0, 0.5)])
        errors = [BackendError(400, "bad"), BackendError(400, "bad"), BackendError(400, "bad"), BackendError(413, "too big")]
        with pytest.raises(BackendError) as exc_info:
            _transcribe(Session(small_limits, FakeTranscriber(errors)), path)
        assert exc_info.value.status_code == 413
        assert "all 4 chunk(s) failed" in exc_info.value.message
        assert "too big" in exc_info.value.message

    def test_oversized_mp3_without_ffmpeg(self, tmp_path, settings):
        # MP3 can only be split with a decoder
        path = tmp_path / "long.mp3"
        path.write_bytes(b"ID3" + b"\x00" * 30_000)
        session = Session(settings.with_overrides(target_chunk_bytes=10_000, hard_limit_bytes=20_000), FakeTranscriber())
        with pytest.raises(FileSizeError):
            _transcribe(session, path)

    def test_missing_file(self, tmp_path, settings):
        events = ListEventSink()
        with pytest.raises(UnreadableFileError):
            _transcribe(Session(settings, FakeTranscriber(), events=events), tmp_path / "gone.wav")
        assert events.of_type(ErrorEvent)[0].kind == UnreadableFileError.kind


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------


def _executor():
    fix = TextReplacementUnit(name="Fix", pattern="teh", replacement="the")
    shout = PromptUnit(name="Shout", provider="openai", model="m", system_prompt="Uppercase.")
    library = UnitLibrary([fix, shout])
    backend = FakePromptBackend(reply=lambda model, system, user: user.upper())
    executor = PipelineExecutor(library, {"openai": backend})
    return executor, Pipeline.of("Cleanup", [fix]), Pipeline.of("Loud", [fix, shout])


class TestRunPipeline:
    def test_history_keeps_previous_result(self, settings):
        executor, cleanup, loud = _executor()
        session = Session(settings, None, executor=executor)
        asyncio.run(session.run_pipeline(cleanup, text="teh plan"))
        result = asyncio.run(session.run_pipeline(loud))
        assert result.output == "THE PLAN"
        assert session.history.current.pipeline_name == "Loud"
        assert [r.result_text for r in session.history.results] == ["the plan"]

    def test_every_run_starts_from_transcript(self, settings):
        executor, cleanup, loud = _executor()
        session = Session(settings, None, executor=executor)
        asyncio.run(session.run_pipeline(loud, text="teh plan"))
        result = asyncio.run(session.run_pipeline(cleanup))
        assert result.output == "the plan"

    def test_needs_transcript(self, settings):
        executor, cleanup, _ = _executor()
        with pytest.raises(ValueError):
            asyncio.run(Session(settings, None, executor=executor).run_pipeline(cleanup))

    def test_needs_executor(self, settings):
        with pytest.raises(ValueError):
            asyncio.run(Session(settings, None).run_pipeline(Pipeline(name="p"), text="x"))

    def test_process_transcribes_then_runs(self, wav_factory, settings):
        executor, cleanup, _ = _executor()
        path = wav_factory("memo.wav", [(1.0, 0.5)])
        session = Session(settings, FakeTranscriber(["teh memo"]), executor=executor)
        outcome, result = asyncio.run(session.process(path, cleanup))
        assert outcome.text == "teh memo"
        assert result.output == "the memo"
        assert session.history.current.result_text == "the memo"

    def test_session_events_reach_executor(self, settings):
        executor, cleanup, _ = _executor()
        events = ListEventSink()
        Session(settings, None, executor=executor, events=events)
        assert executor.events is events

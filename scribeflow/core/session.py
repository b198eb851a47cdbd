"""Session controller: from an audio file to a processed result.

WHY: Pre-flight analysis, silence removal, size mitigation, chunked
transcription and post-processing each live in their own module. Something
has to run them in the right order, keep temporary files under control,
route errors to the caller as events, and own the execution history.

HOW: Session.transcribe_file() analyzes the file, picks one strategy,
optionally strips silence (WAV only, in a worker thread), compresses or
splits when needed, then hands the resulting files to the dispatcher.
Session.run_pipeline() executes a pipeline over the session's transcript
and records the result in ExecutionHistory. start() wraps process() in an
asyncio.Task so callers can cancel and consume events from a queue while
it runs.

RULES:
- Every terminal ScribeflowError is emitted as ErrorEvent before it propagates
- Intermediate files live in one work directory, deleted at the end unless
  settings.keep_intermediate_files
- Cancellation is cooperative; a cancelled transcription keeps the text of
  chunks finished before it and does not start a new history session
- ExecutionHistory is written only from here
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from scribeflow.audio.chunking import cleanup_chunks, extractor_for, plan_chunks, planning_size
from scribeflow.audio.compressor import CompressionResult, Compressor
from scribeflow.audio.preflight import (
    PreflightAnalyzer,
    PreflightReport,
    Strategy,
    choose_strategy,
)
from scribeflow.audio.silence import SilenceRemovalResult, remove_silence_from_file
from scribeflow.config import Settings
from scribeflow.core.dispatcher import DispatchResult, TranscriptionDispatcher
from scribeflow.core.events import (
    AnalysisComplete,
    ErrorEvent,
    EventSink,
    NullEventSink,
    TranscriptionComplete,
)
from scribeflow.core.events import Warning as WarningEvent
from scribeflow.errors import BackendError, PartialFailure, ScribeflowError, UnreadableFileError
from scribeflow.pipeline.executor import ExecutionResult, PipelineExecutor
from scribeflow.pipeline.history import ExecutionHistory
from scribeflow.pipeline.models import Pipeline

logger = logging.getLogger(__name__)


def _is_split(strategy: Strategy) -> bool:
    return strategy in (Strategy.NATIVE_SPLIT, Strategy.DECODER_SPLIT)


def _all_chunks_failed(dispatch: DispatchResult) -> ScribeflowError:
    """The error to raise when no chunk produced text: the last chunk's cause."""
    count = len(dispatch.chunk_results)
    last = dispatch.chunk_results[-1].exception
    if isinstance(last, BackendError):
        return BackendError(
            last.status_code,
            "all {} chunk(s) failed; last error: {}".format(count, last.message),
            transient=last.transient,
        )
    if last is not None:
        return last
    return BackendError(0, "all {} chunk(s) failed".format(count))


@dataclass
class TranscriptionOutcome:
    """Everything known about one finished (or cancelled) transcription."""

    text: str
    report: PreflightReport
    strategy: Strategy
    dispatch: DispatchResult
    silence: Optional[SilenceRemovalResult] = None
    compression: Optional[CompressionResult] = None
    recording_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.dispatch.cancelled

    @property
    def failed_indices(self) -> List[int]:
        return self.dispatch.failed_indices


class Session:
    """Runs transcriptions and pipelines for one user.

    ``transcriber`` is an entered TranscriptionClient (or a test double);
    ``executor`` may be None when no post-processing is configured.
    """

    def __init__(
        self,
        settings: Settings,
        transcriber,
        executor: PipelineExecutor | None = None,
        events: EventSink | None = None,
        history: ExecutionHistory | None = None,
    ) -> None:
        self.settings = settings
        self.transcriber = transcriber
        self.executor = executor
        self.events = events if events is not None else NullEventSink()
        self.history = history if history is not None else ExecutionHistory()
        self.cancel_event = asyncio.Event()
        if executor is not None and isinstance(executor.events, NullEventSink):
            executor.events = self.events

    def cancel(self) -> None:
        self.cancel_event.set()

    def _cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _warn(self, message: str, warnings: List[str], **details) -> None:
        logger.warning(message)
        warnings.append(message)
        self.events.emit(WarningEvent(message=message, details=details))

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------

    def start(self, path: Path, pipeline: Pipeline | None = None, requested=None) -> asyncio.Task:
        """Run process() as a task on the running loop.

        Callers consume events (typically from a QueueEventSink) while the
        task runs and stop it cooperatively with cancel().
        """
        return asyncio.ensure_future(self.process(path, pipeline, requested))

    async def transcribe_file(self, path: Path, requested=None) -> TranscriptionOutcome:
        """Transcribe one audio file end to end.

        ``requested`` is a Strategy, preflight.SPLIT or None; see
        choose_strategy().

        Raises:
            UnreadableFileError, FileSizeError, CapabilityUnavailableError:
                The file cannot be handled with the requested strategy.
            BackendError: Every chunk failed, so there is no transcript; it
                carries the last chunk's status code and message.
        """
        try:
            return await self._transcribe_file(Path(path), requested)
        except ScribeflowError as exc:
            logger.error("Transcription of %s failed: %s", Path(path).name, exc)
            self.events.emit(ErrorEvent(kind=exc.kind, message=str(exc)))
            raise

    async def _transcribe_file(self, path: Path, requested) -> TranscriptionOutcome:
        settings = self.settings
        analyzer = PreflightAnalyzer(settings.hard_limit_bytes, settings.target_chunk_bytes)
        report = await analyzer.analyze(path)
        strategy = choose_strategy(report, requested)
        warnings: List[str] = []

        work_dir = Path(tempfile.mkdtemp(prefix="scribeflow_"))
        try:
            source = path
            silence = None
            if settings.silence_removal_enabled:
                if report.decodable_wav:
                    source, silence = await asyncio.to_thread(
                        remove_silence_from_file, path, settings, work_dir
                    )
                    for message in silence.warnings:
                        self._warn(message, warnings, all_below_threshold=silence.all_below_threshold)
                    if silence.applied:
                        # The shortened file may now fit without splitting
                        report = await analyzer.analyze(source)
                        strategy = choose_strategy(report, requested)
                else:
                    logger.info("Silence removal needs WAV input; skipped for %s", report.format)

            self.events.emit(
                AnalysisComplete(
                    format=report.format,
                    size_bytes=report.size_bytes,
                    duration_s=report.estimated_duration_s,
                    exceeds_limit=report.exceeds_limit,
                    strategy=strategy.value,
                    chunk_count=report.suggested_chunk_count if _is_split(strategy) else 1,
                )
            )

            compression = None
            chunks: List[Path]
            if strategy == Strategy.DIRECT:
                chunks = [source]
            elif strategy == Strategy.COMPRESS:
                compression = await Compressor(settings.target_chunk_bytes).compress(
                    source, work_dir, report.estimated_duration_s
                )
                if compression.within_limit:
                    chunks = [compression.path]
                else:
                    self._warn(
                        "Compressed file still exceeds the size limit; splitting it", warnings
                    )
                    chunks = await self._split(
                        compression.path,
                        compression.compressed_size,
                        report.estimated_duration_s,
                        Strategy.DECODER_SPLIT,
                        work_dir,
                    )
            else:
                chunks = await self._split(
                    source, report.size_bytes, report.estimated_duration_s, strategy, work_dir
                )

            dispatcher = TranscriptionDispatcher(
                self.transcriber,
                max_attempts=settings.max_attempts,
                retry_delay_s=settings.retry_delay_s,
                events=self.events,
            )
            if self._cancelled():
                dispatch = DispatchResult(text="", cancelled=True)
            else:
                dispatch = await dispatcher.transcribe(chunks, self.cancel_event)
        finally:
            self._cleanup(work_dir)

        outcome = TranscriptionOutcome(
            text=dispatch.text,
            report=report,
            strategy=strategy,
            dispatch=dispatch,
            silence=silence,
            compression=compression,
            warnings=warnings,
        )

        if dispatch.cancelled:
            logger.info("Transcription cancelled; %d chunk(s) completed", len(dispatch.chunk_results))
            return outcome

        if dispatch.failed_indices:
            if len(dispatch.failed_indices) == len(dispatch.chunk_results):
                raise _all_chunks_failed(dispatch)
            try:
                dispatch.raise_for_partial()
            except PartialFailure as exc:
                # Partial text is still delivered; the failure becomes a warning
                self._warn(str(exc), warnings, kind=exc.kind, failed_indices=exc.failed_indices)

        outcome.recording_id = self.history.start_new_session(dispatch.text)
        self.events.emit(
            TranscriptionComplete(text=dispatch.text, failed_indices=tuple(dispatch.failed_indices))
        )
        return outcome

    async def _split(
        self,
        source: Path,
        size_bytes: int,
        duration_s: float | None,
        strategy: Strategy,
        work_dir: Path,
    ) -> List[Path]:
        if duration_s is None:
            raise UnreadableFileError(
                "Cannot split {}: its duration could not be determined".format(source.name)
            )
        plan = plan_chunks(
            planning_size(strategy, size_bytes, duration_s),
            duration_s,
            self.settings.target_chunk_bytes,
            self.settings.chunk_overlap_s,
        )
        extractor = extractor_for(strategy)
        logger.info("Splitting %s into %d chunk(s) with the %s extractor", source.name, len(plan), extractor.name)
        return await extractor.extract(source, plan, work_dir / "chunks", self.cancel_event)

    def _cleanup(self, work_dir: Path) -> None:
        if self.settings.keep_intermediate_files:
            logger.info("Keeping intermediate files in %s", work_dir)
            return
        chunk_dir = work_dir / "chunks"
        if chunk_dir.exists():
            cleanup_chunks(sorted(chunk_dir.iterdir()))
        shutil.rmtree(work_dir, ignore_errors=True)

    # ------------------------------------------------------------------
    # Post-processing
    # ------------------------------------------------------------------

    async def run_pipeline(self, pipeline: Pipeline, text: str | None = None) -> ExecutionResult:
        """Run ``pipeline`` over the session transcript and record the result.

        ``text`` starts a new history session when given; otherwise the
        current session's original transcript is used.

        Raises:
            ValueError: No executor is configured or there is no transcript.
            UnresolvedUnitError, PatternError, PipelineExecutionError,
            ConfigError: Propagated from the executor.
        """
        if self.executor is None:
            raise ValueError("No pipeline executor configured for this session")
        if text is not None:
            self.history.start_new_session(text)
        if not self.history.has_active_session:
            raise ValueError("No transcript available; transcribe a file first")

        source_text = self.history.original_text or ""
        self.history.begin_run()
        try:
            result = await self.executor.execute(source_text, pipeline, self.cancel_event)
        except ScribeflowError as exc:
            logger.error("Pipeline '%s' failed: %s", pipeline.name, exc)
            self.events.emit(ErrorEvent(kind=exc.kind, message=str(exc)))
            raise

        if not result.cancelled:
            self.history.complete_run(pipeline.id, pipeline.name, result.output, result.duration_s)
        return result

    async def process(
        self, path: Path, pipeline: Pipeline | None = None, requested=None
    ) -> tuple:
        """Transcribe ``path`` and, if given, run ``pipeline`` on the result.

        Returns ``(outcome, execution_result_or_None)``.
        """
        outcome = await self.transcribe_file(path, requested)
        if pipeline is None or outcome.cancelled or self._cancelled():
            return outcome, None
        return outcome, await self.run_pipeline(pipeline)

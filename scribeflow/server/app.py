"""FastAPI application exposing transcription jobs over HTTP.

WHY: Other tools (scripts, automation platforms, a future UI) need to submit
recordings, watch progress, cancel long runs and re-process a transcript
with different pipelines without shelling out to the CLI.

HOW: POST /jobs stores the upload in a job directory and schedules a
background task that runs a Session over it. Session events are folded
into the job's status and progress fields, which GET /jobs/{id} returns.
Pipelines come from the JSON library named by SCRIBEFLOW_LIBRARY and can be
re-run against a finished job's transcript; each run lands in that job's
ExecutionHistory.

RULES:
- Error responses use the ErrorResponse schema
- Background work runs through BackgroundTasks with asyncio.run()
- Cancellation is cooperative: the runner polls the job's cancel flag
- File validation checks the extension against SUPPORTED_EXTENSIONS
- A pipeline can only run on a job that has a transcript and is not busy
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, List, Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import Response

from scribeflow import __version__
from scribeflow.api.client import PromptClient, TranscriptionClient
from scribeflow.audio import ffmpeg
from scribeflow.audio.preflight import parse_strategy
from scribeflow.config import SUPPORTED_EXTENSIONS, Settings
from scribeflow.core.events import (
    AnalysisComplete,
    CallbackEventSink,
    ChunkProgress,
    ErrorEvent,
    UnitProgress,
)
from scribeflow.core.events import Warning as WarningEvent
from scribeflow.core.session import Session
from scribeflow.errors import ConfigError, PipelineExecutionError, ScribeflowError
from scribeflow.pipeline.executor import PipelineExecutor
from scribeflow.pipeline.library import PipelineLibrary, load_library
from scribeflow.pipeline.models import Pipeline, PromptUnit
from scribeflow.server.jobs import Job, JobStatus, JobStore
from scribeflow.server.models import (
    ErrorResponse,
    HealthResponse,
    HistoryEntry,
    HistoryResponse,
    JobCreatedResponse,
    JobResponse,
    PipelineInfo,
    PipelineRunRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_LIBRARY = "pipelines.json"
CANCEL_POLL_S = 0.2

# ---------------------------------------------------------------------------
# App and store setup
# ---------------------------------------------------------------------------

job_store = JobStore()


async def _periodic_cleanup() -> None:
    """Run job cleanup every 5 minutes."""
    while True:
        await asyncio.sleep(300)
        job_store.cleanup_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(_periodic_cleanup())
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


app = FastAPI(
    lifespan=lifespan,
    title="scribeflow API",
    description=(
        "Submit audio for transcription through an OpenAI-compatible backend, "
        "poll progress, cancel, and post-process transcripts with configured "
        "pipelines."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _library_path() -> Path:
    return Path(os.getenv("SCRIBEFLOW_LIBRARY", DEFAULT_LIBRARY))


def _load_library() -> PipelineLibrary:
    """Load the pipeline library; a missing file means an empty library."""
    path = _library_path()
    if not path.exists():
        return PipelineLibrary()
    try:
        return load_library(path)
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail="Invalid pipeline library: {}".format(exc))


def _find_pipeline(library: PipelineLibrary, key: str) -> Pipeline:
    pipeline = library.find_pipeline(key)
    if pipeline is None:
        raise HTTPException(status_code=404, detail="Pipeline not found: {}".format(key))
    return pipeline


def _get_job_or_404(job_id: str) -> Job:
    job = job_store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found: {}".format(job_id))
    return job


def _job_to_response(job: Job) -> JobResponse:
    return JobResponse(
        id=job.id,
        status=job.status.value,
        filename=job.filename,
        created_at=job.created_at,
        config=job.config,
        strategy=job.strategy,
        progress=job.progress,
        transcript=job.transcript,
        result=job.result_text,
        warnings=list(job.warnings),
        error=job.error,
        error_kind=job.error_kind,
    )


def _validate_file_extension(filename: str) -> None:
    ext = Path(filename).suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail="Unsupported file type '{}'. Supported formats: {}".format(
                ext, ", ".join(sorted(SUPPORTED_EXTENSIONS))
            ),
        )


def _settings_for(config: dict) -> Settings:
    overrides = {}
    if config.get("silence_removal") is not None:
        overrides["silence_removal_enabled"] = config["silence_removal"]
    if config.get("overlap_s") is not None:
        overrides["chunk_overlap_s"] = config["overlap_s"]
    if config.get("language"):
        overrides["transcription_language"] = config["language"]
    settings = Settings.from_env()
    return settings.with_overrides(**overrides) if overrides else settings


def _make_transcriber(settings: Settings) -> TranscriptionClient:
    return TranscriptionClient(
        provider=settings.transcription_provider,
        model=settings.transcription_model,
        language=settings.transcription_language,
        hard_limit_bytes=settings.hard_limit_bytes,
    )


def _make_prompt_backend(provider: str) -> PromptClient:
    return PromptClient(provider=provider)


# ---------------------------------------------------------------------------
# Background runners
# ---------------------------------------------------------------------------


def _event_recorder(store: JobStore, job_id: str):
    """Fold session events into the job's status and progress fields."""

    def record(event) -> None:
        job = store.get_job(job_id)
        if job is None:
            return
        if isinstance(event, AnalysisComplete):
            store.update_job(
                job_id,
                status=JobStatus.TRANSCRIBING,
                strategy=event.strategy,
                progress={"stage": "transcribing", "chunk": 0, "total": None},
            )
        elif isinstance(event, ChunkProgress):
            store.update_job(
                job_id,
                progress={"stage": "transcribing", "chunk": event.index + 1, "total": event.total},
            )
        elif isinstance(event, UnitProgress):
            store.update_job(
                job_id,
                progress={"stage": "processing", "unit": event.name, "step": event.index, "total": event.total},
            )
        elif isinstance(event, WarningEvent):
            store.update_job(job_id, warnings=job.warnings + [event.message])
        elif isinstance(event, ErrorEvent):
            store.update_job(job_id, error_kind=event.kind)

    return record


def _mark_failed(store: JobStore, job_id: str, exc: ScribeflowError) -> None:
    """Fail the job, keeping the last good pipeline text when there is one."""
    partial = exc.last_good_text if isinstance(exc, PipelineExecutionError) else None
    store.update_job(
        job_id, status=JobStatus.FAILED, error=str(exc), error_kind=exc.kind, result_text=partial
    )


async def _watch_cancel(job: Job, session: Session) -> None:
    while not job.cancel_requested.is_set():
        await asyncio.sleep(CANCEL_POLL_S)
    session.cancel()


async def _build_executor(
    stack: contextlib.AsyncExitStack,
    library: PipelineLibrary,
    pipeline: Pipeline,
    optimize: bool,
    events,
) -> PipelineExecutor:
    providers = {u.provider for u in library.units.resolve(pipeline) if isinstance(u, PromptUnit)}
    backends = {}
    for provider in sorted(providers):
        backends[provider] = await stack.enter_async_context(_make_prompt_backend(provider))
    return PipelineExecutor(library.units, backends, optimize=optimize, events=events)


async def _run_job(
    job_id: str,
    store: JobStore,
    library: Optional[PipelineLibrary] = None,
) -> None:
    """Transcribe a job's upload and run its pipeline, if one was requested.

    RULES:
    - Status moves pending -> analyzing -> transcribing [-> processing] -> completed
    - Cancellation ends in 'cancelled' and keeps any partial transcript
    - Every exception marks the job failed
    """
    job = store.get_job(job_id)
    if job is None:
        return

    config = job.config
    watcher = None
    try:
        settings = _settings_for(config)
        requested = parse_strategy(config.get("strategy"))
        pipeline = None
        if config.get("pipeline") and library is not None:
            pipeline = library.find_pipeline(config["pipeline"])
            if pipeline is None:
                raise ConfigError("Pipeline '{}' not found".format(config["pipeline"]))

        store.update_job(job_id, status=JobStatus.ANALYZING, progress={"stage": "analyzing"})
        events = CallbackEventSink(_event_recorder(store, job_id))

        async with contextlib.AsyncExitStack() as stack:
            transcriber = await stack.enter_async_context(_make_transcriber(settings))
            executor = None
            if pipeline is not None:
                executor = await _build_executor(
                    stack, library, pipeline, config.get("optimize", True), events
                )
            session = Session(settings, transcriber, executor=executor, events=events, history=job.history)
            watcher = asyncio.ensure_future(_watch_cancel(job, session))

            outcome = await session.transcribe_file(job.upload_path, requested)
            store.update_job(job_id, transcript=outcome.text, strategy=outcome.strategy.value)
            if outcome.cancelled:
                store.update_job(job_id, status=JobStatus.CANCELLED)
                return

            if pipeline is not None:
                store.update_job(job_id, status=JobStatus.PROCESSING, progress={"stage": "processing"})
                result = await session.run_pipeline(pipeline)
                if result.cancelled:
                    store.update_job(job_id, status=JobStatus.CANCELLED, result_text=result.output)
                    return
                store.update_job(job_id, result_text=result.output)

        store.update_job(job_id, status=JobStatus.COMPLETED, progress={"stage": "completed"})

    except ScribeflowError as exc:
        logger.error("Job %s failed: %s", job_id, exc)
        _mark_failed(store, job_id, exc)
    except Exception as exc:
        logger.exception("Job %s failed", job_id)
        store.update_job(job_id, status=JobStatus.FAILED, error=str(exc), error_kind="internal")
    finally:
        if watcher is not None:
            watcher.cancel()


async def _run_pipeline_job(
    job_id: str,
    store: JobStore,
    library: PipelineLibrary,
    pipeline_key: str,
    optimize: bool = True,
) -> None:
    """Re-run a pipeline over a finished job's transcript."""
    job = store.get_job(job_id)
    if job is None:
        return

    watcher = None
    try:
        pipeline = library.find_pipeline(pipeline_key)
        if pipeline is None:
            raise ConfigError("Pipeline '{}' not found".format(pipeline_key))
        settings = _settings_for(job.config)
        events = CallbackEventSink(_event_recorder(store, job_id))

        async with contextlib.AsyncExitStack() as stack:
            executor = await _build_executor(stack, library, pipeline, optimize, events)
            session = Session(settings, None, executor=executor, events=events, history=job.history)
            watcher = asyncio.ensure_future(_watch_cancel(job, session))
            result = await session.run_pipeline(pipeline)

        if result.cancelled:
            store.update_job(job_id, status=JobStatus.CANCELLED, result_text=result.output)
        else:
            store.update_job(
                job_id,
                status=JobStatus.COMPLETED,
                result_text=result.output,
                progress={"stage": "completed"},
            )

    except ScribeflowError as exc:
        logger.error("Pipeline run on job %s failed: %s", job_id, exc)
        _mark_failed(store, job_id, exc)
    except Exception as exc:
        logger.exception("Pipeline run on job %s failed", job_id)
        store.update_job(job_id, status=JobStatus.FAILED, error=str(exc), error_kind="internal")
    finally:
        if watcher is not None:
            watcher.cancel()


def _run_job_sync(job_id: str, store: JobStore, library: Optional[PipelineLibrary] = None) -> None:
    """BackgroundTasks runs plain callables; this drives the coroutine."""
    asyncio.run(_run_job(job_id, store, library))


def _run_pipeline_sync(
    job_id: str, store: JobStore, library: PipelineLibrary, pipeline_key: str, optimize: bool = True
) -> None:
    asyncio.run(_run_pipeline_job(job_id, store, library, pipeline_key, optimize))


# ---------------------------------------------------------------------------
# Endpoints: Jobs
# ---------------------------------------------------------------------------


@app.post(
    "/jobs",
    response_model=JobCreatedResponse,
    status_code=201,
    tags=["jobs"],
    summary="Submit an audio file",
    description=(
        "Upload an audio file. Returns a job ID immediately; analysis, "
        "transcription and the optional pipeline run in the background. "
        "Poll GET /jobs/{id} for progress."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Invalid file type"},
        404: {"model": ErrorResponse, "description": "Unknown pipeline"},
        422: {"model": ErrorResponse, "description": "Invalid options"},
        429: {"model": ErrorResponse, "description": "Too many jobs"},
    },
)
async def create_job(
    background_tasks: BackgroundTasks,
    file: Annotated[UploadFile, File(description="Audio file to transcribe")],
    pipeline: Annotated[
        Optional[str],
        Form(description="Name or id of a pipeline to run on the transcript."),
    ] = None,
    strategy: Annotated[
        str,
        Form(description="auto, split, direct, native_split, decoder_split or compress."),
    ] = "auto",
    silence_removal: Annotated[
        Optional[bool],
        Form(description="Override silence removal; defaults to the server setting."),
    ] = None,
    overlap_s: Annotated[
        Optional[float],
        Form(description="Seconds of overlap between chunks when splitting."),
    ] = None,
    language: Annotated[
        Optional[str],
        Form(description="ISO 639-1 language hint for the transcription backend."),
    ] = None,
    optimize: Annotated[
        bool,
        Form(description="Fold compatible prompt units into single calls."),
    ] = True,
) -> JobCreatedResponse:
    # Sanitize filename to prevent path traversal
    filename = Path(file.filename or "upload").name
    _validate_file_extension(filename)

    config = {
        "pipeline": pipeline,
        "strategy": strategy,
        "silence_removal": silence_removal,
        "overlap_s": overlap_s,
        "language": language,
        "optimize": optimize,
    }
    try:
        parse_strategy(strategy)
        _settings_for(config)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    library = None
    if pipeline:
        library = _load_library()
        _find_pipeline(library, pipeline)

    try:
        job = job_store.create_job(filename=filename, config=config)
    except ValueError as exc:
        raise HTTPException(status_code=429, detail=str(exc))

    job.upload_path.write_bytes(await file.read())
    background_tasks.add_task(_run_job_sync, job.id, job_store, library)

    return JobCreatedResponse(id=job.id, status=job.status.value, filename=job.filename)


@app.get(
    "/jobs",
    response_model=List[JobResponse],
    tags=["jobs"],
    summary="List jobs",
    description="All jobs currently held by the server, oldest first.",
)
async def list_jobs() -> List[JobResponse]:
    return [_job_to_response(job) for job in job_store.list_jobs()]


@app.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    tags=["jobs"],
    summary="Get job status",
    description="Current status, progress, transcript and latest pipeline result of a job.",
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
)
async def get_job(job_id: str) -> JobResponse:
    return _job_to_response(_get_job_or_404(job_id))


@app.post(
    "/jobs/{job_id}/cancel",
    response_model=JobResponse,
    status_code=202,
    tags=["jobs"],
    summary="Cancel a running job",
    description=(
        "Request cooperative cancellation. The job stops before its next chunk "
        "or pipeline step and ends in 'cancelled'. Finished jobs are unchanged."
    ),
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
)
async def cancel_job(job_id: str) -> JobResponse:
    job = job_store.request_cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found: {}".format(job_id))
    return _job_to_response(job)


@app.post(
    "/jobs/{job_id}/pipeline",
    response_model=JobResponse,
    status_code=202,
    tags=["jobs"],
    summary="Run a pipeline on a job's transcript",
    description=(
        "Run a pipeline from the library over the job's original transcript. "
        "The previous result moves into the job's history."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Job or pipeline not found"},
        409: {"model": ErrorResponse, "description": "Job is busy or has no transcript"},
    },
)
async def run_pipeline(
    job_id: str,
    request: PipelineRunRequest,
    background_tasks: BackgroundTasks,
) -> JobResponse:
    job = _get_job_or_404(job_id)
    if not job.is_terminal:
        raise HTTPException(
            status_code=409,
            detail="Job is still running (current status: {}).".format(job.status.value),
        )
    if not job.history.has_active_session:
        raise HTTPException(status_code=409, detail="Job has no transcript to process.")

    library = _load_library()
    pipeline = _find_pipeline(library, request.pipeline)

    job.cancel_requested.clear()
    job = job_store.update_job(job_id, status=JobStatus.PROCESSING, progress={"stage": "processing"})
    background_tasks.add_task(
        _run_pipeline_sync, job_id, job_store, library, pipeline.id, request.optimize
    )
    return _job_to_response(job)


@app.get(
    "/jobs/{job_id}/history",
    response_model=HistoryResponse,
    tags=["jobs"],
    summary="List pipeline results for a job",
    description="The current pipeline result and earlier results for this job's transcript, newest first.",
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
)
async def get_history(job_id: str) -> HistoryResponse:
    job = _get_job_or_404(job_id)
    history = job.history
    current = history.current
    return HistoryResponse(
        job_id=job.id,
        recording_id=history.recording_id,
        current=HistoryEntry(**current.to_dict()) if current else None,
        results=[HistoryEntry(**r.to_dict()) for r in history.results],
    )


@app.delete(
    "/jobs/{job_id}",
    status_code=204,
    tags=["jobs"],
    summary="Delete a job",
    description="Cancel the job if it is running and remove it with its uploaded file.",
    responses={404: {"model": ErrorResponse, "description": "Job not found"}},
)
async def delete_job(job_id: str) -> Response:
    if not job_store.delete_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found: {}".format(job_id))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Endpoints: Pipelines and health
# ---------------------------------------------------------------------------


@app.get(
    "/pipelines",
    response_model=List[PipelineInfo],
    tags=["pipelines"],
    summary="List configured pipelines",
    description="Pipelines defined in the server's library file.",
)
async def list_pipelines() -> List[PipelineInfo]:
    library = _load_library()
    result = []
    for pipeline in library.pipelines:
        names = []
        for ref in pipeline.references:
            if ref.unit_id in library.units:
                names.append(library.units.get(ref.unit_id).name)
        result.append(PipelineInfo(id=pipeline.id, name=pipeline.name, enabled=pipeline.enabled, units=names))
    return result


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
    description="Liveness check, plus whether ffmpeg is available.",
)
async def health_check() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__, ffmpeg=ffmpeg.ffmpeg_available())


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``python -m scribeflow serve``."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(prog="scribeflow serve", description="Run the scribeflow HTTP API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)
    uvicorn.run(app, host=args.host, port=args.port)

"""Command-line interface for scribeflow.

WHY: Users need a simple way to transcribe a recording and optionally run
a post-processing pipeline from the terminal. The CLI wires together
settings, the unit/pipeline library, the backend clients and the session
controller behind a single command.

HOW: Uses argparse for flags, builds a Settings value from the environment
plus command-line overrides, and runs the async session via asyncio.run().
Session events arrive on a QueueEventSink and a printer task turns them
into stderr status lines while the session task runs; the final text goes
to stdout (or --output) so the CLI can be piped.

RULES:
- Positional argument: input audio file path
- --split / --compress force a size strategy; default picks one automatically
- --pipeline NAME runs a pipeline from --library after transcription
- Status output goes to stderr, the transcript or final text to stdout
- Exit codes: 0 ok, 1 error, 2 partial result (some chunks failed, or a
  pipeline step failed and the text before it was written), 130 cancelled
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from scribeflow import __version__
from scribeflow.api.client import PromptClient, TranscriptionClient
from scribeflow.audio.preflight import (
    SPLIT,
    Strategy,
    estimate_transcription_time,
    format_duration,
    format_file_size,
)
from scribeflow.config import SUPPORTED_EXTENSIONS, Settings
from scribeflow.core.events import (
    AnalysisComplete,
    ChunkProgress,
    ErrorEvent,
    PipelineComplete,
    QueueEventSink,
    TranscriptionComplete,
    UnitProgress,
)
from scribeflow.core.events import Warning as WarningEvent
from scribeflow.core.session import Session
from scribeflow.errors import ConfigError, PipelineExecutionError, ScribeflowError
from scribeflow.pipeline.executor import PipelineExecutor
from scribeflow.pipeline.library import PipelineLibrary, load_library
from scribeflow.pipeline.models import PromptUnit

DEFAULT_LIBRARY = os.getenv("SCRIBEFLOW_LIBRARY", "pipelines.json")


def _status(msg: str) -> None:
    """Print a status message to stderr (stdout stays pipeable)."""
    print(msg, file=sys.stderr, flush=True)


def _print_event(event) -> None:
    if isinstance(event, AnalysisComplete):
        _status("Analyzed: {} {} ({}), strategy: {}, estimated time: {}".format(
            event.format,
            format_file_size(event.size_bytes),
            format_duration(event.duration_s),
            event.strategy,
            estimate_transcription_time(event.chunk_count),
        ))
    elif isinstance(event, ChunkProgress):
        _status("  Chunk {}/{} {}".format(
            event.index + 1, event.total, "done" if event.succeeded else "FAILED"
        ))
    elif isinstance(event, TranscriptionComplete):
        _status("Transcription complete ({} chars)".format(len(event.text)))
    elif isinstance(event, UnitProgress):
        _status("  [{}/{}] {}".format(event.index, event.total, event.name))
    elif isinstance(event, PipelineComplete):
        if event.calls_saved:
            _status("Pipeline complete ({} API call(s) saved)".format(event.calls_saved))
        else:
            _status("Pipeline complete")
    elif isinstance(event, WarningEvent):
        _status("Warning: {}".format(event.message))
    elif isinstance(event, ErrorEvent):
        _status("Error [{}]: {}".format(event.kind, event.message))


async def _print_events(sink: QueueEventSink) -> None:
    while True:
        _print_event(await sink.queue.get())


def _stop_printer(printer: asyncio.Future, sink: QueueEventSink) -> None:
    """Cancel the printer task and print whatever it had not reached yet."""
    printer.cancel()
    for event in sink.drain():
        _print_event(event)


def _requested_strategy(args: argparse.Namespace):
    if args.compress:
        return Strategy.COMPRESS
    if args.split:
        return SPLIT
    return None


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    overrides = {}
    if args.no_silence_removal:
        overrides["silence_removal_enabled"] = False
    if args.overlap is not None:
        overrides["chunk_overlap_s"] = args.overlap
    if args.keep_intermediate:
        overrides["keep_intermediate_files"] = True
    if args.language:
        overrides["transcription_language"] = args.language
    return settings.with_overrides(**overrides) if overrides else settings


def _write_output(text: str, output: Optional[str]) -> None:
    if output:
        Path(output).write_text(text + "\n", encoding="utf-8")
        _status("Saved: {}".format(output))
    else:
        print(text)


def _list_pipelines(library: PipelineLibrary) -> None:
    if not library.pipelines:
        _status("No pipelines defined.")
        return
    for pipeline in library.pipelines:
        names = []
        for ref in pipeline.references:
            unit = library.units.get(ref.unit_id) if ref.unit_id in library.units else None
            label = unit.name if unit else "<missing {}>".format(ref.unit_id)
            names.append(label if ref.enabled else "({})".format(label))
        print("{}{}: {}".format(
            pipeline.name, "" if pipeline.enabled else " [disabled]", " -> ".join(names) or "(empty)"
        ))


async def _run(args: argparse.Namespace) -> int:
    input_path = Path(args.input_file).resolve()
    if not input_path.is_file():
        _status("Error: File not found: {}".format(input_path))
        return 1
    if input_path.suffix.lower() not in SUPPORTED_EXTENSIONS:
        _status("Error: Unsupported file type '{}'. Supported formats: {}".format(
            input_path.suffix, ", ".join(sorted(SUPPORTED_EXTENSIONS))
        ))
        return 1

    settings = _settings_from_args(args)
    pipeline = None
    library = None
    if args.pipeline:
        library = load_library(Path(args.library))
        pipeline = library.find_pipeline(args.pipeline)
        if pipeline is None:
            raise ConfigError("Pipeline '{}' not found in {}".format(args.pipeline, args.library))

    events = QueueEventSink()
    printer = asyncio.ensure_future(_print_events(events))
    try:
        async with contextlib.AsyncExitStack() as stack:
            transcriber = await stack.enter_async_context(
                TranscriptionClient(
                    provider=settings.transcription_provider,
                    model=settings.transcription_model,
                    language=settings.transcription_language,
                    hard_limit_bytes=settings.hard_limit_bytes,
                )
            )

            executor = None
            if pipeline is not None:
                providers = {
                    u.provider for u in library.units.resolve(pipeline) if isinstance(u, PromptUnit)
                }
                backends = {}
                for provider in sorted(providers):
                    backends[provider] = await stack.enter_async_context(PromptClient(provider=provider))
                executor = PipelineExecutor(
                    library.units, backends, optimize=not args.no_optimize, events=events
                )

            session = Session(settings, transcriber, executor=executor, events=events)
            _status("Processing {}...".format(input_path.name))
            try:
                outcome, execution = await session.start(input_path, pipeline, _requested_strategy(args))
            except PipelineExecutionError as exc:
                _stop_printer(printer, events)
                _status("Writing the text produced before the failed step")
                _write_output(exc.last_good_text, args.output)
                return 2
    finally:
        _stop_printer(printer, events)

    if execution is not None:
        _write_output(execution.output, args.output)
    else:
        _write_output(outcome.text, args.output)
    return 2 if outcome.failed_indices else 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser (separate from main() so tests can inspect it)."""
    parser = argparse.ArgumentParser(
        prog="scribeflow",
        description="Transcribe an audio file with an OpenAI-compatible backend and "
                    "optionally post-process the text with a configured pipeline.",
    )
    parser.add_argument("input_file", nargs="?", help="Path to the audio file to transcribe.")
    parser.add_argument("--pipeline", default=None, help="Name or id of the pipeline to run.")
    parser.add_argument(
        "--library",
        default=DEFAULT_LIBRARY,
        help="Unit/pipeline library JSON file (default: %(default)s).",
    )
    parser.add_argument(
        "--list-pipelines", action="store_true", help="List the pipelines in --library and exit."
    )

    size = parser.add_mutually_exclusive_group()
    size.add_argument("--split", action="store_true", help="Split the file into chunks.")
    size.add_argument("--compress", action="store_true", help="Compress the file with ffmpeg first.")

    parser.add_argument(
        "--overlap", type=float, default=None, help="Seconds of overlap between chunks."
    )
    parser.add_argument("--language", default=None, help="ISO 639-1 language hint.")
    parser.add_argument(
        "--no-silence-removal", action="store_true", help="Do not strip silence before upload."
    )
    parser.add_argument(
        "--no-optimize", action="store_true", help="Run every prompt unit as its own call."
    )
    parser.add_argument(
        "--keep-intermediate", action="store_true", help="Keep silence-stripped files and chunks."
    )
    parser.add_argument("--output", "-o", default=None, help="Write the final text to this file.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    parser.add_argument("--version", action="version", version="%(prog)s {}".format(__version__))
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``scribeflow`` and ``python -m scribeflow``.

    argv=None means sys.argv; explicit argv is for testing.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list_pipelines:
        try:
            _list_pipelines(load_library(Path(args.library)))
        except ConfigError as e:
            _status("Error: {}".format(e))
            sys.exit(1)
        return

    if not args.input_file:
        parser.error("input_file is required")

    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        _status("\nCancelled by user.")
        sys.exit(130)
    except ScribeflowError as e:
        _status("Error: {}".format(e))
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()

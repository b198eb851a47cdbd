"""Runs a pipeline's units over a transcript.

WHY: After transcription the user's configured chain of replacements and
prompts turns raw text into the final result. Execution has to be
observable (a log entry per step), cancellable between steps, and must
never lose the last good text when a backend call fails.

HOW: The library resolves the pipeline into its enabled units; the
optimizer groups them. Each group runs in order: a TextReplacementUnit is
applied locally, a PromptUnit is sent to the backend registered for its
provider, and a folded group is sent as one compiled chain. If a folded
call fails, the group is re-run unit by unit before any error is reported.

RULES:
- Disabled pipeline: input returned unchanged, no log entries
- Malformed regex raises PatternError and aborts the run
- Prompt failure raises PipelineExecutionError(last_good_text, log)
- Cancellation is checked before each group; partial output and log are kept
- One UnitProgress event per group, one PipelineComplete at the end
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from scribeflow.core.events import EventSink, NullEventSink, PipelineComplete, UnitProgress
from scribeflow.errors import BackendError, ConfigError, PatternError, PipelineExecutionError
from scribeflow.pipeline import optimizer
from scribeflow.pipeline.models import (
    ExecutionLogEntry,
    Pipeline,
    PromptUnit,
    TextReplacementUnit,
    UnitLibrary,
)

logger = logging.getLogger(__name__)

_EXCERPT_CHARS = 200


class PromptBackend:
    """Anything that can run one system+user prompt against a model."""

    async def complete(self, model: str, system_prompt: str, user_prompt: str) -> str:
        raise NotImplementedError


@dataclass
class ExecutionResult:
    output: str
    log: List[ExecutionLogEntry] = field(default_factory=list)
    duration_s: float = 0.0
    calls_made: int = 0
    savings: optimizer.OptimizationReport = field(default_factory=optimizer.OptimizationReport)
    cancelled: bool = False


def excerpt(text: str, limit: int = _EXCERPT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def apply_replacement(unit: TextReplacementUnit, text: str) -> str:
    """Apply one literal or regex substitution.

    Literal replacements are inserted verbatim. Regex replacements accept
    Python backreferences (``\\1``, ``\\g<name>``).

    Raises:
        PatternError: The pattern or replacement template is malformed.
    """
    if not unit.is_regex and unit.case_sensitive:
        return text.replace(unit.pattern, unit.replacement) if unit.pattern else text

    flags = 0 if unit.case_sensitive else re.IGNORECASE
    try:
        if unit.is_regex:
            return re.sub(unit.pattern, unit.replacement, text, flags=flags)
        if not unit.pattern:
            return text
        replacement = unit.replacement
        return re.sub(re.escape(unit.pattern), lambda _m: replacement, text, flags=flags)
    except re.error as exc:
        raise PatternError(
            "Unit '{}' has an invalid pattern {!r}: {}".format(unit.name, unit.pattern, exc)
        )


class PipelineExecutor:
    """Executes pipelines against a unit library and a set of prompt backends."""

    def __init__(
        self,
        library: UnitLibrary,
        backends: Dict[str, PromptBackend],
        optimize: bool = True,
        events: EventSink | None = None,
    ) -> None:
        self.library = library
        self.backends = dict(backends)
        self.optimize = optimize
        self.events = events or NullEventSink()

    def register_backend(self, provider: str, backend: PromptBackend) -> None:
        self.backends[provider] = backend

    def _backend_for(self, provider: str) -> PromptBackend:
        try:
            return self.backends[provider]
        except KeyError:
            raise ConfigError("No prompt backend registered for provider '{}'".format(provider))

    async def execute(
        self,
        text: str,
        pipeline: Pipeline,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        """Run ``pipeline`` over ``text``.

        Raises:
            UnresolvedUnitError: A reference points at a missing unit.
            PatternError: A replacement unit's regex is malformed.
            PipelineExecutionError: A prompt call failed.
            ConfigError: A unit names a provider with no registered backend.
        """
        started = time.monotonic()
        if not pipeline.enabled:
            logger.info("Pipeline '%s' is disabled; returning input unchanged", pipeline.name)
            return ExecutionResult(output=text)

        units = self.library.resolve(pipeline)
        groups = optimizer.plan(units, optimize=self.optimize)
        result = ExecutionResult(output=text)
        logger.info(
            "Executing pipeline '%s' (%d unit(s) in %d group(s))", pipeline.name, len(units), len(groups)
        )

        for i, group in enumerate(groups, start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Pipeline '%s' cancelled before step %d/%d", pipeline.name, i, len(groups))
                result.cancelled = True
                break
            self.events.emit(UnitProgress(name=group.name, index=i, total=len(groups)))
            logger.info("  [%d/%d] %s", i, len(groups), group.name)

            if group.folded:
                await self._run_folded(group, result)
            else:
                await self._run_unit(group.units[0], result)

        result.duration_s = time.monotonic() - started
        if not result.cancelled:
            self.events.emit(
                PipelineComplete(text=result.output, calls_saved=result.savings.total_calls_saved)
            )
        logger.info(
            "Pipeline '%s' complete in %.2fs (%d call(s), %d saved)",
            pipeline.name, result.duration_s, result.calls_made, result.savings.total_calls_saved,
        )
        return result

    async def _run_unit(self, unit, result: ExecutionResult) -> None:
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        current = result.output

        if isinstance(unit, TextReplacementUnit):
            output = apply_replacement(unit, current)
        elif isinstance(unit, PromptUnit):
            backend = self._backend_for(unit.provider)
            result.calls_made += 1
            try:
                output = await backend.complete(
                    unit.model, unit.system_prompt, unit.render_user_prompt(current)
                )
            except BackendError as exc:
                logger.error("Unit '%s' failed: %s", unit.name, exc)
                raise PipelineExecutionError(
                    "Unit '{}' failed: {}".format(unit.name, exc),
                    last_good_text=current,
                    log=result.log,
                )
        else:
            raise TypeError("Unsupported unit type: {}".format(type(unit).__name__))

        result.log.append(
            ExecutionLogEntry(
                unit_name=unit.name,
                input_excerpt=excerpt(current),
                output=output,
                started_at=started_at,
                duration_s=time.monotonic() - started,
                unit_names=(unit.name,),
            )
        )
        result.output = output

    async def _run_folded(self, group: optimizer.ExecutionGroup, result: ExecutionResult) -> None:
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        current = result.output
        chain = optimizer.compile_chain(group.units, current)
        backend = self._backend_for(chain.provider)

        logger.info(
            "Folding %d %s/%s units into one call (%d call(s) saved)",
            len(group.units), chain.provider, chain.model, group.calls_saved,
        )
        result.calls_made += 1
        try:
            output = await backend.complete(chain.model, chain.system_prompt, chain.user_prompt)
        except BackendError as exc:
            logger.warning(
                "Folded call for %s failed (%s); re-running its units one by one", group.name, exc
            )
            for unit in group.units:
                await self._run_unit(unit, result)
            return

        result.log.append(
            ExecutionLogEntry(
                unit_name=group.name,
                input_excerpt=excerpt(current),
                output=output,
                started_at=started_at,
                duration_s=time.monotonic() - started,
                optimized=True,
                unit_names=tuple(u.name for u in group.units),
            )
        )
        result.savings.folded.append(
            optimizer.FoldedRun(unit_names=tuple(u.name for u in group.units), calls_saved=group.calls_saved)
        )
        result.output = output

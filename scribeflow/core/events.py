"""Typed progress and result events.

WHY: Long operations (chunked transcription, pipeline runs) must report
progress without the core knowing who listens. A caller may be a CLI
printing status lines, an HTTP job tracking progress, or a test collecting
events into a list.

HOW: Each event is a small frozen dataclass. Producers call
``sink.emit(event)``. QueueEventSink pushes events onto an asyncio.Queue
for a consumer task; CallbackEventSink calls a function; NullEventSink
drops everything.

RULES:
- Events are emitted in the order the work happens
- emit() never blocks and never raises into the producer
- Every terminal error is surfaced as ErrorEvent(kind, message)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisComplete:
    format: str
    size_bytes: int
    duration_s: float | None
    exceeds_limit: bool
    strategy: str
    chunk_count: int = 1


@dataclass(frozen=True)
class ChunkProgress:
    """One chunk finished (successfully or not); index is 0-based."""

    index: int
    total: int
    succeeded: bool = True


@dataclass(frozen=True)
class TranscriptionComplete:
    text: str
    failed_indices: tuple = ()


@dataclass(frozen=True)
class UnitProgress:
    """A unit or folded group is about to run; index is 1-based."""

    name: str
    index: int
    total: int


@dataclass(frozen=True)
class PipelineComplete:
    text: str
    calls_saved: int = 0


@dataclass(frozen=True)
class ErrorEvent:
    kind: str
    message: str


@dataclass(frozen=True)
class Warning:  # noqa: A001
    message: str
    details: dict = field(default_factory=dict)


class EventSink:
    """Receives events from the core."""

    def emit(self, event) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    def emit(self, event) -> None:
        pass


class CallbackEventSink(EventSink):
    """Calls ``callback(event)``; callback errors are logged and dropped."""

    def __init__(self, callback: Callable[[object], None]) -> None:
        self._callback = callback

    def emit(self, event) -> None:
        try:
            self._callback(event)
        except Exception:
            logger.exception("Event callback failed for %s", type(event).__name__)


class QueueEventSink(EventSink):
    """Pushes events onto an unbounded asyncio.Queue."""

    def __init__(self, queue: asyncio.Queue | None = None) -> None:
        self.queue = queue if queue is not None else asyncio.Queue()

    def emit(self, event) -> None:
        self.queue.put_nowait(event)

    def drain(self) -> list:
        """Return every event currently queued, in order."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class ListEventSink(EventSink):
    """Collects events in a list (handy for tests and synchronous callers)."""

    def __init__(self) -> None:
        self.events: list = []

    def emit(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]

"""Session-scoped history of pipeline results for one transcription.

WHY: Users often run several pipelines over the same transcript to compare
results. The result on screen must never be silently lost when another run
replaces it, and results from an older recording must not leak into a new
one.

HOW: A session starts when a transcription completes and gets a fresh
recording_id. The "current" slot holds the result being shown; starting a
new run pushes the current result to the front of the history list. All
state sits behind one threading.Lock.

RULES:
- start_new_session() clears all previous results and the current slot
- add_result() prepends (most recent first)
- History is in memory only and never persisted
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class PipelineResult:
    pipeline_id: str
    pipeline_name: str
    result_text: str
    timestamp: float = field(default_factory=time.time)
    duration_s: float = 0.0

    def to_dict(self) -> dict:
        return {
            "pipeline_id": self.pipeline_id,
            "pipeline_name": self.pipeline_name,
            "result_text": self.result_text,
            "timestamp": self.timestamp,
            "duration_s": round(self.duration_s, 3),
        }


class ExecutionHistory:
    """Results of pipeline runs over one originating transcription."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._recording_id: Optional[str] = None
        self._original_text: Optional[str] = None
        self._current: Optional[PipelineResult] = None
        self._results: List[PipelineResult] = []

    def start_new_session(self, text: str) -> str:
        """Begin a session for a new transcript and return its recording_id."""
        with self._lock:
            self._recording_id = str(uuid.uuid4())
            self._original_text = text
            self._current = None
            self._results.clear()
            return self._recording_id

    def add_result(
        self, pipeline_id: str, pipeline_name: str, result_text: str, duration_s: float = 0.0
    ) -> PipelineResult:
        result = PipelineResult(pipeline_id, pipeline_name, result_text, duration_s=duration_s)
        with self._lock:
            self._results.insert(0, result)
        return result

    def begin_run(self) -> None:
        """Move the current result (if any) into history before a new run."""
        with self._lock:
            if self._current is not None:
                self._results.insert(0, self._current)
                self._current = None

    def complete_run(
        self, pipeline_id: str, pipeline_name: str, result_text: str, duration_s: float = 0.0
    ) -> PipelineResult:
        result = PipelineResult(pipeline_id, pipeline_name, result_text, duration_s=duration_s)
        with self._lock:
            if self._current is not None:
                self._results.insert(0, self._current)
            self._current = result
        return result

    def record_run(
        self, pipeline_id: str, pipeline_name: str, result_text: str, duration_s: float = 0.0
    ) -> PipelineResult:
        self.begin_run()
        return self.complete_run(pipeline_id, pipeline_name, result_text, duration_s)

    @property
    def results(self) -> List[PipelineResult]:
        with self._lock:
            return list(self._results)

    @property
    def result_count(self) -> int:
        with self._lock:
            return len(self._results)

    @property
    def current(self) -> Optional[PipelineResult]:
        return self._current

    @property
    def original_text(self) -> Optional[str]:
        return self._original_text

    @property
    def recording_id(self) -> Optional[str]:
        return self._recording_id

    @property
    def has_active_session(self) -> bool:
        return self._recording_id is not None

    def clear(self) -> None:
        with self._lock:
            self._recording_id = None
            self._original_text = None
            self._current = None
            self._results.clear()

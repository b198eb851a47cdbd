"""In-memory job store for the HTTP API.

WHY: A transcription can take anywhere from seconds to many minutes, so the
API hands back a job ID immediately and does the work in the background.
Clients poll the job, may cancel it, and later run pipelines against its
transcript. One process serving one team needs no persistence.

HOW: JobStatus enumerates the lifecycle, Job holds per-job state (including
the ExecutionHistory of pipeline runs over its transcript), and JobStore
guards a dict of jobs with a threading.Lock. Background work runs in
another thread, so cancellation is a threading.Event the runner polls.

RULES:
- All store mutations hold self._lock
- Each job owns a temp directory holding the upload; deleting or expiring
  the job removes it
- Terminal states are completed, failed and cancelled; TTL counts from
  completed_at
- Cancelling a job in a terminal state is a no-op
"""

from __future__ import annotations

import enum
import logging
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from scribeflow.pipeline.history import ExecutionHistory

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


class JobStatus(str, enum.Enum):
    """Lifecycle of a job.

    RULES:
    - pending: created, background work not started
    - analyzing: pre-flight analysis and audio preparation
    - transcribing: chunks being sent to the backend
    - processing: a pipeline is running over the transcript
    - completed / failed / cancelled: terminal until the next pipeline run
    """

    PENDING = "pending"
    ANALYZING = "analyzing"
    TRANSCRIBING = "transcribing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class Job:
    id: str
    status: JobStatus
    filename: str
    work_dir: Path
    created_at: float
    updated_at: float
    completed_at: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    progress: Optional[Dict[str, Any]] = None
    config: Dict[str, Any] = field(default_factory=dict)
    transcript: Optional[str] = None
    result_text: Optional[str] = None
    strategy: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    history: ExecutionHistory = field(default_factory=ExecutionHistory)
    cancel_requested: threading.Event = field(default_factory=threading.Event)

    @property
    def upload_path(self) -> Path:
        return self.work_dir / self.filename

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobStore:
    """Thread-safe store of jobs keyed by ID."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, max_jobs: int = 100) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._ttl_seconds = ttl_seconds
        self.max_jobs = max_jobs

    def create_job(self, filename: str, config: Optional[Dict[str, Any]] = None) -> Job:
        """Create a PENDING job with its own temp directory.

        Raises:
            ValueError: The store already holds max_jobs jobs.
        """
        with self._lock:
            if len(self._jobs) >= self.max_jobs:
                raise ValueError(
                    "Maximum number of concurrent jobs ({}) reached".format(self.max_jobs)
                )
            now = time.time()
            job = Job(
                id=uuid.uuid4().hex,
                status=JobStatus.PENDING,
                filename=filename,
                work_dir=Path(tempfile.mkdtemp(prefix="scribeflow_job_")),
                created_at=now,
                updated_at=now,
                config=config or {},
            )
            self._jobs[job.id] = job

        logger.info("Created job %s for file %s", job.id, filename)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> List[Job]:
        """All jobs, oldest first."""
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: j.created_at)

    def update_job(self, job_id: str, **changes: Any) -> Optional[Job]:
        """Apply non-None field changes; returns None for unknown jobs.

        Leaving a terminal state (a new pipeline run) clears completed_at
        and the previous error.

        Raises:
            AttributeError: A change names a field Job does not have.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None

            for name, value in changes.items():
                if value is None:
                    continue
                if not hasattr(job, name):
                    raise AttributeError("Job has no field '{}'".format(name))
                setattr(job, name, value)

            now = time.time()
            job.updated_at = now
            if job.status in TERMINAL_STATUSES:
                job.completed_at = now
            else:
                job.completed_at = None
                if "error" not in changes:
                    job.error = None
                    job.error_kind = None
            return job

    def request_cancel(self, job_id: str) -> Optional[Job]:
        """Flag a running job for cancellation; None for unknown jobs."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.status not in TERMINAL_STATUSES:
                job.cancel_requested.set()
                logger.info("Cancellation requested for job %s", job_id)
            return job

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.pop(job_id, None)
        if job is None:
            return False

        job.cancel_requested.set()
        self._cleanup_work_dir(job.work_dir)
        logger.info("Deleted job %s", job_id)
        return True

    def cleanup_expired(self) -> int:
        """Remove terminal jobs older than the TTL; returns how many."""
        now = time.time()
        expired: List[Job] = []
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if job.status not in TERMINAL_STATUSES or job.completed_at is None:
                    continue
                if now - job.completed_at > self._ttl_seconds:
                    expired.append(self._jobs.pop(job_id))

        for job in expired:
            self._cleanup_work_dir(job.work_dir)
            logger.info("Expired job %s (finished %.0fs ago)", job.id, now - job.completed_at)
        return len(expired)

    @staticmethod
    def _cleanup_work_dir(work_dir: Path) -> None:
        if work_dir.exists():
            try:
                shutil.rmtree(work_dir)
            except OSError:
                logger.warning("Failed to clean up temp dir: %s", work_dir)

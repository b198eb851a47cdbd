"""Pydantic request/response models for the HTTP API.

WHY: FastAPI uses these for validation, serialization and the generated
OpenAPI docs.

RULES:
- Every field carries a Field(description=...)
- Response models never expose work directories or cancel flags
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class PipelineRunRequest(BaseModel):
    """Body of POST /jobs/{id}/pipeline."""

    pipeline: str = Field(description="Name or id of a pipeline in the server's library.")
    optimize: bool = Field(
        default=True,
        description="Fold consecutive prompt units with the same provider and model into one call.",
    )


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class JobResponse(BaseModel):
    """Job status, progress and results."""

    id: str = Field(description="Unique job identifier.")
    status: str = Field(description="Current job status.")
    filename: str = Field(description="Original uploaded filename.")
    created_at: float = Field(description="Job creation timestamp (Unix epoch seconds).")
    config: Dict[str, Any] = Field(description="Options the job was submitted with.")
    strategy: Optional[str] = Field(
        default=None, description="Size strategy chosen by pre-flight analysis."
    )
    progress: Optional[Dict[str, Any]] = Field(
        default=None, description="Latest progress, e.g. {'stage': 'transcribing', 'chunk': 2, 'total': 5}."
    )
    transcript: Optional[str] = Field(default=None, description="Merged transcript, once available.")
    result: Optional[str] = Field(
        default=None, description="Output of the most recent pipeline run."
    )
    warnings: List[str] = Field(default_factory=list, description="Non-fatal problems seen so far.")
    error: Optional[str] = Field(default=None, description="Error message when status is 'failed'.")
    error_kind: Optional[str] = Field(default=None, description="Machine-readable error kind.")

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "id": "550e8400e29b41d4a716446655440000",
                "status": "transcribing",
                "filename": "meeting.wav",
                "created_at": 1739959200.0,
                "config": {"pipeline": "cleanup", "silence_removal": True},
                "strategy": "native_split",
                "progress": {"stage": "transcribing", "chunk": 2, "total": 5},
                "transcript": None,
                "result": None,
                "warnings": [],
                "error": None,
                "error_kind": None,
            }
        ]
    }}


class JobCreatedResponse(BaseModel):
    id: str = Field(description="Unique job identifier for polling status.")
    status: str = Field(description="Initial job status (always 'pending').")
    filename: str = Field(description="Original uploaded filename.")


class HistoryEntry(BaseModel):
    pipeline_id: str = Field(description="Id of the pipeline that produced the result.")
    pipeline_name: str = Field(description="Name of the pipeline that produced the result.")
    result_text: str = Field(description="Pipeline output text.")
    timestamp: float = Field(description="Completion time (Unix epoch seconds).")
    duration_s: float = Field(description="Wall-clock execution time in seconds.")


class HistoryResponse(BaseModel):
    """Pipeline results for a job's transcript, newest first."""

    job_id: str = Field(description="The job these results belong to.")
    recording_id: Optional[str] = Field(
        default=None, description="History session id of the transcript."
    )
    current: Optional[HistoryEntry] = Field(default=None, description="Most recent result.")
    results: List[HistoryEntry] = Field(description="Earlier results, newest first.")


class PipelineInfo(BaseModel):
    id: str = Field(description="Pipeline id.")
    name: str = Field(description="Pipeline name.")
    enabled: bool = Field(description="Disabled pipelines return their input unchanged.")
    units: List[str] = Field(description="Names of the pipeline's units in order.")


class ErrorResponse(BaseModel):
    detail: str = Field(description="Human-readable error description.")


class HealthResponse(BaseModel):
    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="API version string.", json_schema_extra={"example": "0.1.0"})
    ffmpeg: bool = Field(description="Whether ffmpeg is available for compression and decoder splits.")

"""Error taxonomy for the audio-to-text core.

WHY: Callers (CLI, HTTP API, session controller) need to tell apart
configuration bugs, unreadable input, missing tools, backend failures and
partial results, and each terminal error must surface a structured kind
plus a human-readable message.

HOW: Every exception derives from ScribeflowError, which carries a short
``kind`` string used in error events and API responses. Subclasses add
the fields their handlers need (status codes, partial text, logs).

RULES:
- ``kind`` is a stable snake_case identifier, never a sentence
- str(exc) is always a human-readable message
- PartialFailure and PipelineExecutionError always keep the usable text
"""

from __future__ import annotations

from typing import Any, List, Optional


class ScribeflowError(Exception):
    """Base class for all errors raised by the core."""

    kind = "error"


class ConfigError(ScribeflowError, ValueError):
    """A configuration value is missing or outside its allowed range."""

    kind = "config_error"


class UnreadableFileError(ScribeflowError):
    """The audio container could not be opened or parsed at all."""

    kind = "unreadable_file"


class FileSizeError(ScribeflowError):
    """A payload exceeds the backend's hard limit with no mitigation chosen."""

    kind = "file_size"

    def __init__(self, size_bytes: int, limit_bytes: int, message: Optional[str] = None) -> None:
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            message
            or "File too large: {:.2f} MB (limit: {:.0f} MB)".format(
                size_bytes / (1024 * 1024), limit_bytes / (1024 * 1024)
            )
        )


class CapabilityUnavailableError(ScribeflowError):
    """The chosen strategy needs a tool or service that is not present."""

    kind = "capability_unavailable"


class BackendError(ScribeflowError):
    """A transcription or prompt backend call failed.

    RULES:
    - status_code is 0 for transport failures (no HTTP response)
    - transient is True for network errors, 408, 429 and 5xx responses
    """

    kind = "backend_error"

    def __init__(self, status_code: int, message: str, transient: Optional[bool] = None) -> None:
        self.status_code = status_code
        self.message = message
        if transient is None:
            transient = status_code == 0 or status_code in (408, 429) or status_code >= 500
        self.transient = transient
        super().__init__("Backend error {}: {}".format(status_code, message))


class PatternError(ScribeflowError):
    """A text-replacement unit carries a malformed regular expression."""

    kind = "pattern_error"


class UnresolvedUnitError(ScribeflowError):
    """A pipeline references a unit id that is not in the unit library."""

    kind = "unresolved_unit"


class PipelineExecutionError(ScribeflowError):
    """A prompt unit failed and the pipeline run stopped.

    The text produced before the failing unit is kept as ``last_good_text``
    together with the execution log accumulated so far.
    """

    kind = "pipeline_failed"

    def __init__(self, message: str, last_good_text: str, log: Optional[List[Any]] = None) -> None:
        self.last_good_text = last_good_text
        self.log = list(log or [])
        super().__init__(message)


class PartialFailure(ScribeflowError):
    """Some chunks failed but a usable partial result exists."""

    kind = "partial_failure"

    def __init__(self, partial_text: str, failed_indices: List[int]) -> None:
        self.partial_text = partial_text
        self.failed_indices = list(failed_indices)
        super().__init__(
            "{} chunk(s) failed to transcribe ({}); returning partial transcript".format(
                len(self.failed_indices), ", ".join(str(i) for i in self.failed_indices)
            )
        )

"""Configuration defaults, .env loading, and the explicit Settings object.

WHY: Every component of the audio-to-text core reads a handful of tunables
(silence threshold, chunk size, backend URLs). Keeping the defaults as
plain module-level constants makes them easy to find and override, while
the Settings dataclass lets callers thread one validated configuration
value through constructors instead of reaching for a global.

HOW: python-dotenv loads the .env file on import. Module-level constants
read from the environment with hard-coded fallbacks. Settings.from_env()
snapshots those values once, validates the documented ranges, and returns
a frozen dataclass that components receive at construction.

RULES:
- Settings is loaded once per process start and passed explicitly
- Silence threshold must be within 0.001–0.050 RMS
- Minimum silence duration must be within 500–10000 ms
- Target chunk size must be strictly below the hard size limit
- API keys are loaded from .env via python-dotenv, never hardcoded
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace

from dotenv import load_dotenv

from scribeflow.errors import ConfigError

# Load .env from the project root (where the script is run from)
load_dotenv()

MB = 1024 * 1024

# ---------------------------------------------------------------------------
# Backend defaults
# ---------------------------------------------------------------------------

OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPEN_WEBUI_BASE_URL = os.getenv("OPEN_WEBUI_BASE_URL", "")
TRANSCRIPTION_MODEL = os.getenv("SCRIBEFLOW_TRANSCRIPTION_MODEL", "whisper-1")
TRANSCRIPTION_LANGUAGE = os.getenv("SCRIBEFLOW_TRANSCRIPTION_LANGUAGE", "")

# ---------------------------------------------------------------------------
# Size limits
# ---------------------------------------------------------------------------

HARD_LIMIT_BYTES = 25 * MB
"""Reference payload limit of the transcription backend."""

TARGET_CHUNK_BYTES = 20 * MB
"""Chunk target, kept below the hard limit to leave encoding slack."""

# ---------------------------------------------------------------------------
# Silence removal ranges
# ---------------------------------------------------------------------------

SILENCE_THRESHOLD_MIN = 0.001
SILENCE_THRESHOLD_MAX = 0.050
MIN_SILENCE_MS_MIN = 500
MIN_SILENCE_MS_MAX = 10_000

SUPPORTED_EXTENSIONS: set[str] = {
    ".wav", ".mp3", ".m4a", ".aac", ".ogg", ".oga", ".flac", ".webm", ".mp4",
}
"""Audio file extensions the CLI and HTTP API accept (lowercase, with dot)."""


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError("{} must be a number, got {!r}".format(name, raw))


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError("{} must be an integer, got {!r}".format(name, raw))


@dataclass(frozen=True)
class Settings:
    """Validated runtime configuration for the core.

    WHY: Every component receives one immutable value instead of reading a
    process-wide singleton, so the data flow stays explicit and tests can
    build variations with replace().

    RULES:
    - Construct with from_env() or directly; validate() runs in __post_init__
    - min_recording_duration_for_removal_s == 0 disables the duration gate
    - chunk_overlap_s == 0 means non-overlapping chunks
    """

    silence_removal_enabled: bool = True
    silence_threshold: float = 0.01
    min_silence_duration_ms: int = 1500
    min_recording_duration_for_removal_s: float = 10.0
    keep_intermediate_files: bool = False
    transcription_provider: str = "openai"
    transcription_model: str = TRANSCRIPTION_MODEL
    transcription_language: str | None = None
    target_chunk_bytes: int = TARGET_CHUNK_BYTES
    hard_limit_bytes: int = HARD_LIMIT_BYTES
    chunk_overlap_s: float = 0.0
    max_attempts: int = 3
    retry_delay_s: float = 2.0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError when a value is outside its documented range."""
        if not SILENCE_THRESHOLD_MIN <= self.silence_threshold <= SILENCE_THRESHOLD_MAX:
            raise ConfigError(
                "Silence threshold {:.4f} outside {:.3f}–{:.3f}".format(
                    self.silence_threshold, SILENCE_THRESHOLD_MIN, SILENCE_THRESHOLD_MAX
                )
            )
        if not MIN_SILENCE_MS_MIN <= self.min_silence_duration_ms <= MIN_SILENCE_MS_MAX:
            raise ConfigError(
                "Minimum silence duration {}ms outside {}–{}ms".format(
                    self.min_silence_duration_ms, MIN_SILENCE_MS_MIN, MIN_SILENCE_MS_MAX
                )
            )
        if self.min_recording_duration_for_removal_s < 0:
            raise ConfigError("Minimum recording duration cannot be negative")
        if self.target_chunk_bytes <= 0 or self.target_chunk_bytes >= self.hard_limit_bytes:
            raise ConfigError(
                "Target chunk size ({} bytes) must be positive and below the "
                "hard limit ({} bytes)".format(self.target_chunk_bytes, self.hard_limit_bytes)
            )
        if self.chunk_overlap_s < 0:
            raise ConfigError("Chunk overlap cannot be negative")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")

    def with_overrides(self, **changes) -> Settings:
        """Return a copy with the given fields replaced (and re-validated)."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> Settings:
        """Build Settings from environment variables (populated by python-dotenv)."""
        language = TRANSCRIPTION_LANGUAGE.strip() or None
        return cls(
            silence_removal_enabled=_env_bool("SCRIBEFLOW_SILENCE_REMOVAL", True),
            silence_threshold=_env_float("SCRIBEFLOW_SILENCE_THRESHOLD", 0.01),
            min_silence_duration_ms=_env_int("SCRIBEFLOW_MIN_SILENCE_MS", 1500),
            min_recording_duration_for_removal_s=_env_float("SCRIBEFLOW_MIN_RECORDING_S", 10.0),
            keep_intermediate_files=_env_bool("SCRIBEFLOW_KEEP_INTERMEDIATE", False),
            transcription_provider=os.getenv("SCRIBEFLOW_TRANSCRIPTION_PROVIDER", "openai"),
            transcription_model=TRANSCRIPTION_MODEL,
            transcription_language=language,
            target_chunk_bytes=int(_env_float("SCRIBEFLOW_TARGET_CHUNK_MB", 20) * MB),
            hard_limit_bytes=int(_env_float("SCRIBEFLOW_HARD_LIMIT_MB", 25) * MB),
            chunk_overlap_s=_env_float("SCRIBEFLOW_CHUNK_OVERLAP_S", 0.0),
        )


def load_api_key(provider: str = "openai") -> str:
    """Load the API key for a backend provider from the environment.

    RULES:
    - "openai" reads OPENAI_API_KEY and raises ConfigError when missing
    - "open_webui" reads OPEN_WEBUI_API_KEY and may be empty (local servers)
    """
    if provider == "open_webui":
        return os.getenv("OPEN_WEBUI_API_KEY", "").strip()

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise ConfigError(
            "OpenAI API key not configured. "
            "Add OPENAI_API_KEY to the .env file in the app folder."
        )
    return key

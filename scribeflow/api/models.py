"""Backend response dataclasses.

WHY: The transcription and chat endpoints return plain JSON. Typed
dataclasses make the fields the core relies on explicit and fail loudly
when a response is missing them.

HOW: Each dataclass has a from_dict factory that reads the raw response
dict. Optional fields default to None.

RULES:
- TranscriptionResponse.text is always present (may be empty)
- ChatCompletion.content is the first choice's message content
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class TranscriptionResponse:
    """Result of one ``POST /audio/transcriptions`` call."""

    text: str
    duration: float | None = None
    language: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> TranscriptionResponse:
        return cls(
            text=data.get("text") or "",
            duration=data.get("duration"),
            language=data.get("language"),
        )


@dataclass
class ChatCompletion:
    """First choice of a ``POST /chat/completions`` response.

    RULES:
    - Raises KeyError/IndexError when the response has no choices; the
      client converts that into a BackendError
    """

    content: str
    model: str | None = None
    finish_reason: str | None = None
    total_tokens: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> ChatCompletion:
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return cls(
            content=choice["message"].get("content") or "",
            model=data.get("model"),
            finish_reason=choice.get("finish_reason"),
            total_tokens=usage.get("total_tokens"),
        )

"""Backend client package: async HTTP access to transcription and chat APIs.

WHY: Transcription and prompt execution are the only remote calls in the
core. Keeping them in one package means no other module imports httpx.

HOW: client.py defines TranscriptionClient and PromptClient on top of
httpx.AsyncClient; models.py parses responses into dataclasses.

RULES:
- All HTTP calls go through these clients (no direct httpx usage elsewhere)
- Authentication is via Bearer token from config
"""

from scribeflow.api.client import PromptClient, TranscriptionClient
from scribeflow.api.models import ChatCompletion, TranscriptionResponse

__all__ = ["ChatCompletion", "PromptClient", "TranscriptionClient", "TranscriptionResponse"]

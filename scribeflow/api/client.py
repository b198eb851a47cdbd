"""Async HTTP clients for OpenAI-compatible transcription and chat backends.

WHY: The core needs exactly two remote operations: turn an audio file into
text, and run one system+user prompt through a chat model. Wrapping them
behind small client classes keeps HTTP details out of the dispatcher and
the pipeline executor, and gives tests a single seam to mock.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. Both clients are async
context managers: enter to open an authenticated connection pool, exit to
close it. Provider endpoints (OpenAI, Open WebUI) are described in
PROVIDERS. Every failure is wrapped in BackendError with the HTTP status
(0 for transport errors) so the dispatcher can decide whether to retry.

RULES:
- Always use the async context manager (async with TranscriptionClient() as c:)
- Files over the hard limit are rejected with FileSizeError before upload
- Non-2xx responses raise BackendError(status_code, body)
- Network failures raise BackendError(0, ...), which counts as transient
- Chat requests use temperature 0.7 and max_tokens 2000 unless overridden
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from scribeflow.api.models import ChatCompletion, TranscriptionResponse
from scribeflow.config import (
    HARD_LIMIT_BYTES,
    OPEN_WEBUI_BASE_URL,
    OPENAI_BASE_URL,
    TRANSCRIPTION_MODEL,
    load_api_key,
)
from scribeflow.errors import BackendError, ConfigError, FileSizeError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Provider endpoints
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderEndpoints:
    base_url: str
    transcription_path: str
    chat_path: str


PROVIDERS = {
    "openai": ProviderEndpoints(
        base_url=OPENAI_BASE_URL,
        transcription_path="/audio/transcriptions",
        chat_path="/chat/completions",
    ),
    "open_webui": ProviderEndpoints(
        base_url=OPEN_WEBUI_BASE_URL,
        transcription_path="/api/v1/audio/transcriptions",
        chat_path="/api/chat/completions",
    ),
}

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000


def provider_endpoints(provider: str) -> ProviderEndpoints:
    try:
        endpoints = PROVIDERS[provider]
    except KeyError:
        raise ConfigError(
            "Unknown provider '{}'. Known providers: {}".format(provider, ", ".join(sorted(PROVIDERS)))
        )
    if not endpoints.base_url:
        raise ConfigError("Base URL for provider '{}' is not configured".format(provider))
    return endpoints


class _BackendClient:
    """Shared connection handling for both clients."""

    def __init__(
        self,
        provider: str = "openai",
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = 300.0,
    ) -> None:
        self.provider = provider
        self._endpoints = provider_endpoints(provider) if base_url is None else None
        self._api_key = api_key if api_key is not None else load_api_key(provider)
        self._base_url = (base_url or self._endpoints.base_url).rstrip("/")
        self._transport = transport
        self._timeout_s = timeout_s
        self._client: httpx.AsyncClient | None = None

    def _path(self, attr: str, default: str) -> str:
        if self._endpoints is None:
            return default
        return getattr(self._endpoints, attr)

    async def __aenter__(self):
        headers = {}
        if self._api_key:
            headers["Authorization"] = "Bearer {}".format(self._api_key)
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(self._timeout_s, connect=30.0),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "{} must be used as an async context manager: "
                "async with {}() as client: ...".format(type(self).__name__, type(self).__name__)
            )
        return self._client

    async def _post(self, path: str, **kwargs) -> dict:
        client = self._ensure_client()
        try:
            resp = await client.post(path, **kwargs)
        except httpx.TimeoutException as exc:
            raise BackendError(0, "Request timed out: {}".format(exc))
        except httpx.TransportError as exc:
            raise BackendError(0, "Network error: {}".format(exc))

        if resp.status_code not in (200, 201):
            logger.error("%s API error %d: %s", self.provider, resp.status_code, resp.text[:500])
            raise BackendError(resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError:
            # Some self-hosted servers answer with plain text
            return {"text": resp.text}


class TranscriptionClient(_BackendClient):
    """Client for ``POST /audio/transcriptions``.

    RULES:
    - model defaults to TRANSCRIPTION_MODEL from config
    - language and prompt are only sent when set
    """

    def __init__(
        self,
        provider: str = "openai",
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        language: str | None = None,
        hard_limit_bytes: int = HARD_LIMIT_BYTES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(provider, api_key, base_url, transport)
        self.model = model or TRANSCRIPTION_MODEL
        self.language = language
        self.hard_limit_bytes = hard_limit_bytes

    def check_size(self, file_path: Path) -> int:
        """Return the file size, raising FileSizeError above the hard limit."""
        size = Path(file_path).stat().st_size
        if size > self.hard_limit_bytes:
            raise FileSizeError(size, self.hard_limit_bytes)
        return size

    async def transcribe(self, file_path: Path, prompt: str | None = None) -> TranscriptionResponse:
        """Upload one audio file and return its transcript.

        Raises:
            FileSizeError: The file is over the hard limit (never uploaded).
            BackendError: The backend answered non-2xx or was unreachable.
        """
        file_path = Path(file_path)
        size = self.check_size(file_path)

        data = {"model": self.model, "response_format": "json"}
        if self.language:
            data["language"] = self.language
        if prompt:
            data["prompt"] = prompt

        logger.info("Uploading %s (%.1f MB) for transcription", file_path.name, size / (1024.0 * 1024.0))
        with open(file_path, "rb") as f:
            payload = await self._post(
                self._path("transcription_path", "/audio/transcriptions"),
                data=data,
                files={"file": (file_path.name, f)},
            )

        result = TranscriptionResponse.from_dict(payload)
        logger.info("Transcription successful: %d characters", len(result.text))
        return result


class PromptClient(_BackendClient):
    """Client for ``POST /chat/completions``; satisfies the PromptBackend protocol."""

    def __init__(
        self,
        provider: str = "openai",
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(provider, api_key, base_url, transport, timeout_s=120.0)
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def complete(self, model: str, system_prompt: str, user_prompt: str) -> str:
        """Run one chat completion and return the first choice's text.

        Raises:
            BackendError: Non-2xx response, network failure, or a response
                without choices.
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        body = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        payload = await self._post(self._path("chat_path", "/chat/completions"), json=body)
        try:
            completion = ChatCompletion.from_dict(payload)
        except (KeyError, IndexError, TypeError, AttributeError):
            raise BackendError(502, "Malformed chat completion response", transient=False)
        return completion.content

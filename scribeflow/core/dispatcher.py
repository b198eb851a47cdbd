"""Sequential chunk transcription with retries and ordered merge.

WHY: Chunked transcription has to survive a flaky network and a failing
chunk without losing the rest of the recording, and its output must read
in the original order no matter how retries interleave.

HOW: Chunks are submitted one at a time in index order. Transient backend
failures (network errors, HTTP 408/429/5xx) are retried with a linear
backoff of retry_delay_s * attempt. Permanent failures and oversized chunks
are recorded and skipped. Cancellation is checked before each chunk and
interrupts a retry back-off; the interrupted chunk is dropped. The
successful, non-blank texts are stripped and joined with one space.

RULES:
- Strict index order; no concurrent submissions
- At most max_attempts tries per chunk; only transient errors are retried
- A chunk over the hard limit is never submitted (FileSizeError)
- One ChunkProgress event per attempted chunk
- Cancelled results keep the text of chunks completed before cancellation
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from scribeflow.core.events import ChunkProgress, EventSink, NullEventSink
from scribeflow.errors import BackendError, FileSizeError, PartialFailure, ScribeflowError

logger = logging.getLogger(__name__)


@dataclass
class TranscriptChunkResult:
    index: int
    text: str = ""
    succeeded: bool = False
    error: str | None = None
    attempts: int = 0
    exception: ScribeflowError | None = field(default=None, repr=False)


@dataclass
class DispatchResult:
    text: str
    chunk_results: List[TranscriptChunkResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_indices(self) -> List[int]:
        return [r.index for r in self.chunk_results if not r.succeeded]

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and not self.failed_indices

    def raise_for_partial(self) -> None:
        """Raise PartialFailure when any chunk failed."""
        failed = self.failed_indices
        if failed:
            raise PartialFailure(self.text, failed)


def merge_texts(texts: Sequence[str]) -> str:
    """Join non-blank texts (stripped) with a single space."""
    return " ".join(t.strip() for t in texts if t and t.strip())


class TranscriptionDispatcher:
    """Submits chunk files to a transcriber one by one.

    ``transcriber`` is anything with ``async transcribe(path) ->
    TranscriptionResponse`` and ``check_size(path)``, normally a
    TranscriptionClient that is already entered.
    """

    def __init__(
        self,
        transcriber,
        max_attempts: int = 3,
        retry_delay_s: float = 2.0,
        events: EventSink | None = None,
    ) -> None:
        self.transcriber = transcriber
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_s = retry_delay_s
        self.events = events or NullEventSink()

    async def transcribe(
        self,
        chunks: Sequence[Path],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DispatchResult:
        results: List[TranscriptChunkResult] = []
        total = len(chunks)
        cancelled = False

        for index, chunk in enumerate(chunks):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Transcription cancelled before chunk %d/%d", index + 1, total)
                cancelled = True
                break

            result = await self._transcribe_chunk(index, total, Path(chunk), cancel_event)
            if result is None:
                logger.info("Transcription cancelled during retries of chunk %d/%d", index + 1, total)
                cancelled = True
                break
            results.append(result)
            self.events.emit(ChunkProgress(index=index, total=total, succeeded=result.succeeded))

        text = merge_texts([r.text for r in results if r.succeeded])
        dispatch = DispatchResult(text=text, chunk_results=results, cancelled=cancelled)
        if dispatch.failed_indices:
            logger.warning(
                "%d of %d chunk(s) failed: %s",
                len(dispatch.failed_indices), total, dispatch.failed_indices,
            )
        return dispatch

    async def _transcribe_chunk(
        self,
        index: int,
        total: int,
        chunk: Path,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[TranscriptChunkResult]:
        """Submit one chunk with retries; None when cancelled between attempts."""
        result = TranscriptChunkResult(index=index)
        try:
            self.transcriber.check_size(chunk)
        except FileSizeError as exc:
            logger.error("Chunk %d/%d is too large to submit: %s", index + 1, total, exc)
            result.error = str(exc)
            result.exception = exc
            return result

        for attempt in range(1, self.max_attempts + 1):
            result.attempts = attempt
            try:
                response = await self.transcriber.transcribe(chunk)
            except BackendError as exc:
                result.error = str(exc)
                result.exception = exc
                if not exc.transient or attempt == self.max_attempts:
                    logger.error(
                        "Chunk %d/%d failed after %d attempt(s): %s", index + 1, total, attempt, exc
                    )
                    return result
                delay = self.retry_delay_s * attempt
                logger.warning(
                    "Chunk %d/%d attempt %d failed (%s); retrying in %.1fs",
                    index + 1, total, attempt, exc, delay,
                )
                if await self._backoff(delay, cancel_event):
                    return None
                continue
            except FileSizeError as exc:
                result.error = str(exc)
                result.exception = exc
                return result

            result.text = response.text
            result.succeeded = True
            result.error = None
            result.exception = None
            logger.info("Chunk %d/%d transcribed (%d chars)", index + 1, total, len(response.text))
            return result

        return result

    async def _backoff(self, delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Wait ``delay`` seconds; True when cancellation was requested."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        if not cancel_event.is_set():
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        return cancel_event.is_set()

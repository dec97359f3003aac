# chatcore/orchestration/chunk_merger.py
from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import AsyncIterator, Callable, Optional

from chatcore.core.errors import CompletionCancelled, summarize_error
from chatcore.orchestration.cancellation import CancellationToken
from chatcore.orchestration.types import FullResponse, Message, Metrics, StreamChunk

log = logging.getLogger("chatcore.merger")

# Textual end-of-thinking markers some models emit inside the answer channel.
# Only a fallback: explicit reasoning deltas are the primary phase signal.
END_OF_THINKING_MARKERS = ("###Response", "</think>")

_END = object()
_CANCELLED = object()


async def _read(iterator: AsyncIterator[StreamChunk]) -> StreamChunk:
    return await iterator.__anext__()


class MergerState(str, enum.Enum):
    IDLE = "idle"
    REASONING = "reasoning"
    ANSWERING = "answering"
    SUCCESS = "success"
    PAUSED = "paused"
    ERROR = "error"


TERMINAL_STATES = frozenset({MergerState.SUCCESS, MergerState.PAUSED, MergerState.ERROR})


class ChunkMerger:
    """Folds a provider chunk stream into one accumulating assistant message.

    The merger owns ``message`` for its whole lifetime; callers only see copies
    handed to ``on_update``. Once a terminal state is reached nothing on the
    message changes any more.
    """

    def __init__(
        self,
        message: Message,
        *,
        token: Optional[CancellationToken] = None,
        on_update: Optional[Callable[[Message], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.message = message
        self.state = MergerState.IDLE
        self.chunks = 0
        self._token = token
        self._on_update = on_update
        self._clock = clock
        self._start = clock()
        self._has_reasoning = False
        self._last_text = ""
        self._first_token_at: Optional[float] = None
        self._first_content_at: Optional[float] = None
        self._citations_seen = False
        self._synthetic = False
        if message.metrics is None:
            message.metrics = Metrics()

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _ms(self, at: Optional[float]) -> int:
        if at is None:
            return 0
        return max(0, int(round((at - self._start) * 1000)))

    # --- per chunk ---

    def feed(self, chunk: StreamChunk) -> bool:
        """Merge one chunk. Returns False when nothing was merged (terminal or cancelled)."""
        if self.terminal:
            return False
        if self._token is not None and self._token.cancelled:
            self.pause()
            return False

        now = self._clock()
        msg = self.message
        if chunk.text_delta:
            msg.content += chunk.text_delta
        if chunk.reasoning_delta:
            msg.reasoning_content = (msg.reasoning_content or "") + chunk.reasoning_delta

        if self._first_token_at is None:
            self._first_token_at = now
        if self._first_content_at is None and self._reasoning_just_done(chunk):
            self._first_content_at = now
        self._advance_phase(chunk)

        self._merge_side_channels(chunk)
        if chunk.usage_snapshot is not None:
            msg.usage = chunk.usage_snapshot.model_copy()
        self._stamp_metrics(now)
        self.chunks += 1
        self._emit()
        return True

    def _reasoning_just_done(self, chunk: StreamChunk) -> bool:
        if chunk.reasoning_delta:
            self._has_reasoning = True
        text = chunk.text_delta
        if not text:
            return False
        combined = self._last_text + text
        self._last_text = text
        if any(marker in combined for marker in END_OF_THINKING_MARKERS):
            return True
        return self._has_reasoning

    def _advance_phase(self, chunk: StreamChunk) -> None:
        previous = self.state
        if self._first_content_at is not None:
            self.state = MergerState.ANSWERING
        elif chunk.reasoning_delta or self._has_reasoning:
            self.state = MergerState.REASONING
        else:
            self.state = MergerState.ANSWERING
        if previous != self.state:
            log.debug({"event": "merger.phase", "message_id": self.message.id, "from": previous.value, "to": self.state.value})

    def _merge_side_channels(self, chunk: StreamChunk) -> None:
        meta = self.message.metadata
        if chunk.citations and not self._citations_seen:
            meta.citations = list(chunk.citations)
            self._citations_seen = True
        if chunk.tool_results is not None:
            meta.tool_results = [dict(r) for r in chunk.tool_results]
        if chunk.image_delta:
            meta.generated_images = list(meta.generated_images or []) + list(chunk.image_delta)
        if chunk.search_snapshot and meta.web_search is None:
            meta.web_search = dict(chunk.search_snapshot)

    def _stamp_metrics(self, now: float) -> None:
        metrics = self.message.metrics or Metrics()
        metrics.time_first_token_ms = 0 if self._synthetic else self._ms(self._first_token_at)
        metrics.time_first_content_ms = self._ms(self._first_content_at)
        metrics.time_thinking_ms = self._ms(self._first_content_at)
        metrics.time_completion_ms = self._ms(now)
        usage = self.message.usage
        if usage is not None and usage.completion_tokens is not None:
            metrics.completion_tokens = usage.completion_tokens
        self.message.metrics = metrics

    def _emit(self) -> None:
        if self._on_update is None:
            return
        self._on_update(self.message.snapshot())

    # --- transitions ---

    def finish(self) -> None:
        if self.terminal:
            return
        self.state = MergerState.SUCCESS
        self.message.status = "success"

    def pause(self) -> None:
        if self.terminal:
            return
        self.state = MergerState.PAUSED
        self.message.status = "paused"
        reason = self._token.reason if self._token is not None else None
        log.info({"event": "merger.paused", "message_id": self.message.id, "chunks": self.chunks, "reason": reason})

    def fail(self, exc: BaseException) -> None:
        if self.terminal:
            return
        self.state = MergerState.ERROR
        self.message.status = "error"
        self.message.error = summarize_error(exc)
        log.warning({"event": "merger.error", "message_id": self.message.id, "chunks": self.chunks, "error": self.message.error})

    # --- drivers ---

    async def consume(self, chunks: AsyncIterator[StreamChunk]) -> Message:
        """Drive a streaming response to a terminal state."""
        iterator = chunks.__aiter__()
        try:
            while not self.terminal:
                if self._token is not None and self._token.cancelled:
                    self.pause()
                    break
                item = await self._next_chunk(iterator)
                if item is _END:
                    # a provider that saw the token ends its stream quietly
                    if self._token is not None and self._token.cancelled:
                        self.pause()
                    else:
                        self.finish()
                elif item is _CANCELLED:
                    self.pause()
                else:
                    self.feed(item)
        except CompletionCancelled:
            self.pause()
        except Exception as exc:  # noqa: BLE001
            self.fail(exc)
        finally:
            await self._close(iterator)
        return self.message

    def consume_full(self, response: FullResponse) -> Message:
        """Non-streaming response: merged as one synthetic chunk."""
        self._synthetic = True
        chunk = StreamChunk(
            text_delta=response.text or None,
            reasoning_delta=response.reasoning or None,
            usage_snapshot=response.usage,
            citations=response.citations,
        )
        if self.feed(chunk):
            self.finish()
        return self.message

    async def _next_chunk(self, iterator: AsyncIterator[StreamChunk]):
        if self._token is None:
            try:
                return await iterator.__anext__()
            except StopAsyncIteration:
                return _END

        next_task = asyncio.create_task(_read(iterator))
        cancel_task = asyncio.create_task(self._token.wait())
        try:
            done, _ = await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            next_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if next_task in done:
            try:
                return next_task.result()
            except StopAsyncIteration:
                return _END

        # cancellation won the race; unwind the pending read before closing the stream
        next_task.cancel()
        await asyncio.wait({next_task})
        if not next_task.cancelled() and next_task.exception() is not None:
            log.debug({"event": "merger.read_after_cancel", "error": repr(next_task.exception())})
        return _CANCELLED

    async def _close(self, iterator: AsyncIterator[StreamChunk]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:  # noqa: BLE001
            log.warning({"event": "merger.close_failed", "message_id": self.message.id, "error": repr(exc)})

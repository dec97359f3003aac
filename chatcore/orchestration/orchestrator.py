# chatcore/orchestration/orchestrator.py
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from chatcore.core.errors import CompletionCancelled, summarize_error
from chatcore.core.settings import AppSettings, get_settings
from chatcore.orchestration.cancellation import CancellationRegistry, CancellationToken
from chatcore.orchestration.chunk_merger import ChunkMerger
from chatcore.orchestration.redactor import to_request_messages
from chatcore.orchestration.task_queue import TopicQueues
from chatcore.orchestration.token_budget import TokenEstimator, context_budget, truncate
from chatcore.orchestration.types import (
    Assistant,
    CompletionRequest,
    FullResponse,
    Message,
    Metrics,
    Usage,
    new_id,
)
from chatcore.providers.base import ChatProvider, WebSearchBackend, format_search_results
from chatcore.storage.base import MessageStore
from chatcore.utils.tokens import approx_tokens

log = logging.getLogger("chatcore.orchestrator")

UpdateCallback = Callable[[Message], None]

# assistant replies in these states carry nothing worth sending back as context
_SKIP_IN_CONTEXT = ("pending", "searching", "error")


class CompletionOrchestrator:
    """Entry point for send / pause / resend against a conversation.

    Every mutation of a conversation runs on that conversation's queue, so at
    most one reply per conversation is ever streaming. Live updates reach the
    per-call ``on_response`` callback and every ``subscribe``-d listener.
    """

    def __init__(
        self,
        provider: ChatProvider,
        store: MessageStore,
        *,
        estimate: TokenEstimator = approx_tokens,
        web_search: Optional[WebSearchBackend] = None,
        settings: Optional[AppSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._store = store
        self._estimate = estimate
        self._web_search = web_search
        self._settings = settings or get_settings()
        self._clock = clock
        self._queues = TopicQueues()
        self._cancellations = CancellationRegistry()
        # assistant message id -> latest snapshot of a reply still streaming
        self._inflight: Dict[str, Message] = {}
        self._callbacks: Dict[str, Optional[UpdateCallback]] = {}
        self._subscribers: List[UpdateCallback] = []

    # --- subscription ---

    def subscribe(self, callback: UpdateCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _broadcast(self, message: Message, on_response: Optional[UpdateCallback] = None) -> None:
        if message.id in self._inflight:
            self._inflight[message.id] = message
        for callback in (on_response, *self._subscribers):
            if callback is None:
                continue
            try:
                callback(message)
            except Exception:  # noqa: BLE001
                log.exception({"event": "orchestrator.listener_failed", "message_id": message.id})

    # --- public operations ---

    async def send(
        self,
        conversation_id: str,
        user_message: Message,
        assistant: Assistant,
        *,
        on_response: Optional[UpdateCallback] = None,
        timeout: Optional[float] = None,
    ) -> Message:
        if user_message.role != "user":
            raise ValueError(f"send() expects a user message, got role={user_message.role!r}")
        user = user_message.model_copy(update={"conversation_id": conversation_id})
        return await self._queues.enqueue(
            conversation_id,
            lambda: self._complete(conversation_id, user, assistant, on_response=on_response, timeout=timeout),
        )

    async def resend(
        self,
        message: Message,
        assistant: Assistant,
        *,
        content: Optional[str] = None,
        on_response: Optional[UpdateCallback] = None,
        timeout: Optional[float] = None,
    ) -> Message:
        """Regenerate the reply to ``message`` (a user message or one of its replies).

        ``content`` replaces the user message text first (edit and resend).
        """
        conversation_id = message.conversation_id
        return await self._queues.enqueue(
            conversation_id,
            lambda: self._resend(message, assistant, content, on_response=on_response, timeout=timeout),
        )

    def pause(self, assistant_message_id: str) -> bool:
        live = self._inflight.get(assistant_message_id)
        if live is None or live.is_terminal or not live.ask_id:
            return False
        if not self._cancellations.cancel(live.ask_id, "paused"):
            return False
        paused = live.model_copy(update={"status": "paused"})
        log.info({"event": "orchestrator.pause", "message_id": assistant_message_id, "ask_id": live.ask_id})
        self._broadcast(paused, self._callbacks.get(assistant_message_id))
        return True

    def pause_all(self, conversation_id: str) -> int:
        ids = [mid for mid, m in self._inflight.items() if m.conversation_id == conversation_id]
        return sum(1 for mid in ids if self.pause(mid))

    async def delete_message(self, conversation_id: str, message_id: str) -> bool:
        return await self._queues.enqueue(
            conversation_id, lambda: self._store.delete_message(conversation_id, message_id)
        )

    async def delete_group(self, conversation_id: str, ask_id: str) -> int:
        """Delete a user message together with every reply to it."""
        return await self._queues.enqueue(conversation_id, lambda: self._delete_where(conversation_id, ask_id))

    async def clear(self, conversation_id: str) -> int:
        return await self._queues.enqueue(conversation_id, lambda: self._delete_where(conversation_id, None))

    async def idle(self, conversation_id: str) -> None:
        await self._queues.idle(conversation_id)

    def is_streaming(self, conversation_id: str) -> bool:
        return any(m.conversation_id == conversation_id for m in self._inflight.values())

    # --- queued work ---

    async def _delete_where(self, conversation_id: str, ask_id: Optional[str]) -> int:
        history = await self._store.get_history(conversation_id)
        if ask_id is not None:
            history = [m for m in history if m.id == ask_id or m.ask_id == ask_id]
        deleted = 0
        for m in history:
            if await self._store.delete_message(conversation_id, m.id):
                deleted += 1
        log.info({"event": "orchestrator.delete", "conversation_id": conversation_id, "ask_id": ask_id, "deleted": deleted})
        return deleted

    async def _resend(
        self,
        message: Message,
        assistant: Assistant,
        content: Optional[str],
        *,
        on_response: Optional[UpdateCallback],
        timeout: Optional[float],
    ) -> Message:
        conversation_id = message.conversation_id
        history = await self._store.get_history(conversation_id)
        by_id = {m.id: m for m in history}

        if message.role == "user":
            user = by_id.get(message.id, message)
        else:
            user = by_id.get(message.ask_id or "")
            if user is None:
                raise LookupError(f"no user message {message.ask_id!r} for reply {message.id!r}")
        if content is not None:
            user = user.model_copy(update={"content": content})

        replies = [m for m in history if m.role == "assistant" and m.ask_id == user.id]
        if message.role == "assistant":
            reply_id = message.id
        else:
            reply_id = replies[0].id if replies else None
        for stale in replies:
            if stale.id != reply_id:
                await self._store.delete_message(conversation_id, stale.id)

        log.info({"event": "orchestrator.resend", "conversation_id": conversation_id, "ask_id": user.id, "edited": content is not None})
        return await self._complete(
            conversation_id, user, assistant, reply_id=reply_id, on_response=on_response, timeout=timeout
        )

    async def _complete(
        self,
        conversation_id: str,
        user: Message,
        assistant: Assistant,
        *,
        reply_id: Optional[str] = None,
        on_response: Optional[UpdateCallback] = None,
        timeout: Optional[float] = None,
    ) -> Message:
        store = self._store
        await store.append_or_replace(conversation_id, user)
        history = await store.get_history(conversation_id)
        context = self._context_for(history, user)

        reply = Message(
            id=reply_id or new_id(),
            conversation_id=conversation_id,
            role="assistant",
            status="pending",
            ask_id=user.id,
            model=assistant.model,
            metrics=Metrics(),
        )
        self._inflight[reply.id] = reply.snapshot()
        self._callbacks[reply.id] = on_response
        token = self._cancellations.register(user.id)
        timer: Optional[asyncio.TimerHandle] = None
        start = time.perf_counter()
        log.info({"event": "completion.start", "conversation_id": conversation_id, "message_id": reply.id, "ask_id": user.id, "model": assistant.model})
        try:
            await store.append_or_replace(conversation_id, reply)
            self._broadcast(reply.snapshot(), on_response)

            if assistant.enable_web_search and self._web_search is not None and not token.cancelled:
                context = await self._search(conversation_id, reply, user, context, token, on_response)

            request = CompletionRequest(
                model=assistant.model,
                system_prompt=assistant.prompt,
                messages=to_request_messages(self._truncate(context, assistant)),
                temperature=assistant.temperature,
                top_p=assistant.top_p,
                max_tokens=assistant.max_tokens,
                stream=assistant.stream_output,
                timeout=self._settings.request_timeout_sec,
                signal=token,
            )
            limit = timeout if timeout is not None else self._settings.completion_timeout_sec
            if limit:
                timer = asyncio.get_running_loop().call_later(limit, token.cancel, "timeout")

            merger = ChunkMerger(
                reply,
                token=token,
                on_update=lambda m: self._broadcast(m, on_response),
                clock=self._clock,
            )
            await self._drive(merger, request, token)
            if reply.status == "success":
                self._backfill_usage(reply, request)
        except asyncio.CancelledError:
            if not reply.is_terminal:
                reply.status = "paused"
            await store.append_or_replace(conversation_id, reply)
            raise
        except Exception as exc:  # noqa: BLE001
            if not reply.is_terminal:
                reply.status = "error"
                reply.error = summarize_error(exc)
            log.warning({"event": "completion.failed", "conversation_id": conversation_id, "message_id": reply.id, "error": repr(exc)})
        finally:
            if timer is not None:
                timer.cancel()
            self._cancellations.release(user.id, token)
            self._inflight.pop(reply.id, None)
            self._callbacks.pop(reply.id, None)

        await store.append_or_replace(conversation_id, reply)
        final = reply.snapshot()
        self._broadcast(final, on_response)
        log.info(
            {
                "event": "completion.done",
                "conversation_id": conversation_id,
                "message_id": reply.id,
                "status": reply.status,
                "reason": token.reason,
                "chars": len(reply.content),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                "error": reply.error,
            }
        )
        return final

    async def _drive(self, merger: ChunkMerger, request: CompletionRequest, token: CancellationToken) -> None:
        if token.cancelled:
            merger.pause()
            return
        try:
            result = self._provider.complete(request)
        except CompletionCancelled:
            merger.pause()
            return
        except Exception as exc:  # noqa: BLE001
            merger.fail(exc)
            return
        if inspect.isawaitable(result):
            # a non-streaming call blocks until the whole body arrives
            call = await self._race(result, token)
            if call is None or call.cancelled():
                merger.pause()
                return
            try:
                result = call.result()
            except CompletionCancelled:
                merger.pause()
                return
            except Exception as exc:  # noqa: BLE001
                merger.fail(exc)
                return
        if isinstance(result, FullResponse):
            if token.cancelled:
                merger.pause()
            else:
                merger.consume_full(result)
            return
        if not hasattr(result, "__aiter__"):
            merger.fail(TypeError(f"provider returned {type(result).__name__}, expected chunks or a full response"))
            return
        await merger.consume(result)

    @staticmethod
    async def _race(awaitable: Awaitable[Any], token: CancellationToken) -> Optional[asyncio.Future]:
        """Await ``awaitable`` unless ``token`` fires first. Returns the finished future, or None."""
        fut = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({fut, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        finally:
            waiter.cancel()
        if fut.done():
            return fut
        fut.cancel()
        await asyncio.wait({fut})
        return None

    # --- helpers ---

    @staticmethod
    def _context_for(history: List[Message], user: Message) -> List[Message]:
        """History up to and including ``user``, without that ask's own replies."""
        out: List[Message] = []
        for m in history:
            if m.id == user.id:
                out.append(user)
                return out
            if m.role == "assistant" and (m.ask_id == user.id or m.status in _SKIP_IN_CONTEXT or not m.content):
                continue
            out.append(m)
        out.append(user)
        return out

    def _truncate(self, context: List[Message], assistant: Assistant) -> List[Message]:
        try:
            budget = context_budget(assistant, self._settings)
        except Exception as exc:  # noqa: BLE001
            log.warning({"event": "truncate.budget_failed", "error": repr(exc)})
            budget = self._settings.ctx_default_budget_tokens
        try:
            kept = truncate(context, budget, self._estimate, self._settings.ctx_reserve_ratio)
        except Exception as exc:  # noqa: BLE001
            log.warning({"event": "truncate.fallback_full_history", "error": repr(exc), "messages": len(context)})
            return list(context)
        if len(kept) < len(context):
            log.info({"event": "truncate.dropped", "kept": len(kept), "dropped": len(context) - len(kept), "budget": budget})
        return kept

    async def _search(
        self,
        conversation_id: str,
        reply: Message,
        user: Message,
        context: List[Message],
        token: CancellationToken,
        on_response: Optional[UpdateCallback],
    ) -> List[Message]:
        reply.status = "searching"
        await self._store.append_or_replace(conversation_id, reply)
        self._broadcast(reply.snapshot(), on_response)
        result: Optional[Dict[str, Any]] = None
        call = await self._race(self._web_search.search(user.content), token)
        if call is None or call.cancelled():
            log.info({"event": "websearch.abandoned", "conversation_id": conversation_id, "reason": token.reason})
        else:
            try:
                result = call.result()
            except Exception as exc:  # noqa: BLE001
                log.warning({"event": "websearch.failed", "conversation_id": conversation_id, "error": repr(exc)})
        reply.status = "pending"
        if not result or not result.get("results"):
            return context
        reply.metadata.web_search = dict(result)
        notice = Message(
            id=f"web-search-{reply.id}",
            conversation_id=conversation_id,
            role="system",
            content=format_search_results(result["results"]),
        )
        # right before the question so truncation always keeps it
        return context[:-1] + [notice, context[-1]]

    def _backfill_usage(self, reply: Message, request: CompletionRequest) -> None:
        usage = reply.usage or Usage()
        if usage.completion_tokens is None or reply.usage is None:
            try:
                completion = int(self._estimate(reply.content))
                prompt = usage.prompt_tokens
                if prompt is None:
                    texts = [request.system_prompt or ""] + [m.get("content", "") for m in request.messages]
                    prompt = sum(int(self._estimate(t)) for t in texts)
            except Exception as exc:  # noqa: BLE001
                log.warning({"event": "usage.estimate_failed", "message_id": reply.id, "error": repr(exc)})
                return
            usage = Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
            reply.usage = usage
        metrics = reply.metrics or Metrics()
        metrics.completion_tokens = usage.completion_tokens
        reply.metrics = metrics

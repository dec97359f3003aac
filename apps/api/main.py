# apps/api/main.py

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest
from pydantic import BaseModel

from chatcore.core.logging import configure_logging, request_logging_middleware
from chatcore.core.settings import get_settings
from chatcore.orchestration.orchestrator import CompletionOrchestrator
from chatcore.orchestration.types import Assistant, Message
from chatcore.providers.openai_compat import get_provider
from chatcore.storage.repo import SqlMessageStore, get_history, get_topic

COMPLETIONS = Counter("chatcore_completions_total", "Completions settled by terminal status", ["status"])
PAUSES = Counter("chatcore_pause_requests_total", "Pause requests by outcome", ["outcome"])

settings = get_settings()
configure_logging(level=settings.log_level)

app = FastAPI(title=settings.app_name, version="0.1.0")
log = logging.getLogger("chatcore.api")

# Allow specific origin for development, avoid wildcard with credentials
allow_origins = os.environ.get("CORS_ALLOWED_ORIGINS", "http://127.0.0.1:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(request_logging_middleware)


@lru_cache(maxsize=1)
def get_orchestrator() -> CompletionOrchestrator:
    return CompletionOrchestrator(get_provider(), SqlMessageStore(), settings=settings)


class AssistantIn(BaseModel):
    model: Optional[str] = None
    prompt: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    context_count: Optional[int] = None
    context_size: Optional[int] = None
    stream_output: bool = True
    enable_web_search: bool = False

    def to_assistant(self) -> Assistant:
        return Assistant(
            model=self.model or settings.default_model,
            prompt=self.prompt,
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
            context_count=self.context_count if self.context_count is not None else settings.ctx_default_count,
            context_size=self.context_size,
            stream_output=self.stream_output,
            enable_web_search=self.enable_web_search,
        )


class SendRequest(AssistantIn):
    content: str
    message_id: Optional[str] = None
    timeout: Optional[float] = None


class ResendRequest(AssistantIn):
    content: Optional[str] = None
    timeout: Optional[float] = None


def _dump(message: Message) -> Dict[str, Any]:
    return message.model_dump(mode="json")


def _sse_format(event: str, data: Dict[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n".encode("utf-8")


def _find(topic_id: str, message_id: str) -> Message:
    for m in get_history(topic_id):
        if m.id == message_id:
            return m
    raise HTTPException(status_code=404, detail="message not found")


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@app.get("/config")
async def config() -> JSONResponse:
    safe_config = {
        "app_name": settings.app_name,
        "env": settings.app_env,
        "db_dialect": settings.db_dialect,
        "log_level": settings.log_level,
        "provider": {
            "name": settings.provider_name,
            "base_url": str(settings.provider_base_url) if settings.provider_base_url else None,
            "default_model": settings.default_model,
        },
        "context": {
            "default_budget_tokens": settings.ctx_default_budget_tokens,
            "tokens_per_message": settings.ctx_tokens_per_message,
            "default_count": settings.ctx_default_count,
            "reserve_ratio": settings.ctx_reserve_ratio,
        },
        "timeouts": {
            "request_sec": settings.request_timeout_sec,
            "completion_sec": settings.completion_timeout_sec,
        },
    }
    return JSONResponse(content=safe_config)


@app.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/topics/{topic_id}/messages")
async def get_topic_messages(topic_id: str) -> JSONResponse:
    topic = get_topic(topic_id)
    if topic is None:
        raise HTTPException(status_code=404, detail="topic not found")
    return JSONResponse(
        content={
            "topic_id": topic_id,
            "name": topic.name,
            "messages": [_dump(m) for m in get_history(topic_id)],
        }
    )


@app.post("/topics/{topic_id}/messages")
async def send_message(
    topic_id: str,
    req: SendRequest,
    stream: bool = False,
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
):
    fields = {"conversation_id": topic_id, "role": "user", "content": req.content}
    if req.message_id:
        fields["id"] = req.message_id
    user = Message(**fields)
    assistant = req.to_assistant()

    if not stream:
        final = await orchestrator.send(topic_id, user, assistant, timeout=req.timeout)
        COMPLETIONS.labels(final.status).inc()
        return JSONResponse(content={"user": _dump(user), "message": _dump(final)})

    async def run(on_response):
        return await orchestrator.send(topic_id, user, assistant, on_response=on_response, timeout=req.timeout)

    return _stream_response(orchestrator, user, run)


@app.post("/topics/{topic_id}/messages/{message_id}/resend")
async def resend_message(
    topic_id: str,
    message_id: str,
    req: ResendRequest,
    stream: bool = False,
    orchestrator: CompletionOrchestrator = Depends(get_orchestrator),
):
    target = _find(topic_id, message_id)
    assistant = req.to_assistant()

    if not stream:
        try:
            final = await orchestrator.resend(target, assistant, content=req.content, timeout=req.timeout)
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        COMPLETIONS.labels(final.status).inc()
        return JSONResponse(content={"message": _dump(final)})

    async def run(on_response):
        return await orchestrator.resend(
            target, assistant, content=req.content, on_response=on_response, timeout=req.timeout
        )

    return _stream_response(orchestrator, None, run)


@app.post("/messages/{message_id}/pause")
async def pause_message(
    message_id: str, orchestrator: CompletionOrchestrator = Depends(get_orchestrator)
) -> JSONResponse:
    if not orchestrator.pause(message_id):
        PAUSES.labels("not_found").inc()
        raise HTTPException(status_code=404, detail="message not found or already completed")
    PAUSES.labels("paused").inc()
    return JSONResponse(content={"status": "pausing"})


@app.post("/topics/{topic_id}/pause")
async def pause_topic(topic_id: str, orchestrator: CompletionOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    paused = orchestrator.pause_all(topic_id)
    PAUSES.labels("paused").inc(paused)
    return JSONResponse(content={"paused": paused})


@app.delete("/topics/{topic_id}/messages/{message_id}")
async def delete_message(
    topic_id: str, message_id: str, orchestrator: CompletionOrchestrator = Depends(get_orchestrator)
) -> JSONResponse:
    if not await orchestrator.delete_message(topic_id, message_id):
        raise HTTPException(status_code=404, detail="message not found")
    return JSONResponse(content={"deleted": message_id})


@app.delete("/topics/{topic_id}/groups/{ask_id}")
async def delete_group(
    topic_id: str, ask_id: str, orchestrator: CompletionOrchestrator = Depends(get_orchestrator)
) -> JSONResponse:
    deleted = await orchestrator.delete_group(topic_id, ask_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="message group not found")
    return JSONResponse(content={"deleted": deleted})


@app.delete("/topics/{topic_id}/messages")
async def clear_topic(topic_id: str, orchestrator: CompletionOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    deleted = await orchestrator.clear(topic_id)
    return JSONResponse(content={"deleted": deleted})


def _stream_response(orchestrator: CompletionOrchestrator, user: Optional[Message], run) -> StreamingResponse:
    async def event_iter():
        queue: asyncio.Queue[bytes] = asyncio.Queue()
        done_event = asyncio.Event()
        reply_ids: set[str] = set()
        loop = asyncio.get_running_loop()
        last_event_ts = loop.time()

        def on_response(message: Message) -> None:
            nonlocal last_event_ts
            reply_ids.add(message.id)
            last_event_ts = loop.time()
            queue.put_nowait(_sse_format("message", _dump(message)))

        async def heartbeat_loop():
            interval = settings.sse_heartbeat_sec
            while not done_event.is_set():
                await asyncio.sleep(interval)
                if loop.time() - last_event_ts > interval * 0.8:
                    await queue.put(_sse_format("ping", {"ts": datetime.now(timezone.utc).isoformat()}))

        async def produce_loop():
            if user is not None:
                await queue.put(_sse_format("user", _dump(user)))
            try:
                final = await run(on_response)
            except Exception as exc:  # noqa: BLE001
                log.exception({"event": "api.stream_failed", "error": repr(exc)})
                await queue.put(_sse_format("error", {"message": str(exc)}))
            else:
                COMPLETIONS.labels(final.status).inc()
                await queue.put(_sse_format("done", {"status": final.status, "message_id": final.id}))
            finally:
                done_event.set()

        hb_task = asyncio.create_task(heartbeat_loop())
        prod_task = asyncio.create_task(produce_loop())
        try:
            while True:
                if done_event.is_set() and queue.empty():
                    break
                try:
                    chunk = await asyncio.wait_for(queue.get(), timeout=0.5)
                    yield chunk
                except asyncio.TimeoutError:
                    continue
        finally:
            # client went away: stop the reply, the queued task still commits it
            if not done_event.is_set():
                for reply_id in reply_ids:
                    orchestrator.pause(reply_id)
            hb_task.cancel()
            prod_task.cancel()

    headers = {
        "Content-Type": "text/event-stream; charset=utf-8",
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_iter(), headers=headers)

# chatcore/providers/openai_compat.py
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chatcore.core.errors import NetworkError, ProviderError
from chatcore.core.settings import get_settings
from chatcore.orchestration.types import CompletionRequest, FullResponse, StreamChunk, Usage
from chatcore.providers.base import CompletionResult
from chatcore.providers.stream_handlers import ToolCallAssembler

log = logging.getLogger("chatcore.provider")

# Field names different servers use for the reasoning channel
_REASONING_KEYS = ("reasoning_content", "reasoning", "thinking")


def normalize_usage(raw: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not raw or not isinstance(raw, dict):
        return None
    if "input_tokens" in raw or "output_tokens" in raw:
        inp = int(raw.get("input_tokens", 0) or 0)
        out = int(raw.get("output_tokens", 0) or 0)
    else:
        inp = int(raw.get("prompt_tokens", 0) or 0)
        out = int(raw.get("completion_tokens", raw.get("generated_tokens", 0)) or 0)
    tot = int(raw.get("total_tokens", inp + out) or (inp + out))
    return Usage(prompt_tokens=inp, completion_tokens=out, total_tokens=tot)


def _pick_reasoning(delta: Dict[str, Any]) -> Optional[str]:
    for key in _REASONING_KEYS:
        val = delta.get(key)
        if isinstance(val, str) and val:
            return val
        if isinstance(val, dict) and isinstance(val.get("content"), str) and val["content"]:
            return val["content"]
    return None


def _pick_images(delta: Dict[str, Any]) -> Optional[List[str]]:
    items = delta.get("images")
    if not items:
        return None
    out: List[str] = []
    for it in items:
        if isinstance(it, str):
            out.append(it)
        elif isinstance(it, dict):
            url = (it.get("image_url") or {}).get("url") or it.get("url") or it.get("b64_json")
            if url:
                out.append(url)
    return out or None


def normalize_chunk(obj: Dict[str, Any], assembler: ToolCallAssembler) -> Optional[StreamChunk]:
    """Map one decoded SSE payload onto a ``StreamChunk``; None when it carries nothing."""
    choices = obj.get("choices") or []
    choice = (choices[0] or {}) if choices else {}
    delta = choice.get("delta") or choice.get("message") or {}

    text = delta.get("content")
    if not text:
        # non-chat completion formats
        text = choice.get("text") or choice.get("text_delta")
    tool_results = assembler.feed(delta["tool_calls"]) if delta.get("tool_calls") else None
    search = obj.get("search_results")

    chunk = StreamChunk(
        text_delta=text or None,
        reasoning_delta=_pick_reasoning(delta),
        usage_snapshot=normalize_usage(obj.get("usage")),
        citations=obj.get("citations") or None,
        tool_results=tool_results,
        image_delta=_pick_images(delta),
        search_snapshot={"results": search} if search else None,
    )
    if not any(getattr(chunk, f) is not None for f in StreamChunk.model_fields):
        return None
    return chunk


def _sse_data(line: str) -> Optional[str]:
    if line.startswith("data: "):
        return line[len("data: "):]
    if line.startswith("data:"):
        return line[len("data:"):].lstrip()
    return None


class OpenAICompatibleProvider:
    """Chat completions client for any OpenAI-compatible endpoint."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 60.0, name: str = "openai") -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.name = name

    @property
    def chat_url(self) -> str:
        if self.base_url.endswith("/v1"):
            return f"{self.base_url}/chat/completions"
        return f"{self.base_url}/v1/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, request: CompletionRequest) -> Dict[str, Any]:
        msg_list: List[Dict[str, str]] = []
        if request.system_prompt:
            msg_list.append({"role": "system", "content": request.system_prompt})
        msg_list.extend(request.messages)
        payload: Dict[str, Any] = {"model": request.model, "messages": msg_list, "stream": request.stream}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _provider_error(self, status: int, body: Any) -> ProviderError:
        return ProviderError(f"{self.name} returned HTTP {status}", status_code=status, body=body, provider=self.name)

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        if request.stream:
            return self._stream(request)
        return await self._complete_once(request)

    async def _complete_once(self, request: CompletionRequest) -> FullResponse:
        timeout = request.timeout or self.timeout
        log.info({"event": "provider.complete", "provider": self.name, "model": request.model})
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(self.chat_url, json=self._payload(request), headers=self._headers())
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise self._provider_error(e.response.status_code, e.response.text) from e
        except httpx.TimeoutException as e:
            raise NetworkError(f"request to {self.name} timed out", provider=self.name) from e
        except httpx.RequestError as e:
            raise NetworkError(str(e) or type(e).__name__, provider=self.name) from e

        choice = (data.get("choices") or [{}])[0] or {}
        message = choice.get("message") or {}
        text = message.get("content") or choice.get("text") or ""
        return FullResponse(
            text=text,
            reasoning=_pick_reasoning(message),
            usage=normalize_usage(data.get("usage")),
            citations=data.get("citations") or None,
        )

    async def _stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        timeout = request.timeout or self.timeout
        signal = request.signal
        assembler = ToolCallAssembler()
        log.info({"event": "provider.stream", "provider": self.name, "model": request.model})
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                async with client.stream("POST", self.chat_url, json=self._payload(request), headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise self._provider_error(resp.status_code, body)
                    async for line in resp.aiter_lines():
                        if signal is not None and signal.cancelled:
                            return
                        data_str = _sse_data(line) if line else None
                        if data_str is None:
                            continue
                        if data_str.strip() == "[DONE]":
                            break
                        try:
                            obj = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if obj.get("error"):
                            raise self._provider_error(resp.status_code, obj)
                        chunk = normalize_chunk(obj, assembler)
                        if chunk is not None:
                            yield chunk
        except httpx.TimeoutException as e:
            raise NetworkError(f"stream from {self.name} timed out", provider=self.name) from e
        except httpx.RequestError as e:
            raise NetworkError(str(e) or type(e).__name__, provider=self.name) from e


def get_provider() -> OpenAICompatibleProvider:
    settings = get_settings()
    if not settings.provider_base_url:
        raise RuntimeError("PROVIDER_BASE_URL is not configured")
    return OpenAICompatibleProvider(
        base_url=str(settings.provider_base_url),
        api_key=settings.provider_api_key,
        timeout=settings.request_timeout_sec,
        name=settings.provider_name,
    )

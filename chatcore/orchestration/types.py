# chatcore/orchestration/types.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from chatcore.orchestration.cancellation import CancellationToken

Role = Literal["user", "assistant", "system"]
MessageStatus = Literal["pending", "searching", "success", "paused", "error"]

TERMINAL_STATUSES = frozenset({"success", "paused", "error"})


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Usage(BaseModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class Metrics(BaseModel):
    time_first_token_ms: int = 0
    time_first_content_ms: int = 0
    time_completion_ms: int = 0
    time_thinking_ms: int = 0
    completion_tokens: Optional[int] = None


class MessageMetadata(BaseModel):
    citations: Optional[List[Any]] = None
    tool_results: Optional[List[Dict[str, Any]]] = None
    generated_images: Optional[List[str]] = None
    web_search: Optional[Dict[str, Any]] = None


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: Role
    content: str = ""
    reasoning_content: Optional[str] = None
    status: MessageStatus = "success"
    usage: Optional[Usage] = None
    metrics: Optional[Metrics] = None
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    ask_id: Optional[str] = None
    model: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "Message":
        return self.model_copy(deep=True)


class StreamChunk(BaseModel):
    """One normalized increment of a provider response.

    ``tool_results`` is a complete snapshot of tool state, not a delta.
    ``image_delta`` holds newly generated image references (urls or data uris).
    """

    text_delta: Optional[str] = None
    reasoning_delta: Optional[str] = None
    usage_snapshot: Optional[Usage] = None
    citations: Optional[List[Any]] = None
    tool_results: Optional[List[Dict[str, Any]]] = None
    image_delta: Optional[List[str]] = None
    search_snapshot: Optional[Dict[str, Any]] = None


class FullResponse(BaseModel):
    text: str = ""
    reasoning: Optional[str] = None
    usage: Optional[Usage] = None
    citations: Optional[List[Any]] = None


class CompletionRequest(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: str
    system_prompt: Optional[str] = None
    messages: List[Dict[str, str]] = Field(default_factory=list)
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = True
    timeout: Optional[float] = None
    signal: Optional[CancellationToken] = Field(default=None, exclude=True)


class Assistant(BaseModel):
    id: str = "default"
    model: str
    prompt: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    context_count: int = 5
    context_size: Optional[int] = None
    stream_output: bool = True
    enable_web_search: bool = False

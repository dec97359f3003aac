# tests/conftest.py
from __future__ import annotations

import asyncio
import os
import tempfile
from typing import Any, Dict, List, Optional, Sequence

# Must be set before chatcore.storage.database is imported anywhere
_DB_DIR = tempfile.mkdtemp(prefix="chatcore-tests-")
os.environ["DB_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["PROVIDER_BASE_URL"] = "http://provider.test"
os.environ["PROVIDER_API_KEY"] = "sk-test"
os.environ.setdefault("LOG_FORMAT", "plain")

import pytest  # noqa: E402

from chatcore.core.settings import AppSettings  # noqa: E402
from chatcore.orchestration.types import CompletionRequest, FullResponse, Message, StreamChunk  # noqa: E402

PROVIDER_URL = "http://provider.test/v1/chat/completions"


class FakeStore:
    """In-memory MessageStore that records every write."""

    def __init__(self) -> None:
        self.topics: Dict[str, List[Message]] = {}
        self.writes: List[Message] = []
        self.fail_writes = False
        # fail only writes of a message in this status
        self.fail_status: Optional[str] = None

    async def get_history(self, conversation_id: str) -> List[Message]:
        return [m.snapshot() for m in self.topics.get(conversation_id, [])]

    async def append_or_replace(self, conversation_id: str, message: Message) -> None:
        if self.fail_writes or (self.fail_status is not None and message.status == self.fail_status):
            raise RuntimeError("store unavailable")
        snap = message.snapshot()
        self.writes.append(snap)
        msgs = self.topics.setdefault(conversation_id, [])
        for idx, m in enumerate(msgs):
            if m.id == snap.id:
                msgs[idx] = snap
                return
        msgs.append(snap)

    async def delete_message(self, conversation_id: str, message_id: str) -> bool:
        msgs = self.topics.get(conversation_id, [])
        for idx, m in enumerate(msgs):
            if m.id == message_id:
                del msgs[idx]
                return True
        return False


class ScriptedProvider:
    """ChatProvider yielding a fixed chunk script.

    ``fail_after`` raises after that many chunks, ``hang`` blocks forever after
    the script, ``delay`` sleeps before every chunk.
    """

    def __init__(
        self,
        chunks: Sequence[StreamChunk] = (),
        *,
        delay: float = 0.0,
        fail_after: Optional[int] = None,
        error: Optional[BaseException] = None,
        hang: bool = False,
        full: Optional[FullResponse] = None,
    ) -> None:
        self.chunks = list(chunks)
        self.delay = delay
        self.fail_after = fail_after
        self.error = error
        self.hang = hang
        self.full = full
        self.requests: List[CompletionRequest] = []
        self.closed = 0

    async def complete(self, request: CompletionRequest) -> Any:
        self.requests.append(request)
        if self.error is not None and self.fail_after is None:
            raise self.error
        if self.full is not None:
            return self.full
        return self._stream()

    async def _stream(self):
        try:
            for idx, chunk in enumerate(self.chunks):
                if self.fail_after is not None and idx == self.fail_after:
                    raise self.error or ConnectionResetError("stream dropped")
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk
            if self.hang:
                await asyncio.Event().wait()
        finally:
            self.closed += 1


class FakeClock:
    """Advances ``step`` seconds on every read."""

    def __init__(self, step: float = 0.1) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


def text_chunks(*parts: str) -> List[StreamChunk]:
    return [StreamChunk(text_delta=p) for p in parts]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings()

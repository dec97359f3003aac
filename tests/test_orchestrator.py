# tests/test_orchestrator.py
from __future__ import annotations

import asyncio

import pytest

from chatcore.core.errors import ProviderError
from chatcore.orchestration.orchestrator import CompletionOrchestrator
from chatcore.orchestration.types import Assistant, FullResponse, Message, StreamChunk, Usage
from chatcore.utils.tokens import approx_tokens

from conftest import FakeClock, ScriptedProvider, text_chunks


def _user(content: str, mid: str | None = None) -> Message:
    fields = {"conversation_id": "c1", "role": "user", "content": content}
    if mid:
        fields["id"] = mid
    return Message(**fields)


class FakeSearch:
    def __init__(self, results=None, error: Exception | None = None) -> None:
        self.results = results or []
        self.error = error
        self.queries: list[str] = []

    async def search(self, query: str):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return {"query": query, "results": self.results}


ASSISTANT = Assistant(model="test-model", prompt="be brief")


@pytest.mark.asyncio
async def test_send_streams_commits_and_releases(store, settings) -> None:
    provider = ScriptedProvider(text_chunks("Hel", "lo"))
    orch = CompletionOrchestrator(provider, store, settings=settings)
    updates: list[Message] = []

    final = await orch.send("c1", _user("hi", "u1"), ASSISTANT, on_response=updates.append)

    assert final.status == "success"
    assert final.content == "Hello"
    assert final.ask_id == "u1"
    assert [u.status for u in updates][0] == "pending"
    assert [u.content for u in updates if u.status == "pending"][-1] == "Hello"
    assert updates[-1].status == "success"

    history = await store.get_history("c1")
    assert [(m.role, m.status) for m in history] == [("user", "success"), ("assistant", "success")]
    assert store.writes[1].status == "pending"

    request = provider.requests[0]
    assert request.system_prompt == "be brief"
    assert request.messages == [{"role": "user", "content": "hi"}]
    assert not orch.is_streaming("c1")


@pytest.mark.asyncio
async def test_reasoning_stream_reports_thinking_time(store, settings) -> None:
    provider = ScriptedProvider(
        [
            StreamChunk(reasoning_delta="thinking.."),
            StreamChunk(reasoning_delta="more.."),
            StreamChunk(text_delta="answer"),
        ]
    )
    orch = CompletionOrchestrator(provider, store, settings=settings, clock=FakeClock())
    final = await orch.send("c1", _user("why?"), ASSISTANT)
    assert final.reasoning_content == "thinking..more.."
    assert final.content == "answer"
    assert final.metrics.time_thinking_ms > 0


@pytest.mark.asyncio
async def test_back_to_back_sends_see_previous_reply(store, settings) -> None:
    provider = ScriptedProvider(text_chunks("first ", "answer"), delay=0.01)
    orch = CompletionOrchestrator(provider, store, settings=settings)

    first, second = await asyncio.gather(
        orch.send("c1", _user("one", "u1"), ASSISTANT),
        orch.send("c1", _user("two", "u2"), ASSISTANT),
    )

    assert first.status == second.status == "success"
    assert provider.requests[1].messages == [
        {"role": "user", "content": "one"},
        {"role": "assistant", "content": "first answer"},
        {"role": "user", "content": "two"},
    ]
    # the first reply was committed before the second task touched the store
    statuses = [(m.id, m.status) for m in store.writes]
    assert statuses.index((first.id, "success")) < statuses.index(("u2", "success"))


@pytest.mark.asyncio
async def test_conversations_run_concurrently(store, settings) -> None:
    slow = ScriptedProvider(text_chunks("x"), hang=True)
    orch = CompletionOrchestrator(slow, store, settings=settings)
    blocked = asyncio.create_task(orch.send("a", _user("wait"), ASSISTANT))
    await asyncio.sleep(0.02)

    orch._provider = ScriptedProvider(text_chunks("quick"))
    other = await asyncio.wait_for(orch.send("b", _user("go"), ASSISTANT), timeout=1)
    assert other.content == "quick"
    assert not blocked.done()
    assert orch.pause_all("a") == 1
    assert (await asyncio.wait_for(blocked, timeout=1)).status == "paused"


@pytest.mark.asyncio
async def test_stream_failure_keeps_partial_text(store, settings) -> None:
    provider = ScriptedProvider(text_chunks("a", "b", "c", "d", "e"), fail_after=2, error=ConnectionResetError("peer reset"))
    orch = CompletionOrchestrator(provider, store, settings=settings)
    final = await orch.send("c1", _user("go"), ASSISTANT)
    assert final.status == "error"
    assert final.content == "ab"
    assert final.error and "peer reset" in final.error
    stored = (await store.get_history("c1"))[-1]
    assert stored.status == "error" and stored.content == "ab"


@pytest.mark.asyncio
async def test_provider_rejection_becomes_error_message(store, settings) -> None:
    provider = ScriptedProvider(error=ProviderError("bad", status_code=401, body='{"error": "invalid api key"}'))
    orch = CompletionOrchestrator(provider, store, settings=settings)
    final = await orch.send("c1", _user("go"), ASSISTANT)
    assert final.status == "error"
    assert final.error == "Provider error 401: invalid api key"
    assert final.content == ""


@pytest.mark.asyncio
async def test_pause_mid_stream(store, settings) -> None:
    provider = ScriptedProvider(text_chunks("one ", "two "), hang=True)
    orch = CompletionOrchestrator(provider, store, settings=settings)
    updates: list[Message] = []
    merged = asyncio.Event()

    def on_response(m: Message) -> None:
        updates.append(m)
        if m.content == "one two ":
            merged.set()

    task = asyncio.create_task(orch.send("c1", _user("talk"), ASSISTANT, on_response=on_response))
    await asyncio.wait_for(merged.wait(), timeout=1)
    reply_id = updates[-1].id

    assert orch.pause(reply_id) is True
    assert updates[-1].status == "paused"
    assert orch.pause(reply_id) is False

    final = await asyncio.wait_for(task, timeout=1)
    assert final.status == "paused"
    assert final.content == "one two "
    assert provider.closed == 1
    assert (await store.get_history("c1"))[-1].status == "paused"


@pytest.mark.asyncio
async def test_pause_after_completion_is_noop(store, settings) -> None:
    orch = CompletionOrchestrator(ScriptedProvider(text_chunks("done")), store, settings=settings)
    final = await orch.send("c1", _user("hi"), ASSISTANT)
    assert orch.pause(final.id) is False
    assert orch.pause("unknown-id") is False
    assert (await store.get_history("c1"))[-1].status == "success"


@pytest.mark.asyncio
async def test_timeout_pauses_and_frees_queue(store, settings) -> None:
    provider = ScriptedProvider(text_chunks("slow "), hang=True)
    orch = CompletionOrchestrator(provider, store, settings=settings)
    final = await asyncio.wait_for(orch.send("c1", _user("hi"), ASSISTANT, timeout=0.05), timeout=2)
    assert final.status == "paused"
    assert final.content == "slow "

    orch._provider = ScriptedProvider(text_chunks("next"))
    follow = await asyncio.wait_for(orch.send("c1", _user("again"), ASSISTANT), timeout=1)
    assert follow.status == "success"


@pytest.mark.asyncio
async def test_usage_backfilled_from_estimate(store, settings) -> None:
    orch = CompletionOrchestrator(ScriptedProvider(text_chunks("twelve chars")), store, settings=settings)
    final = await orch.send("c1", _user("count me"), ASSISTANT)
    assert final.usage.completion_tokens == approx_tokens("twelve chars")
    assert final.metrics.completion_tokens == final.usage.completion_tokens
    assert final.usage.total_tokens == final.usage.prompt_tokens + final.usage.completion_tokens


@pytest.mark.asyncio
async def test_provider_usage_is_kept(store, settings) -> None:
    chunks = text_chunks("ok") + [StreamChunk(usage_snapshot=Usage(prompt_tokens=11, completion_tokens=3, total_tokens=14))]
    orch = CompletionOrchestrator(ScriptedProvider(chunks), store, settings=settings)
    final = await orch.send("c1", _user("hi"), ASSISTANT)
    assert final.usage == Usage(prompt_tokens=11, completion_tokens=3, total_tokens=14)
    assert final.metrics.completion_tokens == 3


@pytest.mark.asyncio
async def test_estimator_failure_sends_full_history(store, settings) -> None:
    for i in range(6):
        await store.append_or_replace("c1", Message(conversation_id="c1", role="user", content=f"old {i}" * 200))

    def broken(text: str) -> int:
        raise RuntimeError("no tokenizer")

    provider = ScriptedProvider(text_chunks("fine"))
    orch = CompletionOrchestrator(provider, store, estimate=broken, settings=settings)
    final = await orch.send("c1", _user("latest"), Assistant(model="m", context_size=10))
    assert final.status == "success"
    assert len(provider.requests[0].messages) == 7


@pytest.mark.asyncio
async def test_history_is_truncated_to_budget(store, settings) -> None:
    for i in range(6):
        await store.append_or_replace("c1", Message(conversation_id="c1", role="user", content="x" * 400))
    provider = ScriptedProvider(text_chunks("fine"))
    orch = CompletionOrchestrator(provider, store, settings=settings)
    # budget 300 -> 240 usable, latest costs 2, each old message 100
    await orch.send("c1", _user("latest"), Assistant(model="m", context_size=300))
    sent = provider.requests[0].messages
    assert len(sent) == 3
    assert sent[-1] == {"role": "user", "content": "latest"}


@pytest.mark.asyncio
async def test_non_streaming_response(store, settings) -> None:
    provider = ScriptedProvider(full=FullResponse(text="all at once", usage=Usage(prompt_tokens=2, completion_tokens=4, total_tokens=6)))
    orch = CompletionOrchestrator(provider, store, settings=settings)
    final = await orch.send("c1", _user("hi"), Assistant(model="m", stream_output=False))
    assert provider.requests[0].stream is False
    assert final.status == "success"
    assert final.content == "all at once"
    assert final.metrics.time_first_token_ms == 0
    assert final.metrics.completion_tokens == 4


@pytest.mark.asyncio
async def test_resend_reuses_reply_and_queues_behind(store, settings) -> None:
    provider = ScriptedProvider(text_chunks("v1"))
    orch = CompletionOrchestrator(provider, store, settings=settings)
    first = await orch.send("c1", _user("question", "u1"), ASSISTANT)

    provider.chunks = text_chunks("v2")
    provider.delay = 0.02
    pending = asyncio.create_task(orch.send("c1", _user("other", "u2"), ASSISTANT))
    await asyncio.sleep(0)
    again = await orch.resend(first, ASSISTANT, content="question, edited")
    assert pending.done()

    assert again.id == first.id
    assert again.content == "v2"
    history = await store.get_history("c1")
    assert [m.content for m in history if m.role == "user"] == ["question, edited", "other"]
    assert sum(1 for m in history if m.ask_id == "u1") == 1
    # resent request is cut at the edited question
    assert provider.requests[-1].messages == [{"role": "user", "content": "question, edited"}]


@pytest.mark.asyncio
async def test_resend_from_user_message(store, settings) -> None:
    orch = CompletionOrchestrator(ScriptedProvider(text_chunks("a")), store, settings=settings)
    first = await orch.send("c1", _user("q", "u1"), ASSISTANT)
    user = (await store.get_history("c1"))[0]
    again = await orch.resend(user, ASSISTANT)
    assert again.id == first.id
    assert len(await store.get_history("c1")) == 2


@pytest.mark.asyncio
async def test_resend_orphan_reply_rejects(store, settings) -> None:
    orch = CompletionOrchestrator(ScriptedProvider(), store, settings=settings)
    orphan = Message(conversation_id="c1", role="assistant", ask_id="missing")
    with pytest.raises(LookupError):
        await orch.resend(orphan, ASSISTANT)


@pytest.mark.asyncio
async def test_previous_reasoning_is_not_sent_back(store, settings) -> None:
    await store.append_or_replace("c1", Message(id="u0", conversation_id="c1", role="user", content="earlier"))
    await store.append_or_replace(
        "c1", Message(conversation_id="c1", role="assistant", ask_id="u0", content="<think>scratch</think>final")
    )
    provider = ScriptedProvider(text_chunks("ok"))
    orch = CompletionOrchestrator(provider, store, settings=settings)
    await orch.send("c1", _user("next"), ASSISTANT)
    assert provider.requests[0].messages[1] == {"role": "assistant", "content": "final"}


@pytest.mark.asyncio
async def test_web_search_results_attached_and_injected(store, settings) -> None:
    search = FakeSearch([{"title": "Tea", "url": "https://tea.example", "content": "green"}])
    provider = ScriptedProvider(text_chunks("answer"))
    orch = CompletionOrchestrator(provider, store, web_search=search, settings=settings)
    seen: list[str] = []
    final = await orch.send(
        "c1", _user("tea?"), Assistant(model="m", enable_web_search=True), on_response=lambda m: seen.append(m.status)
    )
    assert search.queries == ["tea?"]
    assert "searching" in seen
    assert final.metadata.web_search["results"][0]["url"] == "https://tea.example"
    sent = provider.requests[0].messages
    assert sent[0]["role"] == "system" and "https://tea.example" in sent[0]["content"]
    assert sent[-1] == {"role": "user", "content": "tea?"}


@pytest.mark.asyncio
async def test_web_search_failure_does_not_abort(store, settings) -> None:
    orch = CompletionOrchestrator(
        ScriptedProvider(text_chunks("still here")),
        store,
        web_search=FakeSearch(error=TimeoutError("search down")),
        settings=settings,
    )
    final = await orch.send("c1", _user("q"), Assistant(model="m", enable_web_search=True))
    assert final.status == "success"
    assert final.metadata.web_search is None


@pytest.mark.asyncio
async def test_subscribers_and_broken_listener(store, settings) -> None:
    orch = CompletionOrchestrator(ScriptedProvider(text_chunks("a", "b")), store, settings=settings)
    got: list[str] = []

    def broken(_: Message) -> None:
        raise RuntimeError("ui crashed")

    orch.subscribe(broken)
    unsubscribe = orch.subscribe(lambda m: got.append(m.status))
    final = await orch.send("c1", _user("hi"), ASSISTANT)
    assert final.status == "success"
    assert got[0] == "pending" and got[-1] == "success"

    unsubscribe()
    count = len(got)
    await orch.send("c1", _user("again"), ASSISTANT)
    assert len(got) == count


@pytest.mark.asyncio
async def test_store_failure_rejects_only_that_caller(store, settings) -> None:
    orch = CompletionOrchestrator(ScriptedProvider(text_chunks("ok")), store, settings=settings)
    store.fail_writes = True
    with pytest.raises(RuntimeError):
        await orch.send("c1", _user("lost"), ASSISTANT)
    store.fail_writes = False
    final = await orch.send("c1", _user("kept"), ASSISTANT)
    assert final.status == "success"


@pytest.mark.asyncio
async def test_delete_message_waits_for_running_completion(store, settings) -> None:
    provider = ScriptedProvider(text_chunks("a", "b"), delay=0.02)
    orch = CompletionOrchestrator(provider, store, settings=settings)
    sending = asyncio.create_task(orch.send("c1", _user("hi", "u1"), ASSISTANT))
    await asyncio.sleep(0)
    assert await orch.delete_message("c1", "u1") is True
    assert sending.done()
    assert [m.role for m in await store.get_history("c1")] == ["assistant"]
    assert await orch.delete_message("c1", "u1") is False
    await orch.idle("c1")
    await orch.idle("never-seen")


class GeneratorProvider:
    """complete() is itself an async generator."""

    def __init__(self, *parts: str) -> None:
        self.parts = parts

    async def complete(self, request):
        for part in self.parts:
            yield StreamChunk(text_delta=part)


class RaisingProvider:
    def complete(self, request):
        raise TypeError("bad request shape")


class ShapelessProvider:
    async def complete(self, request):
        return 42


class BlockingSearch:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def search(self, query: str):
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


@pytest.mark.asyncio
async def test_async_generator_provider_streams(store, settings) -> None:
    orch = CompletionOrchestrator(GeneratorProvider("hel", "lo"), store, settings=settings)
    final = await orch.send("c1", _user("hi"), ASSISTANT)
    assert final.status == "success"
    assert final.content == "hello"
    assert (await store.get_history("c1"))[-1].content == "hello"


@pytest.mark.asyncio
async def test_provider_raising_before_any_await_becomes_error(store, settings) -> None:
    orch = CompletionOrchestrator(RaisingProvider(), store, settings=settings)
    final = await orch.send("c1", _user("hi"), ASSISTANT)
    assert final.status == "error"
    assert final.error == "TypeError: bad request shape"
    assert (await store.get_history("c1"))[-1].status == "error"
    assert not orch.is_streaming("c1")


@pytest.mark.asyncio
async def test_provider_returning_unknown_shape_becomes_error(store, settings) -> None:
    orch = CompletionOrchestrator(ShapelessProvider(), store, settings=settings)
    final = await orch.send("c1", _user("hi"), ASSISTANT)
    assert final.status == "error"
    assert final.error.startswith("TypeError: provider returned int")


@pytest.mark.asyncio
async def test_failure_after_placeholder_is_committed_as_error(store, settings) -> None:
    provider = ScriptedProvider(text_chunks("never"))
    orch = CompletionOrchestrator(provider, store, web_search=FakeSearch(), settings=settings)
    store.fail_status = "searching"
    updates: list[Message] = []

    final = await orch.send("c1", _user("q"), Assistant(model="m", enable_web_search=True), on_response=updates.append)

    assert final.status == "error"
    assert final.error == "RuntimeError: store unavailable"
    assert updates[-1].status == "error"
    assert (await store.get_history("c1"))[-1].status == "error"
    assert provider.requests == []
    assert not orch.is_streaming("c1")

    store.fail_status = None
    again = await orch.send("c1", _user("q2"), ASSISTANT)
    assert again.status == "success"


@pytest.mark.asyncio
async def test_pause_during_web_search(store, settings) -> None:
    search = BlockingSearch()
    provider = ScriptedProvider(text_chunks("late"))
    orch = CompletionOrchestrator(provider, store, web_search=search, settings=settings)
    updates: list[Message] = []

    task = asyncio.create_task(
        orch.send("c1", _user("q"), Assistant(model="m", enable_web_search=True), on_response=updates.append)
    )
    await asyncio.wait_for(search.started.wait(), timeout=1)
    assert updates[-1].status == "searching"

    assert orch.pause(updates[-1].id) is True
    final = await asyncio.wait_for(task, timeout=1)
    assert final.status == "paused"
    assert final.content == ""
    assert search.cancelled
    assert provider.requests == []
    assert (await store.get_history("c1"))[-1].status == "paused"


@pytest.mark.asyncio
async def test_delete_group_and_clear(store, settings) -> None:
    orch = CompletionOrchestrator(ScriptedProvider(text_chunks("a")), store, settings=settings)
    await orch.send("c1", _user("one", "u1"), ASSISTANT)
    await orch.send("c1", _user("two", "u2"), ASSISTANT)

    assert await orch.delete_group("c1", "u1") == 2
    remaining = await store.get_history("c1")
    assert [(m.role, m.id if m.role == "user" else m.ask_id) for m in remaining] == [("user", "u2"), ("assistant", "u2")]
    assert await orch.delete_group("c1", "u1") == 0

    assert await orch.clear("c1") == 2
    assert await store.get_history("c1") == []
    assert await orch.clear("c1") == 0


@pytest.mark.asyncio
async def test_clear_waits_for_running_completion(store, settings) -> None:
    provider = ScriptedProvider(text_chunks("a", "b"), delay=0.02)
    orch = CompletionOrchestrator(provider, store, settings=settings)
    sending = asyncio.create_task(orch.send("c1", _user("hi", "u1"), ASSISTANT))
    await asyncio.sleep(0)
    assert await orch.clear("c1") == 2
    assert sending.done()
    assert sending.result().status == "success"
    assert await store.get_history("c1") == []

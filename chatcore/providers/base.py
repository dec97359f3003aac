# chatcore/providers/base.py
from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Protocol, Union

from chatcore.orchestration.types import CompletionRequest, FullResponse, StreamChunk

CompletionResult = Union[AsyncIterator[StreamChunk], FullResponse]


class ChatProvider(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Start a completion.

        Returns an async iterator of normalized ``StreamChunk`` when
        ``request.stream`` is set and the model can stream, otherwise a single
        ``FullResponse``. Provider specific payload shapes never leak past this
        call. Implementations should stop reading once ``request.signal`` is
        cancelled.
        """
        ...


class WebSearchBackend(Protocol):
    async def search(self, query: str) -> Dict[str, Any]:
        """Return ``{"query": str, "results": [{"title", "url", "content"}, ...]}``."""
        ...


def format_search_results(results: List[Dict[str, Any]]) -> str:
    body = "\n".join(
        f"[{r.get('title') or r.get('url')}]({r.get('url')})\n{r.get('content') or ''}\n\n" for r in results
    )
    return f"Web search results:\n\n{body}"

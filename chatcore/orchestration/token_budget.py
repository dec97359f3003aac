from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from chatcore.core.errors import TruncationFailure
from chatcore.core.settings import AppSettings, get_settings
from chatcore.orchestration.types import Assistant, Message
from chatcore.utils.tokens import approx_tokens

TokenEstimator = Callable[[str], int]

CHAT_ROLES = ("user", "assistant")


def _count(estimate: TokenEstimator, msg: Message) -> int:
    try:
        n = int(estimate(msg.content or ""))
    except Exception as exc:  # noqa: BLE001
        raise TruncationFailure(f"token estimation failed for message {msg.id}: {exc}") from exc
    if n < 0:
        raise TruncationFailure(f"token estimator returned {n} for message {msg.id}")
    return n


def truncate(
    history: Sequence[Message],
    budget_tokens: float,
    estimate: TokenEstimator = approx_tokens,
    reserve_ratio: float = 0.8,
) -> List[Message]:
    """Select the messages of ``history`` that fit into ``budget_tokens``.

    System messages and the newest user message are always kept. Older chat
    messages are then admitted newest-first while they fit; a message that does
    not fit is skipped and older ones are still tried. The result keeps the
    original order. Raises ``TruncationFailure`` when the estimator fails.
    """
    if len(history) <= 1:
        return list(history)

    latest_user_idx: Optional[int] = None
    for idx in range(len(history) - 1, -1, -1):
        if history[idx].role == "user":
            latest_user_idx = idx
            break

    kept: set[int] = set()
    used = 0
    for idx, msg in enumerate(history):
        if msg.role not in CHAT_ROLES:
            kept.add(idx)
            used += _count(estimate, msg)
    if latest_user_idx is not None:
        kept.add(latest_user_idx)
        used += _count(estimate, history[latest_user_idx])

    available = budget_tokens * reserve_ratio - used

    # candidates newest-first; equal positions cannot occur so order is total
    for idx in range(len(history) - 1, -1, -1):
        if idx in kept:
            continue
        cost = _count(estimate, history[idx])
        if used + cost <= available:
            kept.add(idx)
            used += cost

    return [history[idx] for idx in sorted(kept)]


def context_budget(assistant: Assistant, settings: Optional[AppSettings] = None) -> int:
    """Approximate token budget for an assistant's context window."""
    st = settings or get_settings()
    if assistant.context_size and assistant.context_size > 0:
        return int(assistant.context_size)
    if assistant.context_count and assistant.context_count > 0:
        return int(assistant.context_count) * int(st.ctx_tokens_per_message)
    return int(st.ctx_default_budget_tokens)

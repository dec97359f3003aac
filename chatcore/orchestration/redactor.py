# chatcore/orchestration/redactor.py
from __future__ import annotations

import re
from typing import Dict, Iterable, List

from chatcore.orchestration.types import Message

# Inline chain-of-thought some models put in the answer channel
_THINK_RX = re.compile(r"(?is)<think>.*?</think>")
_RESPONSE_MARKER_RX = re.compile(r"(?s)^.*?###Response\s*")


def redact_fragment(text: str) -> str:
    """Strip inline reasoning from assistant output before it is sent back as history.

    - Removes <think>...</think> blocks
    - Drops everything up to a ``###Response`` marker
    """
    if not text:
        return text
    cleaned = _THINK_RX.sub("", text)
    cleaned = _RESPONSE_MARKER_RX.sub("", cleaned, count=1)
    return cleaned.strip()


def to_request_messages(history: Iterable[Message]) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for m in history:
        content = redact_fragment(m.content) if m.role == "assistant" else m.content
        if m.role == "assistant" and not content:
            continue
        out.append({"role": m.role, "content": content or ""})
    return out

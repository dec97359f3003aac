# chatcore/core/errors.py
"""Error taxonomy for the completion pipeline.

Everything raised across module boundaries derives from ``ChatCoreError`` so
the orchestrator can turn it into a terminal message state in one place.
"""
from __future__ import annotations

import json
from typing import Any, Optional


class ChatCoreError(Exception):
    """Base class.

    Attributes:
        code: machine readable code, e.g. ``"provider_error"``.
        message: human readable summary.
    """

    code = "chatcore_error"

    def __init__(self, message: str, **extra: Any) -> None:
        self.message = message
        self.extra = extra
        super().__init__(message)


class NetworkError(ChatCoreError):
    """Connectivity failure or timeout talking to the provider. Never retried by the core."""

    code = "network_error"


class ProviderError(ChatCoreError):
    """The provider answered with a non-2xx status."""

    code = "provider_error"

    def __init__(self, message: str, *, status_code: int = 0, body: Any = None, **extra: Any) -> None:
        super().__init__(message, **extra)
        self.status_code = status_code
        self.body = body


class CompletionCancelled(ChatCoreError):
    """Raised by a provider that noticed its cancellation token. Normalized to ``paused``."""

    code = "cancelled"


class TruncationFailure(ChatCoreError):
    """Token estimation failed while truncating history. Recovered locally."""

    code = "truncation_failure"


def _extract_message(body: Any) -> Optional[str]:
    # Provider error payloads vary: {"error": {"message"}}, {"error": "..."}, {"message"}, {"detail"}
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        text = body.strip()
        if not text:
            return None
        try:
            parsed = json.loads(text)
        except ValueError:
            return text[:500]
        return _extract_message(parsed) or text[:500]
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            nested = _extract_message(err)
            if nested:
                return nested
        elif isinstance(err, str) and err:
            return err
        for key in ("message", "detail", "msg", "error_description"):
            val = body.get(key)
            if isinstance(val, str) and val:
                return val
            if isinstance(val, (dict, list)) and val:
                return json.dumps(val, ensure_ascii=False)[:500]
        return None
    if isinstance(body, list) and body:
        return _extract_message(body[0])
    return None


def summarize_error(exc: BaseException) -> str:
    """Short user-visible summary for a failed completion."""
    if isinstance(exc, ProviderError):
        detail = _extract_message(exc.body) or exc.message
        if exc.status_code:
            return f"Provider error {exc.status_code}: {detail}"
        return f"Provider error: {detail}"
    if isinstance(exc, NetworkError):
        return f"Failed to reach provider: {exc.message}"
    if isinstance(exc, ChatCoreError):
        return exc.message
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__

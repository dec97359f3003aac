# chatcore/orchestration/cancellation.py
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

log = logging.getLogger("chatcore.cancel")


class CancellationToken:
    """Cooperative cancellation signal for one in-flight completion.

    The token never interrupts anything by itself: consumers poll ``cancelled``
    at their suspension points, or ``await wait()`` to race it against I/O.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        state = f"cancelled:{self.reason}" if self.cancelled else "active"
        return f"<CancellationToken {state}>"


class CancellationRegistry:
    """Maps a correlation key (the triggering user message id) to its token."""

    def __init__(self) -> None:
        self._tokens: Dict[str, CancellationToken] = {}

    def register(self, key: str) -> CancellationToken:
        token = CancellationToken()
        previous = self._tokens.get(key)
        if previous is not None:
            # old owner keeps its token but can no longer be reached by key
            log.warning({"event": "cancel.register_replaced", "key": key})
        self._tokens[key] = token
        return token

    def get(self, key: str) -> Optional[CancellationToken]:
        return self._tokens.get(key)

    def cancel(self, key: str, reason: str = "cancelled") -> bool:
        token = self._tokens.get(key)
        if token is None:
            return False
        if token.cancel(reason):
            log.info({"event": "cancel.signalled", "key": key, "reason": reason})
        return True

    def release(self, key: str, token: Optional[CancellationToken] = None) -> None:
        current = self._tokens.get(key)
        if current is None:
            return
        if token is not None and current is not token:
            return
        del self._tokens[key]

    def __contains__(self, key: object) -> bool:
        return key in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

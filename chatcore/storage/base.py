# chatcore/storage/base.py
from __future__ import annotations

from typing import List, Protocol

from chatcore.orchestration.types import Message


class MessageStore(Protocol):
    """Ordered message history per conversation."""

    async def get_history(self, conversation_id: str) -> List[Message]: ...

    async def append_or_replace(self, conversation_id: str, message: Message) -> None: ...

    async def delete_message(self, conversation_id: str, message_id: str) -> bool: ...

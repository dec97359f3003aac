# chatcore/storage/repo.py
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import func, select

from chatcore.orchestration.types import Message, MessageMetadata, Metrics, Usage
from chatcore.storage.database import session_scope
from chatcore.storage.models import StoredMessage, Topic


def _utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _dump(model: Any) -> Optional[str]:
    if model is None:
        return None
    return json.dumps(model.model_dump(exclude_none=True), ensure_ascii=False)


def _load(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    return json.loads(raw)


def to_domain(row: StoredMessage) -> Message:
    usage = _load(row.usage_json)
    metrics = _load(row.metrics_json)
    return Message(
        id=row.id,
        conversation_id=row.topic_id,
        role=row.role,
        content=row.content or "",
        reasoning_content=row.reasoning_content,
        status=row.status,
        usage=Usage(**usage) if usage is not None else None,
        metrics=Metrics(**metrics) if metrics is not None else None,
        metadata=MessageMetadata(**(_load(row.metadata_json) or {})),
        ask_id=row.ask_id,
        model=row.model,
        error=row.error,
        created_at=(row.created_at or datetime.utcnow()).replace(tzinfo=timezone.utc),
    )


def _apply(row: StoredMessage, message: Message) -> None:
    row.role = message.role
    row.content = message.content or ""
    row.reasoning_content = message.reasoning_content
    row.status = message.status
    row.ask_id = message.ask_id
    row.model = message.model
    row.error = message.error
    row.usage_json = _dump(message.usage)
    row.metrics_json = _dump(message.metrics)
    row.metadata_json = _dump(message.metadata)


def create_topic(name: Optional[str] = None, topic_id: Optional[str] = None) -> Topic:
    th = Topic(id=topic_id or uuid.uuid4().hex, name=name)
    with session_scope() as s:
        s.add(th)
    return th


def get_topic(topic_id: str) -> Optional[Topic]:
    with session_scope() as s:
        return s.get(Topic, topic_id)


def get_history(topic_id: str) -> List[Message]:
    with session_scope() as s:
        q = (
            s.query(StoredMessage)
            .filter(StoredMessage.topic_id == topic_id)
            .order_by(StoredMessage.position.asc())
        )
        return [to_domain(m) for m in q]


def append_or_replace(topic_id: str, message: Message) -> None:
    """Insert ``message`` at the end of the topic, or update it in place when its id exists."""
    now = datetime.utcnow()
    with session_scope() as s:
        topic = s.get(Topic, topic_id)
        if topic is None:
            topic = Topic(id=topic_id, created_at=now)
            s.add(topic)
        row = s.get(StoredMessage, message.id)
        if row is not None and row.topic_id != topic_id:
            raise ValueError(f"message {message.id} belongs to topic {row.topic_id}, not {topic_id}")
        if row is None:
            last = s.execute(
                select(func.max(StoredMessage.position)).where(StoredMessage.topic_id == topic_id)
            ).scalar()
            row = StoredMessage(
                id=message.id,
                topic_id=topic_id,
                position=(last + 1) if last is not None else 0,
                created_at=_utc_naive(message.created_at),
            )
            s.add(row)
        _apply(row, message)
        topic.updated_at = now


def delete_message(topic_id: str, message_id: str) -> bool:
    with session_scope() as s:
        row = s.get(StoredMessage, message_id)
        if row is None or row.topic_id != topic_id:
            return False
        s.delete(row)
        topic = s.get(Topic, topic_id)
        if topic is not None:
            topic.updated_at = datetime.utcnow()
        return True


class SqlMessageStore:
    """``MessageStore`` backed by the SQL repo functions above."""

    async def get_history(self, conversation_id: str) -> List[Message]:
        return get_history(conversation_id)

    async def append_or_replace(self, conversation_id: str, message: Message) -> None:
        append_or_replace(conversation_id, message)

    async def delete_message(self, conversation_id: str, message_id: str) -> bool:
        return delete_message(conversation_id, message_id)

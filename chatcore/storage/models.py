# chatcore/storage/models.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Topic(Base):
    __tablename__ = "topics"

    id = Column(String(64), primary_key=True)
    name = Column(String(256), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    messages = relationship(
        "StoredMessage",
        back_populates="topic",
        cascade="all, delete-orphan",
        order_by="StoredMessage.position",
    )


class StoredMessage(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True)
    topic_id = Column(String(64), ForeignKey("topics.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    role = Column(String(16), nullable=False)  # user|assistant|system
    content = Column(Text, nullable=False, default="")
    reasoning_content = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="success")
    ask_id = Column(String(64), nullable=True, index=True)
    model = Column(String(128), nullable=True)
    error = Column(Text, nullable=True)

    # JSON serialized sub-objects
    usage_json = Column(Text, nullable=True)
    metrics_json = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    topic = relationship("Topic", back_populates="messages")

    __table_args__ = (
        CheckConstraint("role in ('system','user','assistant')", name="ck_messages_role"),
        CheckConstraint(
            "status in ('pending','searching','success','paused','error')", name="ck_messages_status"
        ),
        UniqueConstraint("topic_id", "position", name="uq_messages_topic_position"),
    )

# packages/storage/models.py
from __future__ import annotations

from datetime import datetime, UTC

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

MESSAGE_STATUSES = ("pending", "streaming", "reasoning", "done", "error")
ACTIVE_STATUSES = ("pending", "streaming", "reasoning")
TERMINAL_STATUSES = ("done", "error")
STOP_REASONS = ("completed", "stopped", "error")


def utcnow() -> datetime:
    # naive UTC, as stored by SQLite
    return datetime.now(UTC).replace(tzinfo=None)


class Thread(Base):
    __tablename__ = "threads"

    id = Column(String(64), primary_key=True)
    title = Column(String(256), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # mirrors the active message; `reasoning` is shown as `streaming`
    status = Column(String(16), nullable=False, default="pending")
    is_streaming = Column(Boolean, nullable=False, default=False)

    messages = relationship("Message", back_populates="thread", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("status in ('pending','streaming','done','error')", name="ck_threads_status"),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True)
    thread_id = Column(String(64), ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)  # order within the thread
    role = Column(String(32), nullable=False)  # system|user|assistant
    content = Column(Text, nullable=False, default="")
    reasoning = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="done")
    stop_reason = Column(String(16), nullable=True)
    model = Column(String(128), nullable=True)
    generation_id = Column(String(64), nullable=True)  # lease of the owning orchestrator

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    thread = relationship("Thread", back_populates="messages")

    __table_args__ = (
        CheckConstraint("role in ('system','user','assistant')", name="ck_messages_role"),
        CheckConstraint(
            "status in ('pending','streaming','reasoning','done','error')", name="ck_messages_status"
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ChunkLog(Base):
    """Header row of a per-message chunk log; carries the TTL."""

    __tablename__ = "chunk_logs"

    message_id = Column(String(64), primary_key=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    completed_status = Column(String(16), nullable=True)

    entries = relationship(
        "ChunkLogEntry", back_populates="log", cascade="all, delete-orphan", order_by="ChunkLogEntry.id"
    )


class ChunkLogEntry(Base):
    __tablename__ = "chunk_log_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(
        String(64), ForeignKey("chunk_logs.message_id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind = Column(String(16), nullable=False, default="content")  # content|reasoning|completion
    text = Column(Text, nullable=False, default="")

    log = relationship("ChunkLog", back_populates="entries")


class StopSignal(Base):
    __tablename__ = "stop_signals"

    message_id = Column(String(64), primary_key=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)

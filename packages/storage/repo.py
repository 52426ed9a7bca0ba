# packages/storage/repo.py
from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, update
from sqlalchemy.orm import Session

from packages.core.errors import (
    GenerationConflict,
    InvalidStatusTransition,
    MessageNotFound,
    ThreadNotFound,
)
from packages.core.metrics import WRITES_REJECTED
from packages.storage.database import session_scope
from packages.storage.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Message,
    Thread,
    utcnow,
)

log = logging.getLogger("app.store")

# pending -> streaming|reasoning -> done|error; streaming and reasoning may alternate
_TRANSITIONS = {
    "pending": {"streaming", "reasoning"},
    "streaming": {"reasoning", "done", "error"},
    "reasoning": {"streaming", "done", "error"},
}
_DEFAULT_STOP_REASON = {"done": "completed", "error": "error"}


# ---------- threads ----------

def create_thread(title: Optional[str] = None) -> Thread:
    th = Thread(id=uuid.uuid4().hex, title=title, status="pending", is_streaming=False)
    with session_scope() as s:
        s.add(th)
    return th


def get_thread(thread_id: str) -> Optional[Thread]:
    with session_scope() as s:
        return s.get(Thread, thread_id)


def set_thread_streaming(thread_id: str, flag: bool) -> bool:
    with session_scope() as s:
        th = s.get(Thread, thread_id)
        if th is None:
            return False
        th.is_streaming = flag
        s.add(th)
        return True


def _mirror_thread(s: Session, thread_id: str, status: str) -> None:
    th = s.get(Thread, thread_id)
    if th is None:
        return
    th.status = "streaming" if status == "reasoning" else status
    if status in TERMINAL_STATUSES:
        th.is_streaming = False
    s.add(th)


# ---------- messages ----------

def _next_position(s: Session, thread_id: str) -> int:
    current = s.query(func.max(Message.position)).filter(Message.thread_id == thread_id).scalar()
    return (current or 0) + 1


def append_message(
    thread_id: str,
    role: str,
    content: str,
    *,
    status: str = "done",
    model: Optional[str] = None,
) -> Message:
    with session_scope() as s:
        if s.get(Thread, thread_id) is None:
            raise ThreadNotFound(thread_id)
        msg = Message(
            id=uuid.uuid4().hex,
            thread_id=thread_id,
            position=_next_position(s, thread_id),
            role=role,
            content=content,
            status=status,
            stop_reason=_DEFAULT_STOP_REASON.get(status) if role == "assistant" else None,
            model=model,
        )
        s.add(msg)
    return msg


def get_message(message_id: str) -> Optional[Message]:
    with session_scope() as s:
        return s.get(Message, message_id)


def list_message_history(thread_id: str, before_message_id: Optional[str] = None) -> List[Message]:
    """Return the thread's messages in order, optionally cut at `before_message_id` (exclusive)."""
    with session_scope() as s:
        items = list(
            s.query(Message)
            .filter(Message.thread_id == thread_id)
            .order_by(Message.position.asc(), Message.created_at.asc())
        )
    if before_message_id:
        trimmed = []
        for m in items:
            if m.id == before_message_id:
                break
            trimmed.append(m)
        items = trimmed
    return items


def active_message_for_thread(thread_id: str) -> Optional[Message]:
    with session_scope() as s:
        return (
            s.query(Message)
            .filter(Message.thread_id == thread_id, Message.status.in_(ACTIVE_STATUSES))
            .order_by(Message.position.desc())
            .first()
        )


def reap_stale_generations(thread_id: str, older_than_sec: float) -> int:
    """Finalize as error any streaming/reasoning message not written for `older_than_sec`.

    Covers an orchestrator that died without finalizing (process killed, host timeout).
    """
    cutoff = utcnow() - timedelta(seconds=older_than_sec)
    with session_scope() as s:
        stale = [
            m.id
            for m in s.query(Message).filter(
                Message.thread_id == thread_id,
                Message.status.in_(("streaming", "reasoning")),
                Message.updated_at < cutoff,
            )
        ]
    reaped = 0
    for mid in stale:
        if finalize(mid, status="error", stop_reason="error"):
            reaped += 1
    if reaped:
        log.warning({"event": "store.reaped_stale", "thread_id": thread_id, "count": reaped})
    return reaped


def prepare_for_stream(thread_id: str, content: str, model: str) -> Tuple[Message, Message]:
    """Save the user's message and an empty `pending` assistant placeholder."""
    with session_scope() as s:
        th = s.get(Thread, thread_id)
        if th is None:
            raise ThreadNotFound(thread_id)
        busy = (
            s.query(Message)
            .filter(Message.thread_id == thread_id, Message.status.in_(("streaming", "reasoning")))
            .first()
        )
        if busy is not None:
            raise GenerationConflict(f"thread {thread_id} already has an active message {busy.id}")
        # unclaimed placeholders never produced anything; drop them
        s.execute(delete(Message).where(Message.thread_id == thread_id, Message.status == "pending"))
        pos = _next_position(s, thread_id)
        user = Message(
            id=uuid.uuid4().hex, thread_id=thread_id, position=pos, role="user",
            content=content, status="done", model=model,
        )
        assistant = Message(
            id=uuid.uuid4().hex, thread_id=thread_id, position=pos + 1, role="assistant",
            content="", status="pending", model=model,
        )
        s.add_all([user, assistant])
        _mirror_thread(s, thread_id, "pending")
    return user, assistant


def regenerate(message_id: str) -> Message:
    """Drop everything after the originating user message and create a fresh placeholder."""
    with session_scope() as s:
        msg = s.get(Message, message_id)
        if msg is None:
            raise MessageNotFound(message_id)
        items = list(
            s.query(Message).filter(Message.thread_id == msg.thread_id).order_by(Message.position.asc())
        )
        if any(m.status in ("streaming", "reasoning") for m in items):
            raise GenerationConflict(f"thread {msg.thread_id} has an active message")
        if msg.role == "user":
            user = msg
        else:
            earlier = [m for m in items if m.position < msg.position]
            user = earlier[-1] if earlier else None
            if user is None or user.role != "user":
                raise MessageNotFound(f"no user message before {message_id}")
        for m in items:
            if m.position > user.position:
                s.delete(m)
        s.flush()
        placeholder = Message(
            id=uuid.uuid4().hex, thread_id=user.thread_id, position=user.position + 1,
            role="assistant", content="", status="pending", model=user.model,
        )
        s.add(placeholder)
        _mirror_thread(s, user.thread_id, "pending")
    return placeholder


# ---------- message record store: conditional writes ----------

def claim_generation(message_id: str, thread_id: Optional[str] = None, stop_requested: bool = False) -> str:
    """Move a `pending` placeholder to `streaming` and stamp a fresh generation id.

    Raises GenerationConflict if the message is not pending, so a second
    generation for the same message can never start. With `stop_requested`
    the thread keeps `is_streaming` off so the cancel that arrived first wins.
    """
    gid = uuid.uuid4().hex
    with session_scope() as s:
        msg = s.get(Message, message_id)
        if msg is None or (thread_id is not None and msg.thread_id != thread_id):
            raise MessageNotFound(message_id)
        if msg.role != "assistant":
            raise GenerationConflict(f"message {message_id} is not an assistant placeholder")
        res = s.execute(
            update(Message)
            .where(Message.id == message_id, Message.status == "pending")
            .values(status="streaming", generation_id=gid, updated_at=utcnow())
        )
        if res.rowcount == 0:
            raise GenerationConflict(f"message {message_id} is already {msg.status}")
        _mirror_thread(s, msg.thread_id, "streaming")
        th = s.get(Thread, msg.thread_id)
        if th is not None and not stop_requested:
            th.is_streaming = True
    return gid


def try_update(
    message_id: str,
    *,
    content: Optional[str] = None,
    reasoning: Optional[str] = None,
    status: Optional[str] = None,
    stop_reason: Optional[str] = None,
    generation_id: Optional[str] = None,
) -> bool:
    """Apply a partial patch unless the record is terminal.

    Returns False (and changes nothing) when the message is already done/error,
    or when `generation_id` is given and another generation owns the message.
    Invalid status transitions raise InvalidStatusTransition.
    """
    if stop_reason is not None and status not in TERMINAL_STATUSES:
        raise ValueError("stop_reason is only set together with a terminal status")
    with session_scope() as s:
        msg = s.get(Message, message_id)
        if msg is None:
            raise MessageNotFound(message_id)
        if msg.status in TERMINAL_STATUSES or (
            generation_id is not None and msg.generation_id != generation_id
        ):
            WRITES_REJECTED.inc()
            return False
        changing = status is not None and status != msg.status
        if changing and status not in _TRANSITIONS.get(msg.status, set()):
            raise InvalidStatusTransition(msg.status, status)

        values = {"updated_at": utcnow()}
        if content is not None:
            values["content"] = content
        if reasoning is not None:
            values["reasoning"] = reasoning
        if changing:
            values["status"] = status
        if status in TERMINAL_STATUSES:
            values["stop_reason"] = stop_reason or _DEFAULT_STOP_REASON[status]

        stmt = update(Message).where(Message.id == message_id)
        # compare-and-set against what was read: a concurrent finalize wins
        stmt = stmt.where(Message.status == msg.status) if changing else stmt.where(
            Message.status.in_(ACTIVE_STATUSES)
        )
        if generation_id is not None:
            stmt = stmt.where(Message.generation_id == generation_id)
        res = s.execute(stmt.values(**values))
        if res.rowcount == 0:
            WRITES_REJECTED.inc()
            return False
        if changing:
            _mirror_thread(s, msg.thread_id, status)
        return True


def finalize(
    message_id: str,
    *,
    status: str,
    stop_reason: Optional[str] = None,
    content: Optional[str] = None,
    reasoning: Optional[str] = None,
    generation_id: Optional[str] = None,
) -> bool:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"finalize needs a terminal status, got {status!r}")
    return try_update(
        message_id,
        content=content,
        reasoning=reasoning,
        status=status,
        stop_reason=stop_reason,
        generation_id=generation_id,
    )

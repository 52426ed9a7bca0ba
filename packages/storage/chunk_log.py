# packages/storage/chunk_log.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from packages.core.errors import ChunkLogUnavailable
from packages.core.metrics import CHUNKS_APPENDED
from packages.core.settings import get_settings
from packages.storage.database import session_scope
from packages.storage.models import ChunkLog, ChunkLogEntry, utcnow

log = logging.getLogger("app.chunk_log")

MARKER_KIND = "completion"


@dataclass(frozen=True)
class ChunkEntry:
    kind: str
    text: str

    @property
    def is_marker(self) -> bool:
        return self.kind == MARKER_KIND

    @property
    def status(self) -> Optional[str]:
        """Final status carried by a completion marker."""
        return self.text if self.is_marker else None


class ChunkLogStore(Protocol):
    def append(self, message_id: str, chunk: str, kind: str = "content") -> bool: ...

    def read_all(self, message_id: str, start: int = 0) -> List[ChunkEntry]: ...

    def mark_complete(self, message_id: str, status: str) -> bool: ...


class SqlChunkLog:
    """Append-only per-message chunk log with a TTL, kept in the app database.

    One producer (the active orchestrator) appends; any number of resume
    readers call read_all concurrently.
    """

    def __init__(self, ttl_sec: Optional[int] = None, complete_ttl_sec: Optional[int] = None) -> None:
        settings = get_settings()
        self.ttl = timedelta(seconds=ttl_sec if ttl_sec is not None else settings.chunk_log_ttl_sec)
        self.complete_ttl = timedelta(
            seconds=complete_ttl_sec if complete_ttl_sec is not None else settings.chunk_log_complete_ttl_sec
        )

    def append(self, message_id: str, chunk: str, kind: str = "content") -> bool:
        if kind == MARKER_KIND:
            raise ValueError("use mark_complete() for the terminal marker")
        try:
            with session_scope() as s:
                head = s.get(ChunkLog, message_id)
                now = utcnow()
                if head is None or head.expires_at <= now:
                    if head is not None:
                        s.delete(head)
                        s.flush()
                    head = ChunkLog(message_id=message_id, expires_at=now + self.ttl)
                    s.add(head)
                elif head.completed_status is not None:
                    # log is closed; late writers are ignored
                    return False
                else:
                    head.expires_at = now + self.ttl
                s.add(ChunkLogEntry(message_id=message_id, kind=kind, text=chunk))
        except SQLAlchemyError as e:
            raise ChunkLogUnavailable(str(e)) from e
        CHUNKS_APPENDED.labels(kind=kind).inc()
        return True

    def read_all(self, message_id: str, start: int = 0) -> List[ChunkEntry]:
        try:
            with session_scope() as s:
                head = s.get(ChunkLog, message_id)
                if head is None or head.expires_at <= utcnow():
                    return []
                rows = s.execute(
                    select(ChunkLogEntry.kind, ChunkLogEntry.text)
                    .where(ChunkLogEntry.message_id == message_id)
                    .order_by(ChunkLogEntry.id.asc())
                    .offset(max(0, start))
                ).all()
        except SQLAlchemyError as e:
            raise ChunkLogUnavailable(str(e)) from e
        return [ChunkEntry(kind=k, text=t) for k, t in rows]

    def mark_complete(self, message_id: str, status: str) -> bool:
        try:
            with session_scope() as s:
                head = s.get(ChunkLog, message_id)
                now = utcnow()
                if head is None:
                    head = ChunkLog(message_id=message_id, expires_at=now + self.complete_ttl)
                    s.add(head)
                elif head.completed_status is not None:
                    return False
                head.completed_status = status
                head.expires_at = now + self.complete_ttl
                s.add(ChunkLogEntry(message_id=message_id, kind=MARKER_KIND, text=status))
        except SQLAlchemyError as e:
            raise ChunkLogUnavailable(str(e)) from e
        return True

    def purge_expired(self) -> int:
        now = utcnow()
        with session_scope() as s:
            ids = list(s.scalars(select(ChunkLog.message_id).where(ChunkLog.expires_at <= now)))
            if not ids:
                return 0
            s.execute(delete(ChunkLogEntry).where(ChunkLogEntry.message_id.in_(ids)))
            s.execute(delete(ChunkLog).where(ChunkLog.message_id.in_(ids)))
        log.info({"event": "chunk_log.purged", "count": len(ids)})
        return len(ids)

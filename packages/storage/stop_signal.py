# packages/storage/stop_signal.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Protocol

from sqlalchemy import delete

from packages.core.settings import get_settings
from packages.storage.database import session_scope
from packages.storage.models import StopSignal, utcnow

log = logging.getLogger("app.stop_signal")


class StopSignalStore(Protocol):
    def set(self, message_id: str) -> None: ...

    def is_set(self, message_id: str) -> bool: ...

    def clear(self, message_id: str) -> None: ...


class SqlStopSignal:
    """Per-message stop flag with expiry. Presence means "stop requested"."""

    def __init__(self, ttl_sec: Optional[int] = None) -> None:
        self.ttl = timedelta(seconds=ttl_sec if ttl_sec is not None else get_settings().stop_signal_ttl_sec)

    def set(self, message_id: str) -> None:
        with session_scope() as s:
            row = s.get(StopSignal, message_id)
            if row is None:
                row = StopSignal(message_id=message_id, expires_at=utcnow() + self.ttl)
            else:
                row.expires_at = utcnow() + self.ttl
            s.add(row)

    def is_set(self, message_id: str) -> bool:
        with session_scope() as s:
            row = s.get(StopSignal, message_id)
            if row is None:
                return False
            if row.expires_at <= utcnow():
                s.delete(row)
                return False
            return True

    def clear(self, message_id: str) -> None:
        with session_scope() as s:
            row = s.get(StopSignal, message_id)
            if row is not None:
                s.delete(row)

    def purge_expired(self) -> int:
        with session_scope() as s:
            count = s.execute(delete(StopSignal).where(StopSignal.expires_at <= utcnow())).rowcount
        if count:
            log.info({"event": "stop_signal.purged", "count": count})
        return count

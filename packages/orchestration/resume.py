from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from packages.core.errors import ChunkLogUnavailable, MessageNotFound
from packages.core.metrics import RESUME_SESSIONS
from packages.core.settings import AppSettings, get_settings
from packages.storage import repo
from packages.storage.chunk_log import ChunkEntry, ChunkLogStore, SqlChunkLog

log = logging.getLogger("app.resume")


class ResumeServer:
    """Replays a message's chunk log, then tails it until the completion marker.

    Readers never touch the generation: a disconnect just ends the iterator.
    """

    def __init__(
        self,
        chunk_log: Optional[ChunkLogStore] = None,
        settings: Optional[AppSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.chunk_log = chunk_log if chunk_log is not None else SqlChunkLog()
        self.settings = settings or get_settings()
        self.clock = clock
        self.sleep = sleep

    def open(self, message_id: str) -> List[ChunkEntry]:
        """First read, done before any byte is sent so failures map to HTTP errors."""
        if repo.get_message(message_id) is None:
            raise MessageNotFound(message_id)
        return self.chunk_log.read_all(message_id)

    async def iter_text(
        self,
        message_id: str,
        initial: Optional[List[ChunkEntry]] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        s = self.settings
        poll = s.resume_poll_interval_ms / 1000.0
        started = self.clock()
        entries = initial if initial is not None else self.chunk_log.read_all(message_id)
        seen = 0
        sent = 0
        result = "disconnected"
        log.info({"event": "resume.start", "message_id": message_id, "session_id": session_id, "replay": len(entries)})
        try:
            while True:
                for entry in entries:
                    seen += 1
                    if entry.is_marker:
                        result = "complete"
                        return
                    if entry.kind == "content" and entry.text:
                        sent += len(entry.text)
                        yield entry.text
                if not entries:
                    rec = repo.get_message(message_id)
                    if rec is not None and rec.is_terminal:
                        # log expired or never got the marker: the record is authoritative
                        tail = (rec.content or "")[sent:]
                        if tail:
                            yield tail
                        result = "record"
                        return
                if self.clock() - started >= s.resume_max_duration_sec:
                    result = "timeout"
                    return
                await self.sleep(poll)
                entries = self.chunk_log.read_all(message_id, start=seen)
        except ChunkLogUnavailable as e:
            result = "error"
            log.warning({"event": "resume.chunk_log_unavailable", "message_id": message_id, "error": str(e)})
        finally:
            RESUME_SESSIONS.labels(result=result).inc()
            log.info({"event": "resume.end", "message_id": message_id, "session_id": session_id, "result": result, "chars": sent})

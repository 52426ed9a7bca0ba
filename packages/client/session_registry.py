from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from packages.core.settings import get_settings


class StreamState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def is_final(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.STOPPED, StreamState.ERRORED)


@dataclass
class StreamSession:
    message_id: str
    thread_id: Optional[str] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: StreamState = StreamState.IDLE
    chunks: List[str] = field(default_factory=list)
    resumed: bool = False
    started_at: float = 0.0
    finished_at: Optional[float] = None

    @property
    def text(self) -> str:
        return "".join(self.chunks)


class SessionRegistry:
    """Local stream sessions by message id.

    Finished sessions are dropped once older than `max_age_sec`; live ones
    are never evicted.
    """

    def __init__(self, max_age_sec: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.max_age = max_age_sec if max_age_sec is not None else get_settings().client_session_max_age_sec
        self.clock = clock
        self._sessions: Dict[str, StreamSession] = {}

    def start(self, message_id: str, thread_id: Optional[str] = None, *, resumed: bool = False) -> StreamSession:
        self.cleanup()
        session = StreamSession(
            message_id=message_id,
            thread_id=thread_id,
            state=StreamState.REQUESTED,
            resumed=resumed,
            started_at=self.clock(),
        )
        self._sessions[message_id] = session
        return session

    def get(self, message_id: str) -> Optional[StreamSession]:
        return self._sessions.get(message_id)

    def has_live(self, message_id: str) -> bool:
        s = self._sessions.get(message_id)
        return s is not None and not s.state.is_final

    def active_for_thread(self, thread_id: str) -> Optional[StreamSession]:
        for s in self._sessions.values():
            if s.thread_id == thread_id and not s.state.is_final:
                return s
        return None

    def add_chunk(self, message_id: str, text: str) -> None:
        s = self._sessions.get(message_id)
        if s is None or s.state.is_final:
            return
        s.chunks.append(text)
        s.state = StreamState.RECEIVING

    def finish(self, message_id: str, state: StreamState) -> None:
        s = self._sessions.get(message_id)
        if s is None:
            return
        s.state = state
        s.finished_at = self.clock()

    def remove(self, message_id: str) -> None:
        self._sessions.pop(message_id, None)

    def cleanup(self) -> int:
        now = self.clock()
        stale = [
            mid
            for mid, s in self._sessions.items()
            if s.finished_at is not None and now - s.finished_at > self.max_age
        ]
        for mid in stale:
            del self._sessions[mid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)

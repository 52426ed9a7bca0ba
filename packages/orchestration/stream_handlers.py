from __future__ import annotations

import time
from typing import Callable, List

from packages.providers.base import StreamEvent

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"


def _partial_suffix(s: str, tag: str) -> int:
    """Length of the longest suffix of `s` that could be the start of `tag`."""
    for n in range(min(len(s), len(tag) - 1), 0, -1):
        if s.endswith(tag[:n]):
            return n
    return 0


class ThinkTagSplitter:
    """Splits inline <think>...</think> content into reasoning and content events.

    Tags may arrive split across deltas; a possible partial tag at the end of
    the buffer is held back until the next feed() or finalize().
    """

    def __init__(self):
        self.buf = ""
        self.in_think = False

    def _emit(self, out: List[StreamEvent], text: str) -> None:
        if text:
            out.append(StreamEvent.reasoning(text) if self.in_think else StreamEvent.content(text))

    def feed(self, delta: str) -> List[StreamEvent]:
        self.buf += delta
        results: List[StreamEvent] = []
        while self.buf:
            tag = CLOSE_TAG if self.in_think else OPEN_TAG
            idx = self.buf.find(tag)
            if idx != -1:
                self._emit(results, self.buf[:idx])
                self.buf = self.buf[idx + len(tag):]
                self.in_think = not self.in_think
                continue
            keep = _partial_suffix(self.buf, tag)
            cut = len(self.buf) - keep
            self._emit(results, self.buf[:cut])
            self.buf = self.buf[cut:]
            break
        return results

    def finalize(self) -> List[StreamEvent]:
        results: List[StreamEvent] = []
        self._emit(results, self.buf)
        self.buf = ""
        self.in_think = False
        return results


class FlushPolicy:
    """Decides when accumulated text is written to the message store.

    A flush is due once `max_chars` unflushed characters have piled up or
    `interval_ms` has passed since the last flush, whichever comes first.
    """

    def __init__(self, max_chars: int, interval_ms: int, clock: Callable[[], float] = time.monotonic):
        self.max_chars = max_chars
        self.interval = interval_ms / 1000.0
        self.clock = clock
        self.pending = 0
        self.last_flush = clock()

    def add(self, n: int) -> None:
        self.pending += n

    def due(self) -> bool:
        if self.pending <= 0:
            return False
        return self.pending >= self.max_chars or (self.clock() - self.last_flush) >= self.interval

    def mark_flushed(self) -> None:
        self.pending = 0
        self.last_flush = self.clock()

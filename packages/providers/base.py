# packages/providers/base.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol

DeltaKind = Literal["content", "reasoning", "finish"]

# finish reasons that end a generation cleanly
CLEAN_FINISH_REASONS = frozenset({"stop", "length"})


@dataclass(frozen=True)
class StreamEvent:
    kind: DeltaKind
    text: str = ""
    finish_reason: Optional[str] = None

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls("content", text)

    @classmethod
    def reasoning(cls, text: str) -> "StreamEvent":
        return cls("reasoning", text)

    @classmethod
    def finish(cls, reason: Optional[str]) -> "StreamEvent":
        return cls("finish", "", reason)


class Provider(Protocol):
    def stream_chat(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        cancel: asyncio.Event,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        extra_body: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield content/reasoning deltas, then exactly one `finish` event.

        Stops early (without a finish event) once `cancel` is set. Transport
        and upstream errors propagate to the caller.
        """
        ...

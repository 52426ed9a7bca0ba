from __future__ import annotations

import asyncio
import json
import os
import tempfile
from typing import Any, Dict, Iterable, List, Optional

import pytest

# must be set before packages.storage.database creates the engine
_TMP_DIR = tempfile.mkdtemp(prefix="relay-tests-")
os.environ["DB_URL"] = f"sqlite:///{_TMP_DIR}/app.db"
os.environ["LMSTUDIO_BASE_URL"] = "http://lmstudio.test"
os.environ.setdefault("LOG_FORMAT", "plain")

from packages.core.settings import get_settings  # noqa: E402
from packages.orchestration.generation import (  # noqa: E402
    GenerationOrchestrator,
    GenerationRegistry,
    GenerationRequest,
)
from packages.providers.base import StreamEvent  # noqa: E402
from packages.storage.repo import create_thread, prepare_for_stream  # noqa: E402

get_settings.cache_clear()

LM_BASE = "http://lmstudio.test"
AUTH = {"Authorization": "Bearer test-token"}
MODEL = "lm:qwen2.5-instruct"


def sse(*payloads: str, done: bool = True) -> bytes:
    """Build an OpenAI-style SSE body from raw JSON payload strings."""
    body = b"".join(f"data: {p}\n\n".encode("utf-8") for p in payloads)
    if done:
        body += b"data: [DONE]\n\n"
    return body


def delta(text: str, finish: Optional[str] = None) -> str:
    choice: Dict[str, Any] = {"delta": {"content": text}}
    if finish:
        choice["finish_reason"] = finish
    return json.dumps({"choices": [choice]})


class ScriptedProvider:
    """Plays back a script of StreamEvents; numbers are pauses, exceptions are raised.

    With `tail` set, keeps emitting that text every `tail_every` seconds
    after the script until cancelled.
    """

    def __init__(self, script: Iterable[Any], tail: Optional[str] = None, tail_every: float = 0.02):
        self.script = list(script)
        self.tail = tail
        self.tail_every = tail_every
        self.calls: List[Dict[str, Any]] = []

    async def stream_chat(self, *, model, messages, cancel, temperature=None, max_tokens=None, extra_body=None):
        self.calls.append({"model": model, "messages": messages, "extra_body": extra_body})
        for step in self.script:
            if cancel.is_set():
                return
            if isinstance(step, (int, float)):
                await asyncio.sleep(step)
                continue
            if isinstance(step, BaseException):
                raise step
            yield step
        while self.tail is not None and not cancel.is_set():
            await asyncio.sleep(self.tail_every)
            yield StreamEvent.content(self.tail)


@pytest.fixture
def fast_settings():
    return get_settings().model_copy(
        update={
            "stream_idle_tick_ms": 20,
            "stream_flush_interval_ms": 50,
            "resume_poll_interval_ms": 20,
            "resume_max_duration_sec": 5.0,
            "model_profiles": {},
        }
    )


@pytest.fixture
def registry() -> GenerationRegistry:
    return GenerationRegistry()


@pytest.fixture
def placeholder():
    """A thread with one user message and a pending assistant placeholder."""
    th = create_thread("test")
    user, assistant = prepare_for_stream(th.id, "Say hello", MODEL)
    return th, user, assistant


@pytest.fixture
def make_orchestrator(fast_settings, registry):
    def _make(provider, **overrides) -> GenerationOrchestrator:
        settings = fast_settings.model_copy(update=overrides) if overrides else fast_settings
        return GenerationOrchestrator(provider, settings=settings, registry=registry)

    return _make


def request_for(th, assistant, model: str = MODEL, **kw) -> GenerationRequest:
    return GenerationRequest(thread_id=th.id, message_id=assistant.id, model=model, **kw)

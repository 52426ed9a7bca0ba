from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from packages.core.errors import ChunkLogUnavailable
from packages.core.metrics import FLUSHES, GENERATIONS
from packages.core.settings import AppSettings, get_settings
from packages.orchestration.stream_handlers import FlushPolicy, ThinkTagSplitter
from packages.providers.base import CLEAN_FINISH_REASONS, Provider, StreamEvent
from packages.providers.capabilities import ModelProfile, resolve_profile, strip_provider_prefix
from packages.storage import repo
from packages.storage.chunk_log import ChunkLogStore, SqlChunkLog
from packages.storage.models import ACTIVE_STATUSES
from packages.storage.stop_signal import SqlStopSignal, StopSignalStore

log = logging.getLogger("app.stream")

_CLOSE = object()
_PROVIDER_END = object()
_HISTORY_ROLES = ("system", "user", "assistant")


@dataclass
class GenerationRequest:
    thread_id: str
    message_id: str
    model: str
    history: Optional[List[Dict[str, Any]]] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class GenerationResult:
    message_id: str
    status: str
    stop_reason: str
    content: str
    reasoning: Optional[str] = None
    cause: Optional[str] = None  # timeout, finish_reason:<x>, provider_error, superseded, ...
    persisted: bool = True


@dataclass
class Generation:
    """One claimed message: lease token, cancel token and the caller's byte sink."""

    request: GenerationRequest
    generation_id: str
    profile: ModelProfile
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    sink: asyncio.Queue = field(default_factory=asyncio.Queue)
    detached: bool = False
    task: Optional[asyncio.Task] = None

    @property
    def message_id(self) -> str:
        return self.request.message_id

    def send(self, text: str) -> None:
        if not self.detached:
            self.sink.put_nowait(text)

    def close(self) -> None:
        self.sink.put_nowait(_CLOSE)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Content deltas for the requesting client; ends after the record is final."""
        finished = False
        try:
            while True:
                item = await self.sink.get()
                if item is _CLOSE:
                    finished = True
                    break
                yield item.encode("utf-8")
        finally:
            self.detached = True
            if not finished:
                log.info({"event": "stream.client_detached", "message_id": self.message_id})


class GenerationRegistry:
    """Generations running in this process, keyed by message id."""

    def __init__(self) -> None:
        self._items: Dict[str, Generation] = {}

    def add(self, gen: Generation) -> None:
        self._items[gen.message_id] = gen
        if gen.task is not None:
            gen.task.add_done_callback(lambda _t, mid=gen.message_id: self._items.pop(mid, None))

    def get(self, message_id: str) -> Optional[Generation]:
        return self._items.get(message_id)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Ask every running generation to stop and wait for them to finalize."""
        tasks = [g.task for g in self._items.values() if g.task is not None]
        for g in list(self._items.values()):
            g.cancel.set()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)


ACTIVE_GENERATIONS = GenerationRegistry()


class GenerationOrchestrator:
    def __init__(
        self,
        provider: Provider,
        chunk_log: Optional[ChunkLogStore] = None,
        stop_signal: Optional[StopSignalStore] = None,
        settings: Optional[AppSettings] = None,
        registry: Optional[GenerationRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.chunk_log = chunk_log if chunk_log is not None else SqlChunkLog()
        self.stop_signal = stop_signal if stop_signal is not None else SqlStopSignal()
        self.settings = settings or get_settings()
        self.registry = registry if registry is not None else ACTIVE_GENERATIONS
        self.clock = clock

    # ---------- claim / start ----------

    def claim(self, req: GenerationRequest) -> Generation:
        """pending -> streaming with a fresh lease; raises MessageNotFound / GenerationConflict."""
        # message ids are never reused, so a flag on a pending message is a cancel
        # sent before the stream started; the first loop check honors it
        cancelled = self.stop_signal.is_set(req.message_id)
        gid = repo.claim_generation(req.message_id, thread_id=req.thread_id, stop_requested=cancelled)
        profile = resolve_profile(req.model, self.settings.model_profiles)
        log.info({
            "event": "stream.claimed",
            "message_id": req.message_id,
            "thread_id": req.thread_id,
            "model": req.model,
            "profile": profile.value,
            "cancelled": cancelled,
        })
        return Generation(request=req, generation_id=gid, profile=profile)

    def start(self, gen: Generation) -> Generation:
        """Run the generation as its own task; it outlives the HTTP response."""
        gen.task = asyncio.create_task(self.run(gen), name=f"generation:{gen.message_id}")
        self.registry.add(gen)
        return gen

    # ---------- history ----------

    def load_history(self, req: GenerationRequest) -> List[Dict[str, str]]:
        if req.history is not None:
            source = [
                (h.get("id"), h.get("role"), h.get("content"), h.get("status"))
                for h in req.history
                if isinstance(h, dict)
            ]
        else:
            source = [
                (m.id, m.role, m.content, m.status)
                for m in repo.list_message_history(req.thread_id, before_message_id=req.message_id)
            ]
        messages: List[Dict[str, str]] = []
        for mid, role, content, status in source:
            if mid is not None and mid == req.message_id:
                break
            if status in ACTIVE_STATUSES:
                continue
            if role not in _HISTORY_ROLES or not content:
                continue
            messages.append({"role": role, "content": content})
        return messages

    # ---------- stop checks ----------

    def stop_requested(self, gen: Generation) -> bool:
        if gen.cancel.is_set():
            return True
        if self.stop_signal.is_set(gen.message_id):
            return True
        th = repo.get_thread(gen.request.thread_id)
        return th is None or not th.is_streaming

    # ---------- main loop ----------

    async def _pump(self, gen: Generation, messages: List[Dict[str, str]], queue: asyncio.Queue) -> None:
        req = gen.request
        try:
            async for ev in self.provider.stream_chat(
                model=strip_provider_prefix(req.model),
                messages=messages,
                cancel=gen.cancel,
                temperature=req.temperature,
                max_tokens=req.max_tokens,
                extra_body=gen.profile.request_extras() or None,
            ):
                await queue.put(ev)
            await queue.put(_PROVIDER_END)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            await queue.put(exc)

    async def run(self, gen: Generation) -> GenerationResult:
        s = self.settings
        req = gen.request
        state = _Accumulator(
            FlushPolicy(s.stream_flush_chars, s.stream_flush_interval_ms, clock=self.clock)
        )
        started = self.clock()
        idle_tick = s.stream_idle_tick_ms / 1000.0
        stop_every = s.stream_stop_check_ms / 1000.0
        last_stop_check: Optional[float] = None
        queue: asyncio.Queue = asyncio.Queue()
        pump: Optional[asyncio.Task] = None
        outcome = ("error", "error", None)
        try:
            messages = self.load_history(req)
            splitter = ThinkTagSplitter() if gen.profile.splits_think_tags else None
            pump = asyncio.create_task(self._pump(gen, messages, queue))
            while True:
                now = self.clock()
                if now - started >= s.stream_max_duration_sec:
                    outcome = ("error", "error", "timeout")
                    break
                if last_stop_check is None or now - last_stop_check >= stop_every:
                    last_stop_check = now
                    if self.stop_requested(gen):
                        outcome = ("done", "stopped", "stopped")
                        break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=idle_tick)
                except asyncio.TimeoutError:
                    item = None

                if isinstance(item, Exception):
                    raise item
                if item is _PROVIDER_END:
                    if gen.cancel.is_set():
                        outcome = ("done", "stopped", "stopped")
                    else:
                        outcome = ("error", "error", "no_finish_reason")
                    break
                if isinstance(item, StreamEvent):
                    if item.kind == "finish":
                        if splitter is not None:
                            for ev in splitter.finalize():
                                self._accept(gen, state, ev)
                        reason = item.finish_reason
                        if reason in CLEAN_FINISH_REASONS:
                            outcome = ("done", "completed", None)
                        else:
                            outcome = ("error", "error", f"finish_reason:{reason}")
                        break
                    if splitter is not None and item.kind == "content":
                        events = splitter.feed(item.text)
                    else:
                        events = [item]
                    for ev in events:
                        self._accept(gen, state, ev)

                if state.status_changed or state.policy.due():
                    if self.stop_requested(gen):
                        outcome = ("done", "stopped", "stopped")
                        break
                    if not self._flush(gen, state):
                        outcome = (None, None, "superseded")
                        break
        except asyncio.CancelledError:
            await self._stop_pump(gen, pump)
            self._finish(gen, state, "error", "error", "cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            log.exception({
                "event": "stream.failed",
                "message_id": req.message_id,
                "error": f"{type(exc).__name__}: {exc}",
            })
            cause = "provider_error" if isinstance(exc, httpx.HTTPError) else "exception"
            outcome = ("error", "error", cause)
        await self._stop_pump(gen, pump)
        status, stop_reason, cause = outcome
        return self._finish(gen, state, status, stop_reason, cause)

    async def _stop_pump(self, gen: Generation, pump: Optional[asyncio.Task]) -> None:
        gen.cancel.set()
        if pump is None or pump.done():
            return
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass

    # ---------- helpers ----------

    def _accept(self, gen: Generation, state: "_Accumulator", ev: StreamEvent) -> None:
        if not ev.text:
            return
        if ev.kind == "reasoning":
            state.reasoning.append(ev.text)
            state.set_status("reasoning")
        else:
            state.content.append(ev.text)
            state.set_status("streaming")
            gen.send(ev.text)
        state.policy.add(len(ev.text))
        if state.log_ok:
            try:
                self.chunk_log.append(gen.message_id, ev.text, kind=ev.kind)
            except ChunkLogUnavailable as e:
                # resume degrades to the persisted record; generation goes on
                state.log_ok = False
                log.warning({"event": "stream.chunk_log_unavailable", "message_id": gen.message_id, "error": str(e)})

    def _flush(self, gen: Generation, state: "_Accumulator") -> bool:
        ok = repo.try_update(
            gen.message_id,
            content=state.content_text,
            reasoning=state.reasoning_text,
            status=state.status if state.status_changed else None,
            generation_id=gen.generation_id,
        )
        FLUSHES.inc()
        state.policy.mark_flushed()
        state.status_changed = False
        if not ok:
            log.warning({"event": "stream.write_rejected", "message_id": gen.message_id})
        return ok

    def _finish(
        self,
        gen: Generation,
        state: "_Accumulator",
        status: Optional[str],
        stop_reason: Optional[str],
        cause: Optional[str],
    ) -> GenerationResult:
        mid = gen.message_id
        persisted = False
        if status is not None:
            try:
                persisted = repo.finalize(
                    mid,
                    status=status,
                    stop_reason=stop_reason,
                    content=state.content_text,
                    reasoning=state.reasoning_text,
                    generation_id=gen.generation_id,
                )
            except Exception as e:  # noqa: BLE001
                log.exception({"event": "stream.finalize_failed", "message_id": mid, "error": str(e)})
        if not persisted:
            # someone else finalized first; report what the record says
            rec = repo.get_message(mid)
            if rec is not None and rec.is_terminal:
                status, stop_reason = rec.status, rec.stop_reason
        stop_reason = stop_reason or "error"
        status = status or "error"
        try:
            self.chunk_log.mark_complete(mid, stop_reason)
        except ChunkLogUnavailable as e:
            log.warning({"event": "stream.chunk_log_unavailable", "message_id": mid, "error": str(e)})
        try:
            self.stop_signal.clear(mid)
        except Exception as e:  # noqa: BLE001
            log.warning({"event": "stream.stop_signal_clear_failed", "message_id": mid, "error": str(e)})
        GENERATIONS.labels(outcome=stop_reason).inc()
        log.info({
            "event": "stream.finished",
            "message_id": mid,
            "status": status,
            "stop_reason": stop_reason,
            "cause": cause,
            "chars": len(state.content_text),
            "persisted": persisted,
        })
        gen.close()
        return GenerationResult(
            message_id=mid,
            status=status,
            stop_reason=stop_reason,
            content=state.content_text,
            reasoning=state.reasoning_text,
            cause=cause,
            persisted=persisted,
        )


class _Accumulator:
    def __init__(self, policy: FlushPolicy) -> None:
        self.policy = policy
        self.content: List[str] = []
        self.reasoning: List[str] = []
        self.status = "streaming"
        self.status_changed = False
        self.log_ok = True

    def set_status(self, status: str) -> None:
        if status != self.status:
            self.status = status
            self.status_changed = True

    @property
    def content_text(self) -> str:
        return "".join(self.content)

    @property
    def reasoning_text(self) -> Optional[str]:
        return "".join(self.reasoning) if self.reasoning else None

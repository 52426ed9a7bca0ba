from __future__ import annotations

import asyncio
import time

import httpx
import pytest

from conftest import MODEL, ScriptedProvider, request_for
from packages.core.errors import GenerationConflict
from packages.providers.base import StreamEvent
from packages.storage import repo
from packages.storage.chunk_log import SqlChunkLog
from packages.storage.stop_signal import SqlStopSignal

C = StreamEvent.content
R = StreamEvent.reasoning
F = StreamEvent.finish


async def _drain(gen) -> bytes:
    return b"".join([b async for b in gen.iter_bytes()])


async def _run(orch, th, assistant, **kw):
    gen = orch.start(orch.claim(request_for(th, assistant, **kw)))
    body, result = await asyncio.gather(_drain(gen), gen.task)
    return gen, body, result


async def _wait_for_content(message_id: str, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if SqlChunkLog().read_all(message_id):
            return
        await asyncio.sleep(0.01)
    raise AssertionError("generation produced nothing")


@pytest.mark.asyncio
async def test_happy_path(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("Hel"), C("lo, "), C("world"), F("stop")]))
    _, body, result = await _run(orch, th, assistant)

    assert body == b"Hello, world"
    assert (result.status, result.stop_reason) == ("done", "completed")
    rec = repo.get_message(assistant.id)
    assert rec.content == "Hello, world"
    assert (rec.status, rec.stop_reason) == ("done", "completed")
    thread = repo.get_thread(th.id)
    assert thread.status == "done" and thread.is_streaming is False

    entries = SqlChunkLog().read_all(assistant.id)
    assert "".join(e.text for e in entries if e.kind == "content") == rec.content
    assert entries[-1].is_marker and entries[-1].status == "completed"


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", ["content_filter", "tool_calls", "error", None])
async def test_unclean_finish_is_an_error(placeholder, make_orchestrator, reason) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("partial"), F(reason)]))
    _, body, result = await _run(orch, th, assistant)
    assert body == b"partial"
    rec = repo.get_message(assistant.id)
    assert (rec.status, rec.stop_reason, rec.content) == ("error", "error", "partial")
    assert result.cause == f"finish_reason:{reason}"


@pytest.mark.asyncio
async def test_length_finish_is_complete(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    _, _, result = await _run(make_orchestrator(ScriptedProvider([C("cut"), F("length")])), th, assistant)
    assert (result.status, result.stop_reason) == ("done", "completed")


@pytest.mark.asyncio
async def test_provider_exception_finalizes_error(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("par"), httpx.ConnectError("refused")]))
    _, body, result = await _run(orch, th, assistant)
    assert body == b"par"
    assert result.cause == "provider_error"
    rec = repo.get_message(assistant.id)
    assert (rec.status, rec.stop_reason, rec.content) == ("error", "error", "par")
    assert SqlChunkLog().read_all(assistant.id)[-1].status == "error"


@pytest.mark.asyncio
async def test_unexpected_exception_finalizes_error(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    _, _, result = await _run(make_orchestrator(ScriptedProvider([RuntimeError("boom")])), th, assistant)
    assert (result.status, result.cause) == ("error", "exception")
    assert repo.get_message(assistant.id).is_terminal


@pytest.mark.asyncio
async def test_stop_signal_mid_stream(placeholder, make_orchestrator, fast_settings) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("x")], tail="x"))
    gen = orch.start(orch.claim(request_for(th, assistant)))
    drain = asyncio.create_task(_drain(gen))
    await _wait_for_content(assistant.id)

    stop_at = time.monotonic()
    SqlStopSignal().set(assistant.id)
    result = await asyncio.wait_for(gen.task, timeout=2.0)
    elapsed = time.monotonic() - stop_at
    body = await drain

    assert (result.status, result.stop_reason) == ("done", "stopped")
    # one loop tick plus a store round-trip; generous margin for slow CI
    assert elapsed < fast_settings.stop_latency_bound_sec + 0.5
    rec = repo.get_message(assistant.id)
    assert (rec.status, rec.stop_reason) == ("done", "stopped")
    assert rec.content and set(rec.content) == {"x"}
    assert body.decode() == rec.content
    assert SqlChunkLog().read_all(assistant.id)[-1].status == "stopped"


@pytest.mark.asyncio
async def test_stop_while_provider_is_silent(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("a"), 30.0, C("never")]))
    gen = orch.start(orch.claim(request_for(th, assistant)))
    await _wait_for_content(assistant.id)
    repo.set_thread_streaming(th.id, False)
    result = await asyncio.wait_for(gen.task, timeout=2.0)
    assert (result.status, result.stop_reason, result.content) == ("done", "stopped", "a")


@pytest.mark.asyncio
async def test_cancel_before_claim_stops_the_generation(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    # what POST /stream/cancel leaves behind while the client is still in "requested"
    repo.set_thread_streaming(th.id, False)
    SqlStopSignal().set(assistant.id)
    provider = ScriptedProvider([C("x")], tail="x")
    orch = make_orchestrator(provider, stream_max_duration_sec=1.0)

    gen = orch.claim(request_for(th, assistant))
    assert repo.get_thread(th.id).is_streaming is False
    orch.start(gen)
    body, result = await asyncio.wait_for(asyncio.gather(_drain(gen), gen.task), timeout=2.0)

    assert (result.status, result.stop_reason, result.cause) == ("done", "stopped", "stopped")
    assert body == b""
    rec = repo.get_message(assistant.id)
    assert (rec.status, rec.stop_reason) == ("done", "stopped")
    assert SqlStopSignal().is_set(assistant.id) is False
    assert SqlChunkLog().read_all(assistant.id)[-1].status == "stopped"


@pytest.mark.asyncio
async def test_at_most_one_generation(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("a"), F("stop")]))
    gen = orch.claim(request_for(th, assistant))
    with pytest.raises(GenerationConflict):
        orch.claim(request_for(th, assistant))
    orch.start(gen)
    await gen.task
    with pytest.raises(GenerationConflict):
        orch.claim(request_for(th, assistant))


@pytest.mark.asyncio
async def test_wall_clock_ceiling(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("slow"), 30.0]), stream_max_duration_sec=0.2)
    _, _, result = await asyncio.wait_for(_run(orch, th, assistant), timeout=3.0)
    assert (result.status, result.stop_reason, result.cause) == ("error", "error", "timeout")
    assert repo.get_message(assistant.id).content == "slow"


@pytest.mark.asyncio
async def test_client_disconnect_does_not_stop_generation(placeholder, make_orchestrator, registry) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("one "), 0.05, C("two "), 0.05, C("three"), F("stop")]))
    gen = orch.start(orch.claim(request_for(th, assistant)))
    assert assistant.id in registry

    it = gen.iter_bytes()
    assert await it.__anext__() == b"one "
    await it.aclose()
    assert gen.detached

    result = await gen.task
    assert result.stop_reason == "completed"
    assert repo.get_message(assistant.id).content == "one two three"
    await asyncio.sleep(0)
    assert assistant.id not in registry


@pytest.mark.asyncio
async def test_superseded_generation_stops_writing(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("x")], tail="x"))
    gen = orch.start(orch.claim(request_for(th, assistant)))
    await _wait_for_content(assistant.id)
    # e.g. reaped by another worker
    assert repo.finalize(assistant.id, status="error", content="reaped")
    result = await asyncio.wait_for(gen.task, timeout=2.0)
    assert result.persisted is False
    # the record keeps the outcome of whoever finalized first
    assert (result.status, result.stop_reason) == ("error", "error")
    assert repo.get_message(assistant.id).content == "reaped"


@pytest.mark.asyncio
async def test_batched_flushes(placeholder, make_orchestrator, monkeypatch) -> None:
    th, _, assistant = placeholder
    flushed = []
    real_try_update = repo.try_update

    def spy(message_id, **kw):
        if kw.get("status") not in ("done", "error"):
            flushed.append(kw.get("content"))
        return real_try_update(message_id, **kw)

    monkeypatch.setattr(repo, "try_update", spy)
    orch = make_orchestrator(
        ScriptedProvider([C("abc"), C("de"), C("fghij"), C("k"), F("stop")]),
        stream_flush_chars=5,
        stream_flush_interval_ms=60_000,
    )
    _, _, result = await _run(orch, th, assistant)
    assert flushed == ["abcde", "abcdefghij"]
    assert result.content == "abcdefghijk"


@pytest.mark.asyncio
async def test_time_based_flush_while_provider_is_silent(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("early"), 0.5, F("stop")]), stream_flush_chars=10_000)
    gen = orch.start(orch.claim(request_for(th, assistant)))
    await asyncio.sleep(0.3)
    assert repo.get_message(assistant.id).content == "early"
    await gen.task


@pytest.mark.asyncio
async def test_think_tags_become_reasoning(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(
        ScriptedProvider([C("<thi"), C("nk>plan</th"), C("ink>Answer"), F("stop")])
    )
    _, body, result = await _run(orch, th, assistant, model="qwen/qwen3-14b")
    assert body == b"Answer"
    rec = repo.get_message(assistant.id)
    assert rec.content == "Answer"
    assert rec.reasoning == "plan"
    kinds = [e.kind for e in SqlChunkLog().read_all(assistant.id)]
    assert kinds[0] == "reasoning" and kinds[-1] == "completion"


@pytest.mark.asyncio
async def test_reasoning_field_profile(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    provider = ScriptedProvider([R("hmm"), C("Yes"), F("stop")])
    _, body, _ = await _run(make_orchestrator(provider), th, assistant, model="deepseek-reasoner")
    assert body == b"Yes"
    assert provider.calls[0]["extra_body"] == {"include_reasoning": True}
    rec = repo.get_message(assistant.id)
    assert (rec.reasoning, rec.content, rec.status) == ("hmm", "Yes", "done")


@pytest.mark.asyncio
async def test_history_excludes_placeholder(placeholder, make_orchestrator) -> None:
    th, user, assistant = placeholder
    provider = ScriptedProvider([C("hi"), F("stop")])
    await _run(make_orchestrator(provider), th, assistant)
    assert provider.calls[0]["messages"] == [{"role": "user", "content": "Say hello"}]
    assert provider.calls[0]["model"] == MODEL.split(":", 1)[1]


@pytest.mark.asyncio
async def test_caller_history_is_filtered(placeholder, make_orchestrator) -> None:
    th, _, assistant = placeholder
    history = [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "q"},
        {"id": "other", "role": "assistant", "content": "", "status": "streaming"},
        {"id": assistant.id, "role": "assistant", "content": "", "status": "pending"},
        {"role": "user", "content": "after"},
    ]
    provider = ScriptedProvider([C("a"), F("stop")])
    await _run(make_orchestrator(provider), th, assistant, history=history)
    assert provider.calls[0]["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "q"},
    ]


@pytest.mark.asyncio
async def test_registry_shutdown_stops_generations(placeholder, make_orchestrator, registry) -> None:
    th, _, assistant = placeholder
    orch = make_orchestrator(ScriptedProvider([C("x")], tail="x"))
    gen = orch.start(orch.claim(request_for(th, assistant)))
    await _wait_for_content(assistant.id)
    await registry.shutdown(timeout=2.0)
    assert gen.task.done()
    assert repo.get_message(assistant.id).stop_reason == "stopped"

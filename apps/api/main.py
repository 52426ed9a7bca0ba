# apps/api/main.py

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from packages.core.auth import require_bearer
from packages.core.errors import (
    ChunkLogUnavailable,
    GenerationConflict,
    InvalidStatusTransition,
    MessageNotFound,
    ProviderNotConfigured,
    RelayError,
    ThreadNotFound,
)
from packages.core.logging import configure_logging, request_logging_middleware
from packages.core.metrics import STOP_REQUESTS
from packages.core.settings import get_settings
from packages.orchestration.generation import (
    ACTIVE_GENERATIONS,
    GenerationOrchestrator,
    GenerationRequest,
)
from packages.orchestration.resume import ResumeServer
from packages.providers.base import Provider
from packages.providers.lmstudio import get_lmstudio_provider
from packages.storage import repo
from packages.storage.chunk_log import SqlChunkLog
from packages.storage.database import session_scope
from packages.storage.models import Message, Thread
from packages.storage.stop_signal import SqlStopSignal

settings = get_settings()
configure_logging(level=settings.log_level)
log = logging.getLogger("app.api")


def sweep_expired_state() -> Dict[str, int]:
    """Delete chunk logs and stop flags whose TTL has passed."""
    return {
        "chunk_logs": SqlChunkLog().purge_expired(),
        "stop_signals": SqlStopSignal().purge_expired(),
    }


async def _sweep_loop(interval: float) -> None:
    while True:
        try:
            sweep_expired_state()
        except SQLAlchemyError as e:
            log.warning({"event": "store.sweep_failed", "error": str(e)})
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    sweeper = asyncio.create_task(_sweep_loop(settings.store_sweep_interval_sec), name="store-sweeper")
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        # let running generations finalize as stopped instead of dying mid-write
        await ACTIVE_GENERATIONS.shutdown()


app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

# CORS
allow_origins = [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request/response logging middleware
app.middleware("http")(request_logging_middleware)

STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
_auth = [Depends(require_bearer)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StreamIn(_CamelModel):
    thread_id: str = Field(alias="threadId")
    message_id: str = Field(alias="messageId")
    model: str
    history: Optional[List[Dict[str, Any]]] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")


class CancelIn(_CamelModel):
    thread_id: str = Field(alias="threadId")
    message_id: Optional[str] = Field(default=None, alias="messageId")


class ThreadIn(BaseModel):
    title: Optional[str] = None


class PrepareIn(BaseModel):
    content: str
    model: str


def _http_error(exc: RelayError) -> HTTPException:
    if isinstance(exc, (MessageNotFound, ThreadNotFound)):
        return HTTPException(status_code=404, detail=str(exc) or "not found")
    if isinstance(exc, (GenerationConflict, InvalidStatusTransition)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ChunkLogUnavailable, ProviderNotConfigured)):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _message_out(m: Message) -> Dict[str, Any]:
    return {
        "id": m.id,
        "thread_id": m.thread_id,
        "position": m.position,
        "role": m.role,
        "content": m.content,
        "reasoning": m.reasoning,
        "status": m.status,
        "stop_reason": m.stop_reason,
        "model": m.model,
        "created_at": _iso(m.created_at),
        "updated_at": _iso(m.updated_at),
    }


def _thread_out(t: Thread) -> Dict[str, Any]:
    return {
        "id": t.id,
        "title": t.title,
        "status": t.status,
        "is_streaming": bool(t.is_streaming),
        "created_at": _iso(t.created_at),
    }


def get_provider() -> Provider:
    try:
        return get_lmstudio_provider()
    except ProviderNotConfigured as e:
        raise _http_error(e) from e


# ---------- service ----------

@app.get("/health")
async def health() -> JSONResponse:
    store = "ok"
    try:
        with session_scope() as s:
            s.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        log.warning({"event": "health.store_unreachable", "error": str(e)})
        store = "unavailable"
    ok = store == "ok"
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"status": "ok" if ok else "degraded", "store": store, "time": datetime.now(timezone.utc).isoformat()},
    )


@app.get("/config")
async def config() -> JSONResponse:
    safe_config = {
        "app_name": settings.app_name,
        "env": settings.app_env,
        "db_dialect": settings.db_dialect,
        "log_level": settings.log_level,
        "providers": {
            "lmstudio": {"base_url": str(settings.lmstudio_base_url)}
            if settings.lmstudio_base_url
            else {}
        },
        "stream": {
            "flush_chars": settings.stream_flush_chars,
            "flush_interval_ms": settings.stream_flush_interval_ms,
            "stop_check_ms": settings.stream_stop_check_ms,
            "idle_tick_ms": settings.stream_idle_tick_ms,
            "max_duration_sec": settings.stream_max_duration_sec,
            "stop_latency_bound_sec": settings.stop_latency_bound_sec,
        },
        "resume": {
            "poll_interval_ms": settings.resume_poll_interval_ms,
            "max_duration_sec": settings.resume_max_duration_sec,
        },
        "auth": {"required": True, "token_list": bool(settings.api_tokens)},
    }
    return JSONResponse(content=safe_config)


@app.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------- threads & messages ----------

@app.post("/threads", dependencies=_auth)
async def create_thread(body: Optional[ThreadIn] = None) -> JSONResponse:
    th = repo.create_thread(title=body.title if body else None)
    return JSONResponse(status_code=201, content=_thread_out(th))


@app.get("/threads/{thread_id}", dependencies=_auth)
async def get_thread(thread_id: str) -> JSONResponse:
    th = repo.get_thread(thread_id)
    if th is None:
        raise HTTPException(status_code=404, detail="thread not found")
    return JSONResponse(content=_thread_out(th))


@app.get("/threads/{thread_id}/messages", dependencies=_auth)
async def get_thread_messages(thread_id: str) -> JSONResponse:
    if repo.get_thread(thread_id) is None:
        raise HTTPException(status_code=404, detail="thread not found")
    items = [_message_out(m) for m in repo.list_message_history(thread_id)]
    return JSONResponse(content={"thread_id": thread_id, "messages": items})


@app.post("/threads/{thread_id}/prepare", dependencies=_auth)
async def prepare_for_stream(thread_id: str, body: PrepareIn) -> JSONResponse:
    try:
        # generations whose worker died are closed before the conflict check
        repo.reap_stale_generations(thread_id, older_than_sec=settings.stream_max_duration_sec + 60)
        user, assistant = repo.prepare_for_stream(thread_id, body.content, body.model)
    except RelayError as e:
        raise _http_error(e) from e
    return JSONResponse(
        status_code=201,
        content={"user_message": _message_out(user), "assistant_message": _message_out(assistant)},
    )


@app.post("/messages/{message_id}/regenerate", dependencies=_auth)
async def regenerate(message_id: str) -> JSONResponse:
    try:
        placeholder = repo.regenerate(message_id)
    except RelayError as e:
        raise _http_error(e) from e
    return JSONResponse(status_code=201, content=_message_out(placeholder))


@app.get("/messages/{message_id}", dependencies=_auth)
async def get_message(message_id: str) -> JSONResponse:
    m = repo.get_message(message_id)
    if m is None:
        raise HTTPException(status_code=404, detail="message not found")
    return JSONResponse(content=_message_out(m))


# ---------- streaming ----------

@app.post("/stream", dependencies=_auth)
async def stream(body: StreamIn, provider: Provider = Depends(get_provider)) -> StreamingResponse:
    orchestrator = GenerationOrchestrator(provider)
    req = GenerationRequest(
        thread_id=body.thread_id,
        message_id=body.message_id,
        model=body.model,
        history=body.history,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
    )
    try:
        gen = orchestrator.claim(req)
    except RelayError as e:
        raise _http_error(e) from e
    orchestrator.start(gen)
    return StreamingResponse(gen.iter_bytes(), media_type="text/plain; charset=utf-8", headers=STREAM_HEADERS)


@app.get("/stream/resume", dependencies=_auth)
async def resume_stream(
    message_id: Optional[str] = Query(default=None, alias="messageId"),
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
) -> StreamingResponse:
    if not message_id:
        raise HTTPException(status_code=400, detail="messageId is required")
    server = ResumeServer()
    try:
        initial = server.open(message_id)
    except RelayError as e:
        raise _http_error(e) from e

    async def body_iter():
        async for text in server.iter_text(message_id, initial, session_id=session_id):
            yield text.encode("utf-8")

    return StreamingResponse(body_iter(), media_type="text/plain; charset=utf-8", headers=STREAM_HEADERS)


@app.post("/stream/cancel", dependencies=_auth)
async def cancel_stream(body: CancelIn) -> JSONResponse:
    if repo.get_thread(body.thread_id) is None:
        raise HTTPException(status_code=404, detail="thread not found")
    message_id = body.message_id
    if message_id is not None:
        m = repo.get_message(message_id)
        if m is None or m.thread_id != body.thread_id:
            raise HTTPException(status_code=404, detail="message not found")
        # a finished message has nothing left to stop
        flag = not m.is_terminal
    else:
        active = repo.active_message_for_thread(body.thread_id)
        message_id = active.id if active is not None else None
        flag = message_id is not None
    repo.set_thread_streaming(body.thread_id, False)
    if flag:
        SqlStopSignal().set(message_id)
    STOP_REQUESTS.inc()
    log.info({"event": "stream.cancel_requested", "thread_id": body.thread_id, "message_id": message_id})
    return JSONResponse(content={"status": "stopping", "thread_id": body.thread_id, "message_id": message_id})

# packages/core/logging.py
from __future__ import annotations

import contextvars
import json
import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import Request, Response

trace_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("trace_id", default=None)

# Attributes every LogRecord has; anything else came in through `extra=`
_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    msg = record.msg
    if isinstance(msg, dict):
        out.update(msg)
    else:
        out["message"] = record.getMessage()
    for k, v in record.__dict__.items():
        if k not in _RESERVED and not k.startswith("_"):
            out[k] = v
    tid = trace_id_var.get()
    if tid and "trace_id" not in out:
        out["trace_id"] = tid
    return out


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
            **_fields(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class PlainFormatter(logging.Formatter):
    # key=value rendering for terminals
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        head = f"{ts} | {record.levelname.ljust(5)} | {record.name}:"
        fields = _fields(record)
        text = str(fields.pop("message", ""))
        parts = []
        for k, v in fields.items():
            v_str = json.dumps(v, ensure_ascii=False, default=str) if isinstance(v, (dict, list)) else str(v)
            if " " in v_str or ";" in v_str:
                v_str = f'"{v_str}"'
            parts.append(f"{k}={v_str}")
        line = " ".join(p for p in [text, *parts] if p)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return f"{head} {line}".rstrip()


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())

    handler = logging.StreamHandler()
    fmt = os.getenv("LOG_FORMAT", "json").lower()
    if fmt in ("plain", "text", "human"):
        handler.setFormatter(PlainFormatter())
    else:
        handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)


async def request_logging_middleware(request: Request, call_next):
    start = time.perf_counter()
    token = trace_id_var.set(request.headers.get("x-trace-id"))
    response: Optional[Response] = None
    try:
        response = await call_next(request)
        return response
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        # streaming bodies are still being sent here; duration is time-to-headers
        logging.getLogger("app.request").info(
            {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code if response is not None else 500,
                "duration_ms": round(duration_ms, 2),
            }
        )
        trace_id_var.reset(token)

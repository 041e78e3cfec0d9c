# chatcore/core/logging.py
from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

from fastapi import Request, Response

# Fields merged into every record logged inside a bound scope (trace id, abort key, conversation id)
_log_context: ContextVar[Dict[str, Any]] = ContextVar("chatcore_log_context", default={})


@contextmanager
def bound_log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = current_log_context()
    msg = record.msg
    if isinstance(msg, dict):
        fields.update(msg)
    else:
        fields["message"] = record.getMessage()
    return fields


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
            **_record_fields(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class PlainFormatter(logging.Formatter):
    # key=value pairs, values with spaces quoted
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        head = f"{ts} | {record.levelname.ljust(5)} | {record.name}:"
        fields = _record_fields(record)
        message = fields.pop("message", None)
        parts = [str(message)] if message is not None else []
        for k, v in fields.items():
            v_str = json.dumps(v, ensure_ascii=False, default=str) if isinstance(v, (dict, list)) else str(v)
            if " " in v_str or ";" in v_str:
                v_str = f'"{v_str}"'
            parts.append(f"{k}={v_str}")
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return f"{head} {text}".rstrip()


def configure_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())

    handler = logging.StreamHandler()
    fmt = (fmt or os.getenv("LOG_FORMAT", "json")).lower()
    if fmt in ("plain", "text", "human"):
        handler.setFormatter(PlainFormatter())
    else:
        handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    # httpx logs every provider call at INFO
    logging.getLogger("httpx").setLevel(max(root.level, logging.WARNING))


async def request_logging_middleware(request: Request, call_next):
    start = time.perf_counter()
    response: Optional[Response] = None
    with bound_log_context(trace_id=request.headers.get("x-trace-id")):
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            logging.getLogger("app.request").info(
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code if response is not None else 500,
                    "duration_ms": round(duration_ms, 2),
                }
            )

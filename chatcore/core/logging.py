# chatcore/core/logging.py
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import Request, Response

# Attributes every LogRecord carries; anything else was passed through `extra=`
_RESERVED = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


def _payload(record: logging.LogRecord) -> Dict[str, Any]:
    msg = record.msg
    if isinstance(msg, dict):
        data = dict(msg)
    else:
        data = {"message": record.getMessage()}
    for key, value in record.__dict__.items():
        if key not in _RESERVED and key not in data:
            data[key] = value
    return data


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        base: Dict[str, Any] = {
            "level": record.levelname,
            "time": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "logger": record.name,
        }
        payload = {**base, **_payload(record)}
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class PlainFormatter(logging.Formatter):
    # Human readable; dict messages become key=value pairs
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        head = f"{ts} | {record.levelname.ljust(5)} | {record.name}:"
        parts = []
        for k, v in _payload(record).items():
            if isinstance(v, (dict, list)):
                v_str = json.dumps(v, ensure_ascii=False, default=str)
            else:
                v_str = str(v)
            if k == "message":
                parts.insert(0, v_str)
                continue
            if " " in v_str or ";" in v_str:
                v_str = f'"{v_str}"'
            parts.append(f"{k}={v_str}")
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return f"{head} {text}".rstrip()


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
    response: Optional[Response] = None
    try:
        response = await call_next(request)
        return response
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        logging.getLogger("chatcore.request").info(
            {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code if response is not None else 500,
                "duration_ms": round(duration_ms, 2),
                "trace_id": request.headers.get("x-trace-id"),
            }
        )

"""Logging setup: plain or JSON output, request IDs and dispatch context fields."""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from contextvars import ContextVar
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Fields that callers attach with ``extra={...}`` and the JSON output keeps.
CONTEXT_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
    "microgrid_id",
    "dispatch_id",
    "event",
    "state",
)

_MICROGRID_PATH = re.compile(r"/microgrids/(\d+)")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with the request ID and context fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        rid = request_id_var.get("")
        if rid:
            entry["request_id"] = rid

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        for key in CONTEXT_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val if isinstance(val, (int, float, bool)) else str(val)

        return json.dumps(entry)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Sets ``X-Request-ID`` and logs one access line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:8]
        request_id_var.set(rid)

        start = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 1)
        response.headers["X-Request-ID"] = rid

        path = request.url.path
        match = _MICROGRID_PATH.search(path)
        logging.getLogger("dispatch.access").info(
            "%s %s -> %s (%.1fms)",
            request.method,
            path,
            response.status_code,
            duration_ms,
            extra={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "client_ip": request.client.host if request.client else "unknown",
                "microgrid_id": int(match.group(1)) if match else None,
            },
        )
        return response


def setup_logging(json_format: bool = False, level: int = logging.INFO) -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.handlers.clear()
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

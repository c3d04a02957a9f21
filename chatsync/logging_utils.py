import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
profile_id_ctx: ContextVar[Optional[str]] = ContextVar("profile_id", default=None)

_CONTEXT: Dict[str, ContextVar] = {"request_id": request_id_ctx, "profile_id": profile_id_ctx}

QUIET_LOGGERS = ("pymongo", "motor", "redis")


class SyncJsonFormatter(jsonlogger.JsonFormatter):

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds")
        for key, var in _CONTEXT.items():
            value = var.get()
            if value and key not in log_record:
                log_record[key] = value


def setup_logging(log_level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        SyncJsonFormatter("%(ts)s %(levelname)s %(name)s %(message)s", rename_fields={"levelname": "level"})
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level.upper())

    # uvicorn keeps its own handlers; send them through ours instead
    for name in ("uvicorn", "uvicorn.error"):
        uv = logging.getLogger(name)
        uv.handlers = [handler]
        uv.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # reuse the gateway's id when it forwarded one
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        tokens = [
            request_id_ctx.set(request_id),
            profile_id_ctx.set(request.headers.get("X-Profile-Id") or None),
        ]
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            status = response.status_code
            level = logging.ERROR if status >= 500 else logging.WARNING if status >= 400 else logging.INFO
            logging.getLogger("chatsync.requests").log(
                level,
                "%s %s -> %d",
                request.method,
                request.url.path,
                status,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "latency_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return response
        finally:
            profile_id_ctx.reset(tokens[1])
            request_id_ctx.reset(tokens[0])

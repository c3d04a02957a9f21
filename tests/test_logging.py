"""
Tests for the JSON log formatter and the request logging middleware.
"""

import json
import logging

import httpx
from fastapi import FastAPI

from chatsync.logging_utils import RequestLoggingMiddleware, SyncJsonFormatter, profile_id_ctx, request_id_ctx


def format_record(message="hello", **extra):
    formatter = SyncJsonFormatter("%(ts)s %(levelname)s %(name)s %(message)s", rename_fields={"levelname": "level"})
    record = logging.LogRecord("chatsync.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


class TestFormatter:

    def test_fields(self):
        body = format_record()

        assert body["level"] == "INFO"
        assert body["name"] == "chatsync.test"
        assert body["message"] == "hello"
        assert body["ts"].endswith("+00:00")
        assert "request_id" not in body

    def test_context_ids_are_attached(self):
        tokens = (request_id_ctx.set("req-1"), profile_id_ctx.set("A"))
        try:
            body = format_record()
        finally:
            profile_id_ctx.reset(tokens[1])
            request_id_ctx.reset(tokens[0])

        assert body["request_id"] == "req-1"
        assert body["profile_id"] == "A"


class TestMiddleware:

    async def test_request_id_is_echoed_and_logged(self, caplog):
        app = FastAPI()
        app.add_middleware(RequestLoggingMiddleware)

        @app.get("/ping")
        async def ping():
            return {"request_id": request_id_ctx.get(), "profile_id": profile_id_ctx.get()}

        caplog.set_level(logging.INFO, logger="chatsync.requests")
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            forwarded = await client.get("/ping", headers={"X-Request-ID": "gw-42", "X-Profile-Id": "A"})
            generated = await client.get("/ping")

        assert forwarded.headers["X-Request-ID"] == "gw-42"
        assert forwarded.json() == {"request_id": "gw-42", "profile_id": "A"}
        assert generated.headers["X-Request-ID"]
        assert generated.json()["profile_id"] is None

        [first, second] = [r for r in caplog.records if r.name == "chatsync.requests"]
        assert (first.method, first.path, first.status) == ("GET", "/ping", 200)
        assert first.getMessage() == "GET /ping -> 200"
        assert second.latency_ms >= 0

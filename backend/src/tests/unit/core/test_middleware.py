"""Unit tests for the request id and timing middleware."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from persona.core.middleware import RequestIDMiddleware, TimingMiddleware


def _make_request(headers: list[tuple[bytes, bytes]] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/v1/chats",
        "query_string": b"",
        "headers": headers or [],
        "root_path": "",
    }
    return Request(scope)


async def _ok_handler(request: Request) -> Response:
    return JSONResponse(status_code=200, content={"ok": True})


async def test_request_id_is_propagated() -> None:
    middleware = RequestIDMiddleware(app=AsyncMock())
    request = _make_request([(b"x-request-id", b"req-42")])

    response = await middleware.dispatch(request, _ok_handler)

    assert response.headers["X-Request-ID"] == "req-42"
    assert request.state.request_id == "req-42"


async def test_request_id_is_generated() -> None:
    middleware = RequestIDMiddleware(app=AsyncMock())
    response = await middleware.dispatch(_make_request(), _ok_handler)
    assert len(response.headers["X-Request-ID"]) == 36


async def test_timing_header() -> None:
    middleware = TimingMiddleware(app=AsyncMock())
    response = await middleware.dispatch(_make_request(), _ok_handler)
    assert response.headers["X-Response-Time"].endswith("s")

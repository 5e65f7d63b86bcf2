# tests/test_app.py - App-level middleware and error handlers
import json

import pytest
from httpx import AsyncClient
from starlette.requests import Request

from main import global_exception_handler


def _request(path: str) -> Request:
    return Request({
        "type": "http",
        "method": "POST",
        "path": path,
        "query_string": b"",
        "headers": [(b"origin", b"https://dashboard.example")],
    })


@pytest.mark.asyncio
class TestUnhandledErrors:
    async def test_ctms_route_envelope_has_cors(self):
        res = await global_exception_handler(_request("/api/v1/ctms/sync"), RuntimeError("boom"))
        assert res.status_code == 500
        assert json.loads(res.body) == {"success": False, "error": "Internal server error"}
        assert res.headers["access-control-allow-origin"] == "*"

    async def test_other_routes_have_cors(self):
        res = await global_exception_handler(_request("/api/v1/configurations"), RuntimeError("boom"))
        assert res.status_code == 500
        assert json.loads(res.body)["detail"] == "Internal server error"
        assert res.headers["access-control-allow-origin"] == "*"


@pytest.mark.asyncio
class TestCorrelation:
    async def test_request_id_echoed_with_timing(self, client: AsyncClient):
        res = await client.get("/", headers={"X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"
        assert res.headers["X-Correlation-ID"] == "req-123"
        assert res.headers["X-Response-Time"].endswith("s")
        assert float(res.headers["X-Response-Time"][:-1]) >= 0

import asyncio

import httpx
import pytest

from mcp_relay.mcp.protocol_models import ServerConfig
from mcp_relay.mcp.transports.base import JSONRPCError, TransportError
from mcp_relay.mcp.transports.http_transport import SESSION_HEADER, HttpTransport

URL = "https://api.example.dev/v1/mcp"


def _transport(**kwargs) -> HttpTransport:
    return HttpTransport(ServerConfig(url=URL, **kwargs))


def test_extract_json_from_sse_event_message_payload() -> None:
    body = (
        "event: message\r\n"
        "data: {\"jsonrpc\":\"2.0\",\"id\":1,\"result\":{\"ok\":true}}\r\n\r\n"
    )
    parsed = HttpTransport._extract_json_from_sse(body)
    assert parsed == {"jsonrpc": "2.0", "id": 1, "result": {"ok": True}}


def test_extract_json_from_sse_multiline_data_payload() -> None:
    body = (
        "event: message\n"
        "data: {\"jsonrpc\":\"2.0\",\n"
        "data: \"id\":1,\n"
        "data: \"result\":{\"ok\":true}}\n\n"
    )
    parsed = HttpTransport._extract_json_from_sse(body)
    assert parsed == {"jsonrpc": "2.0", "id": 1, "result": {"ok": True}}


def test_extract_json_from_sse_skips_interleaved_notifications() -> None:
    body = (
        "event: message\n"
        "data: {\"jsonrpc\":\"2.0\",\"method\":\"notifications/progress\"}\n\n"
        "event: message\n"
        "data: {\"jsonrpc\":\"2.0\",\"id\":4,\"result\":{\"tools\":[]}}\n\n"
    )
    parsed = HttpTransport._extract_json_from_sse(body)
    assert parsed == {"jsonrpc": "2.0", "id": 4, "result": {"tools": []}}


def test_request_accepts_sse_when_json_load_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    body = (
        "event: message\r\n"
        "data: {\"jsonrpc\":\"2.0\",\"id\":1,\"result\":{\"serverInfo\":{\"name\":\"Docs MCP\"}}}\r\n\r\n"
    )

    async def fake_post(self, url, json, headers, timeout):  # noqa: ANN001
        return httpx.Response(200, text=body, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    async def scenario():
        transport = _transport()
        await transport.open()
        try:
            return await transport.request("initialize", {}, timeout=5.0)
        finally:
            await transport.close()

    assert asyncio.run(scenario()) == {"serverInfo": {"name": "Docs MCP"}}


def test_notify_allows_empty_body(monkeypatch: pytest.MonkeyPatch) -> None:
    sent = []

    async def fake_post(self, url, json, headers, timeout):  # noqa: ANN001
        sent.append(json)
        return httpx.Response(202, text="", request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    async def scenario():
        transport = _transport()
        await transport.open()
        try:
            await transport.notify("notifications/initialized")
        finally:
            await transport.close()

    asyncio.run(scenario())
    assert sent == [{"jsonrpc": "2.0", "method": "notifications/initialized"}]


def test_request_rejects_empty_body(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_post(self, url, json, headers, timeout):  # noqa: ANN001
        return httpx.Response(202, text="", request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    async def scenario():
        transport = _transport()
        await transport.open()
        try:
            await transport.request("tools/list", {}, timeout=5.0)
        finally:
            await transport.close()

    with pytest.raises(TransportError, match="Empty response"):
        asyncio.run(scenario())


def test_request_raises_jsonrpc_error_object(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_post(self, url, json, headers, timeout):  # noqa: ANN001
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "Method not found"}},
            request=httpx.Request("POST", url),
        )

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    async def scenario():
        transport = _transport()
        await transport.open()
        try:
            await transport.request("ping", {}, timeout=5.0)
        finally:
            await transport.close()

    with pytest.raises(JSONRPCError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.code == -32601


def test_http_status_error_is_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_post(self, url, json, headers, timeout):  # noqa: ANN001
        return httpx.Response(503, text="unavailable", request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    async def scenario():
        transport = _transport()
        await transport.open()
        try:
            await transport.request("initialize", {}, timeout=5.0)
        finally:
            await transport.close()

    with pytest.raises(TransportError, match="HTTP 503"):
        asyncio.run(scenario())


def test_timeout_is_builtin_timeout_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_post(self, url, json, headers, timeout):  # noqa: ANN001
        raise httpx.ReadTimeout("slow", request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    async def scenario():
        transport = _transport()
        await transport.open()
        try:
            await transport.request("initialize", {}, timeout=0.5)
        finally:
            await transport.close()

    with pytest.raises(TimeoutError):
        asyncio.run(scenario())


def test_session_id_and_config_headers_are_sent(monkeypatch: pytest.MonkeyPatch) -> None:
    seen_headers: list[dict] = []
    deleted: list[dict] = []

    async def fake_post(self, url, json, headers, timeout):  # noqa: ANN001
        seen_headers.append(dict(headers))
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": json["id"], "result": {}},
            headers={SESSION_HEADER: "sess-42"},
            request=httpx.Request("POST", url),
        )

    async def fake_delete(self, url, headers, timeout):  # noqa: ANN001
        deleted.append(dict(headers))
        return httpx.Response(204, request=httpx.Request("DELETE", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    monkeypatch.setattr(httpx.AsyncClient, "delete", fake_delete)

    async def scenario():
        transport = _transport(headers={"Authorization": "Bearer abc"})
        await transport.open()
        await transport.request("initialize", {}, timeout=5.0)
        await transport.request("tools/list", {}, timeout=5.0)
        await transport.close()
        await transport.close()

    asyncio.run(scenario())

    assert seen_headers[0]["Authorization"] == "Bearer abc"
    assert SESSION_HEADER not in seen_headers[0]
    assert seen_headers[1][SESSION_HEADER] == "sess-42"
    assert len(deleted) == 1
    assert deleted[0][SESSION_HEADER] == "sess-42"


def test_request_before_open_fails() -> None:
    async def scenario():
        await _transport().request("ping", {}, timeout=1.0)

    with pytest.raises(TransportError, match="not open"):
        asyncio.run(scenario())

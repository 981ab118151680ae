import asyncio

import pytest

from mcp_relay.mcp.connection import ToolServerConnection
from mcp_relay.mcp.errors import (
    HandshakeError,
    HandshakeTimeoutError,
    NotConnectedError,
    ToolInvocationError,
)
from mcp_relay.mcp.protocol_models import CapabilityConfig, ServerConfig

URL = "http://mcp.test/tools"
CLIENT_INFO = {"name": "mcp-relay-tests", "version": "0"}


def _connection(factory) -> ToolServerConnection:
    return ToolServerConnection("dev-1", "tools", factory, client_info=CLIENT_INFO, probe_timeout=0.2)


def test_connect_negotiates_and_lists_tools(fake_servers) -> None:
    server = fake_servers.add(URL)

    async def scenario():
        conn = _connection(fake_servers)
        await conn.connect(ServerConfig(url=URL, protocol_version="2025-03-26"))
        tools = await conn.list_tools()
        await conn.close()
        return conn, tools

    conn, tools = asyncio.run(scenario())

    assert server.initialize_params[0]["protocolVersion"] == "2025-03-26"
    assert server.initialize_params[0]["clientInfo"] == CLIENT_INFO
    # The server answered with its own version; that is what gets recorded.
    assert conn.protocol_version == "2024-11-05"
    assert conn.server_info.name == "fake-server"
    assert conn.last_contact_at is not None
    assert sorted(t.name for t in tools) == ["add", "echo_tool"]


def test_connect_rejects_response_without_protocol_version(fake_servers) -> None:
    server = fake_servers.add(URL)
    server.protocol_version = None

    async def scenario():
        conn = _connection(fake_servers)
        with pytest.raises(HandshakeError, match="protocolVersion"):
            await conn.connect(ServerConfig(url=URL))
        return conn

    conn = asyncio.run(scenario())

    assert conn.closed is True
    assert server.open_transports == []


def test_connect_times_out_with_handshake_timeout(fake_servers) -> None:
    server = fake_servers.add(URL)
    server.hang_initialize = True

    async def scenario():
        conn = _connection(fake_servers)
        with pytest.raises(HandshakeTimeoutError) as exc_info:
            await conn.connect(ServerConfig(url=URL, timeout_ms=100))
        return exc_info.value

    error = asyncio.run(scenario())

    assert isinstance(error, TimeoutError)
    assert server.open_transports == []


def test_connect_wraps_transport_failure(fake_servers) -> None:
    fake_servers.add(URL, fail_connects=1)

    async def scenario():
        conn = _connection(fake_servers)
        with pytest.raises(HandshakeError, match="connection refused"):
            await conn.connect(ServerConfig(url=URL))

    asyncio.run(scenario())


def test_unknown_transport_is_a_handshake_error() -> None:
    def factory(config):
        raise NotImplementedError(f"No transport factory registered for: {config.transport}")

    async def scenario():
        conn = _connection(factory)
        with pytest.raises(HandshakeError, match="No transport factory"):
            await conn.connect(ServerConfig(url=URL, transport="carrier-pigeon"))

    asyncio.run(scenario())


def test_list_tools_follows_pagination(fake_servers) -> None:
    server = fake_servers.add(
        URL,
        tools=[{"name": f"tool_{i}", "inputSchema": {"type": "object"}} for i in range(5)],
    )
    server.page_size = 2

    async def scenario():
        conn = _connection(fake_servers)
        await conn.connect(ServerConfig(url=URL))
        tools = await conn.list_tools()
        await conn.close()
        return tools

    tools = asyncio.run(scenario())

    assert [t.name for t in tools] == [f"tool_{i}" for i in range(5)]


def test_list_tools_keeps_usage_counts_of_remaining_tools(fake_servers) -> None:
    server = fake_servers.add(URL)

    async def scenario():
        conn = _connection(fake_servers)
        await conn.connect(ServerConfig(url=URL))
        await conn.list_tools()
        conn.tools["echo_tool"].usage_count = 3
        conn.tools["add"].usage_count = 1
        server.tools = [t for t in server.tools if t["name"] == "echo_tool"]
        await conn.list_tools()
        await conn.close()
        return conn.tools

    tools = asyncio.run(scenario())

    assert list(tools) == ["echo_tool"]
    assert tools["echo_tool"].usage_count == 3


def test_list_tools_skipped_when_tools_capability_disabled(fake_servers) -> None:
    fake_servers.add(URL)
    config = ServerConfig(url=URL)
    config.capabilities["tools"] = CapabilityConfig(enabled=False)

    async def scenario():
        conn = _connection(fake_servers)
        await conn.connect(config)
        tools = await conn.list_tools()
        await conn.close()
        return tools

    assert asyncio.run(scenario()) == []


def test_call_tool_returns_text_output(fake_servers) -> None:
    fake_servers.add(URL)

    async def scenario():
        conn = _connection(fake_servers)
        await conn.connect(ServerConfig(url=URL))
        result = await conn.call_tool("add", {"a": 2, "b": 3})
        await conn.close()
        return result

    result = asyncio.run(scenario())

    assert result.text_output == "5"
    assert result.is_error is False


def test_call_tool_timeout_is_invocation_error(fake_servers) -> None:
    server = fake_servers.add(URL)

    async def slow(arguments):
        await asyncio.sleep(3600)

    server.tool_handlers["echo_tool"] = slow

    async def scenario():
        conn = _connection(fake_servers)
        await conn.connect(ServerConfig(url=URL, timeout_ms=100))
        with pytest.raises(ToolInvocationError, match="timed out"):
            await conn.call_tool("echo_tool", {"text": "x"})
        await conn.close()

    asyncio.run(scenario())


def test_call_after_close_is_not_connected(fake_servers) -> None:
    server = fake_servers.add(URL)

    async def scenario():
        conn = _connection(fake_servers)
        await conn.connect(ServerConfig(url=URL))
        await conn.close()
        await conn.close()
        with pytest.raises(NotConnectedError):
            await conn.call_tool("echo_tool", {"text": "x"})

    asyncio.run(scenario())

    assert len(server.transports) == 1
    assert server.transports[0].closed is True


def test_is_alive_treats_any_jsonrpc_reply_as_alive(fake_servers) -> None:
    server = fake_servers.add(URL)

    async def scenario():
        conn = _connection(fake_servers)
        await conn.connect(ServerConfig(url=URL))
        results = [await conn.is_alive()]
        server.ping_supported = False
        results.append(await conn.is_alive())
        server.alive = False
        results.append(await conn.is_alive())
        server.alive = True
        server.hang_ping = True
        results.append(await conn.is_alive())
        await conn.close()
        results.append(await conn.is_alive())
        return results

    assert asyncio.run(scenario()) == [True, True, False, False, False]

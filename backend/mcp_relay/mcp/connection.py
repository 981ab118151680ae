"""One logical connection from one device to one MCP tool server."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from mcp_relay.config.defaults import SUPPORTED_PROTOCOL_VERSIONS
from mcp_relay.mcp.errors import HandshakeError, HandshakeTimeoutError, NotConnectedError, ToolInvocationError
from mcp_relay.mcp.protocol_models import (
    MCPToolCallResult,
    ServerConfig,
    ServerInfo,
    ToolCatalogEntry,
    parse_server_info,
    parse_tool_call_result,
    parse_tools_list_response,
)
from mcp_relay.mcp.transports.base import JSONRPCError, MCPTransport, TransportError
from mcp_relay.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

JSONRPC_METHOD_NOT_FOUND = -32601
MAX_TOOL_LIST_PAGES = 20
CLOSE_DRAIN_TIMEOUT_SECONDS = 1.0


class ToolServerConnection:
    """Owns one transport session, the negotiated handshake result and the tool catalog.

    State transitions are driven by ``MCPConnectionManager``; this class only tracks
    whether its transport is still usable.
    """

    def __init__(
        self,
        device_id: str,
        server_name: str,
        transport_factory: Callable[[ServerConfig], MCPTransport],
        *,
        client_info: dict[str, str],
        probe_timeout: float,
    ) -> None:
        self.device_id = device_id
        self.server_name = server_name
        self.config: ServerConfig | None = None
        self.protocol_version: str | None = None
        self.server_info: ServerInfo | None = None
        self.server_capabilities: dict = {}
        self.tools: dict[str, ToolCatalogEntry] = {}
        self.last_contact_at: str | None = None
        self._transport_factory = transport_factory
        self._client_info = client_info
        self._probe_timeout = probe_timeout
        self._transport: MCPTransport | None = None
        self._closed = False
        self._inflight_calls = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def key(self) -> tuple[str, str]:
        return (self.device_id, self.server_name)

    @property
    def closed(self) -> bool:
        return self._closed

    def touch(self) -> None:
        self.last_contact_at = utc_now_iso()

    async def connect(self, config: ServerConfig) -> None:
        """Open the transport and run the initialize handshake, bounded by ``config.timeout_ms``."""
        if self._closed:
            raise HandshakeError(f"{self.server_name}: connection already closed")
        if self._transport is not None:
            return
        self.config = config
        try:
            self._transport = self._transport_factory(config)
        except (NotImplementedError, ValueError) as exc:
            self._closed = True
            raise HandshakeError(f"{self.server_name}: {exc}") from exc

        try:
            await asyncio.wait_for(self._handshake(config), timeout=config.timeout_seconds)
        except HandshakeError:
            await self._abort()
            raise
        except (asyncio.TimeoutError, TimeoutError) as exc:
            await self._abort()
            raise HandshakeTimeoutError(
                f"{self.server_name}: no initialize response within {config.timeout_ms}ms"
            ) from exc
        except (TransportError, JSONRPCError, OSError) as exc:
            await self._abort()
            raise HandshakeError(f"{self.server_name}: initialize failed: {exc}") from exc
        except asyncio.CancelledError:
            await self._abort()
            raise

        logger.info(
            "MCP handshake complete: device=%s server=%s protocol=%s serverInfo=%s/%s",
            self.device_id,
            self.server_name,
            self.protocol_version,
            self.server_info.name if self.server_info else "?",
            self.server_info.version if self.server_info else "?",
        )

    async def _handshake(self, config: ServerConfig) -> None:
        transport = self._require_transport()
        await transport.open()
        result = await transport.request(
            "initialize",
            {
                "protocolVersion": config.protocol_version,
                "capabilities": config.client_capabilities(),
                "clientInfo": self._client_info,
            },
            timeout=config.timeout_seconds,
        )
        version = result.get("protocolVersion")
        if not isinstance(version, str) or not version:
            raise HandshakeError(f"{self.server_name}: malformed initialize response (no protocolVersion)")
        if version != config.protocol_version:
            logger.info(
                "MCP server %s negotiated protocol %s (requested %s)",
                self.server_name, version, config.protocol_version,
            )
        if version not in SUPPORTED_PROTOCOL_VERSIONS:
            logger.warning("MCP server %s uses unrecognised protocol version %s", self.server_name, version)
        capabilities = result.get("capabilities")
        self.protocol_version = version
        self.server_info = parse_server_info(result)
        self.server_capabilities = capabilities if isinstance(capabilities, dict) else {}
        await transport.notify("notifications/initialized")
        self.touch()

    async def list_tools(self) -> list[ToolCatalogEntry]:
        """Refresh the tool catalog. Usage counts of tools still offered are kept."""
        transport = self._require_open()
        config = self.config
        assert config is not None
        if not config.capability_enabled("tools"):
            self.tools = {}
            return []
        if self.server_capabilities and "tools" not in self.server_capabilities:
            self.tools = {}
            return []

        discovered: list[ToolCatalogEntry] = []
        cursor: str | None = None
        try:
            for _ in range(MAX_TOOL_LIST_PAGES):
                params = {"cursor": cursor} if cursor else {}
                raw = await asyncio.wait_for(
                    transport.request("tools/list", params, timeout=config.timeout_seconds),
                    timeout=config.timeout_seconds,
                )
                discovered.extend(parse_tools_list_response(raw))
                next_cursor = raw.get("nextCursor")
                if not isinstance(next_cursor, str) or not next_cursor:
                    break
                cursor = next_cursor
        except JSONRPCError as exc:
            if exc.code != JSONRPC_METHOD_NOT_FOUND:
                raise HandshakeError(f"{self.server_name}: tools/list failed: {exc}") from exc
            discovered = []
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise HandshakeTimeoutError(
                f"{self.server_name}: tools/list timed out after {config.timeout_ms}ms"
            ) from exc
        except (TransportError, OSError) as exc:
            raise HandshakeError(f"{self.server_name}: tools/list failed: {exc}") from exc

        previous = self.tools
        catalog: dict[str, ToolCatalogEntry] = {}
        for tool in discovered:
            prev = previous.get(tool.name)
            if prev is not None:
                tool.usage_count = prev.usage_count
            catalog[tool.name] = tool
        self.tools = catalog
        self.touch()
        return list(catalog.values())

    async def call_tool(self, name: str, arguments: dict) -> MCPToolCallResult:
        transport = self._require_open()
        config = self.config
        assert config is not None
        timeout = config.timeout_seconds
        self._inflight_calls += 1
        self._idle.clear()
        try:
            raw = await asyncio.wait_for(
                transport.request("tools/call", {"name": name, "arguments": arguments}, timeout=timeout),
                timeout=timeout,
            )
        except JSONRPCError as exc:
            raise ToolInvocationError(name, str(exc)) from exc
        except (asyncio.TimeoutError, TimeoutError) as exc:
            if self._closed:
                raise NotConnectedError(self.device_id, self.server_name) from exc
            raise ToolInvocationError(name, f"timed out after {config.timeout_ms}ms") from exc
        except (TransportError, OSError) as exc:
            if self._closed:
                raise NotConnectedError(self.device_id, self.server_name) from exc
            raise ToolInvocationError(name, str(exc)) from exc
        finally:
            self._inflight_calls -= 1
            if self._inflight_calls == 0:
                self._idle.set()

        self.touch()
        result = parse_tool_call_result(raw)
        if result.is_error:
            raise ToolInvocationError(name, result.text_output or "tool reported an error")
        return result

    async def is_alive(self) -> bool:
        """Send a JSON-RPC ping bounded by the probe timeout.

        Any JSON-RPC answer, including an error object, means the server is reachable.
        """
        transport = self._transport
        if transport is None or self._closed:
            return False
        try:
            await asyncio.wait_for(
                transport.request("ping", {}, timeout=self._probe_timeout),
                timeout=self._probe_timeout,
            )
        except JSONRPCError:
            return True
        except (asyncio.TimeoutError, TimeoutError):
            logger.info("MCP ping timed out: device=%s server=%s", self.device_id, self.server_name)
            return False
        except (TransportError, OSError) as exc:
            logger.info("MCP ping failed: device=%s server=%s: %s", self.device_id, self.server_name, exc)
            return False
        return True

    async def close(self) -> None:
        """Release the transport. Calls still in flight get a short grace period first."""
        if self._closed:
            return
        self._closed = True
        if self._inflight_calls:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=CLOSE_DRAIN_TIMEOUT_SECONDS)
            except (asyncio.TimeoutError, TimeoutError):
                logger.info(
                    "Closing MCP connection with %d call(s) in flight: device=%s server=%s",
                    self._inflight_calls, self.device_id, self.server_name,
                )
        await self._release_transport()

    async def _abort(self) -> None:
        self._closed = True
        await self._release_transport()

    async def _release_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except (TransportError, OSError) as exc:
            logger.warning(
                "Error closing MCP transport: device=%s server=%s: %s",
                self.device_id, self.server_name, exc,
            )

    def _require_transport(self) -> MCPTransport:
        if self._transport is None:
            raise TransportError("transport not available")
        return self._transport

    def _require_open(self) -> MCPTransport:
        if self._closed or self._transport is None:
            raise NotConnectedError(self.device_id, self.server_name)
        return self._transport

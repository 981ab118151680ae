"""MCP transport adapters: http (remote servers) and stdio (local servers)."""

from __future__ import annotations

from typing import Callable

from mcp_relay.mcp.protocol_models import ServerConfig
from mcp_relay.mcp.transports.base import MCPTransport
from mcp_relay.mcp.transports.http_transport import HttpTransport
from mcp_relay.mcp.transports.stdio import StdioTransport

TransportFactory = Callable[[ServerConfig], MCPTransport]

# Tests can override via register_transport_factory
_transport_factory_registry: dict[str, TransportFactory] = {}


def register_transport_factory(name: str, factory: TransportFactory) -> None:
    """Register a transport factory. name is e.g. 'stdio', 'http'."""
    _transport_factory_registry[name.lower().strip()] = factory


def build_transport(config: ServerConfig) -> MCPTransport:
    key = config.transport.lower().strip()
    if key in {"streamable-http", "streamable_http"}:
        key = "http"
    factory = _transport_factory_registry.get(key)
    if factory is None:
        raise NotImplementedError(f"No transport factory registered for: {config.transport}")
    return factory(config)


register_transport_factory("http", HttpTransport)
register_transport_factory("stdio", StdioTransport)

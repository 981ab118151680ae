"""Error taxonomy for the MCP connection layer."""

from __future__ import annotations

from mcp_relay.middleware.error_handler import ServiceError


class MCPError(ServiceError):
    """Base class for MCP connection errors surfaced to callers."""

    status_code = 400


class ConfigNotFoundError(MCPError):
    status_code = 404

    def __init__(self, device_id: str, server_name: str) -> None:
        super().__init__(f"MCP server not configured: {server_name} (device {device_id})")
        self.device_id = device_id
        self.server_name = server_name


class HandshakeError(MCPError):
    """Connection attempt failed: transport error or malformed initialize response."""

    status_code = 502


class HandshakeTimeoutError(HandshakeError, TimeoutError):
    """No initialize response within the configured timeout."""


class NotConnectedError(MCPError):
    status_code = 409

    def __init__(self, device_id: str, server_name: str, state: str | None = None) -> None:
        detail = f" (state: {state})" if state else ""
        super().__init__(f"MCP server {server_name} is not connected{detail}")
        self.device_id = device_id
        self.server_name = server_name
        self.state = state


class ToolInvocationError(MCPError):
    status_code = 502

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"Tool {tool_name} failed: {message}")
        self.tool_name = tool_name
        self.remote_message = message


class ShutdownTimeoutError(MCPError):
    """A connection did not close within the shutdown bound. Logged, never raised to callers."""

"""Per-device MCP server management on top of the connection manager."""

from __future__ import annotations

import logging

from mcp_relay.config.settings import get_settings
from mcp_relay.mcp.connection_manager import MCPConnectionManager
from mcp_relay.mcp.errors import ConfigNotFoundError, HandshakeError
from mcp_relay.mcp.protocol_models import ServerConfig
from mcp_relay.schemas.mcp import CapabilityIn, CreateMCPServerRequest, UpdateMCPServerRequest
from mcp_relay.utils.encryption import mask_headers

log = logging.getLogger(__name__)


def _capabilities_payload(capabilities: dict[str, CapabilityIn]) -> dict:
    return {name: cap.model_dump() for name, cap in capabilities.items()}


class MCPService:
    """Handles MCP server CRUD, connection control and tool calls for one request."""

    def __init__(self, manager: MCPConnectionManager) -> None:
        self._manager = manager
        self._store = manager.store

    def list_servers(self, device_id: str) -> list[dict]:
        return self._manager.get_device_servers(device_id)

    def get_server(self, device_id: str, server_name: str) -> dict:
        """Live status plus the stored config, with secret header values masked."""
        status = self._manager.get_server_status(device_id, server_name)
        config = self._store.get_config(device_id, server_name)
        if config is None:
            return status
        return {
            **status,
            "headers": mask_headers(config.headers),
            "args": list(config.args),
            "capabilities": config.capabilities_to_dict(),
            "timeoutMs": config.timeout_ms,
        }

    async def create_server(self, device_id: str, request: CreateMCPServerRequest) -> dict:
        """Save a config (replacing any with the same name) and try to connect it."""
        settings = get_settings()
        transport = request.transport or ("stdio" if request.command and not request.url else "http")
        config = ServerConfig(
            url=request.url,
            transport=transport,
            command=request.command,
            args=list(request.args),
            env=dict(request.env),
            protocol_version=request.protocolVersion or settings.mcp_default_protocol_version,
            capabilities=ServerConfig.capabilities_from_dict(_capabilities_payload(request.capabilities)),
            headers=dict(request.headers),
            timeout_ms=request.timeoutMs or settings.mcp_default_timeout_ms,
            enabled=request.enabled,
            description=request.description,
        )
        return await self._save_and_connect(device_id, request.name, config)

    async def update_server(
        self, device_id: str, server_name: str, request: UpdateMCPServerRequest
    ) -> dict:
        config = self._store.get_config(device_id, server_name)
        if config is None:
            raise ConfigNotFoundError(device_id, server_name)
        if request.url is not None:
            config.url = request.url
        if request.command is not None:
            config.command = request.command
        if request.transport is not None:
            config.transport = request.transport
        if request.args is not None:
            config.args = list(request.args)
        if request.env is not None:
            config.env = dict(request.env)
        if request.protocolVersion is not None:
            config.protocol_version = request.protocolVersion
        if request.capabilities is not None:
            config.capabilities = ServerConfig.capabilities_from_dict(
                _capabilities_payload(request.capabilities)
            )
        if request.headers is not None:
            config.headers = dict(request.headers)
        if request.timeoutMs is not None:
            config.timeout_ms = request.timeoutMs
        if request.enabled is not None:
            config.enabled = request.enabled
        if request.description is not None:
            config.description = request.description
        if config.transport == "stdio" and not config.command:
            raise ValueError("stdio transport requires command")
        if config.transport != "stdio" and not config.url:
            raise ValueError("http transport requires url")
        return await self._save_and_connect(device_id, server_name, config)

    async def _save_and_connect(self, device_id: str, server_name: str, config: ServerConfig) -> dict:
        # Drop the old connection so the new config takes effect.
        await self._manager.stop_server_process(device_id, server_name)
        connect_error = None
        try:
            status = await self._manager.initialize_server(device_id, server_name, config)
        except HandshakeError as exc:
            log.info("MCP server %s saved but not connected: %s", server_name, exc)
            connect_error = str(exc)
            status = self._manager.get_server_status(device_id, server_name)
        return {"server": status, "connectError": connect_error}

    async def delete_server(self, device_id: str, server_name: str) -> None:
        await self._manager.stop_server_process(device_id, server_name)
        if not self._store.delete_config(device_id, server_name):
            raise ConfigNotFoundError(device_id, server_name)
        self._store.save_log(device_id, server_name, "info", "Server deleted")

    async def set_server_enabled(self, device_id: str, server_name: str, enabled: bool) -> dict:
        return await self._manager.toggle_server(device_id, server_name, enabled)

    def list_tools(self, device_id: str, server_name: str) -> list[dict]:
        return self._manager.get_server_tools(device_id, server_name)

    async def call_tool(
        self, device_id: str, server_name: str, tool_name: str, arguments: dict
    ) -> dict:
        return await self._manager.handle_tool_call(device_id, server_name, tool_name, arguments)

    def list_logs(self, device_id: str, *, server_name: str | None = None, limit: int = 100) -> list[dict]:
        return self._store.list_logs(device_id, server_name=server_name, limit=limit)

    def prompt_injection(self, device_id: str) -> dict:
        return {"deviceId": device_id, "prompt": self._manager.generate_prompt_injection(device_id)}

    async def connect_device(self, device_id: str) -> list[dict]:
        return await self._manager.on_device_connected(device_id)

    async def disconnect_device(self, device_id: str) -> None:
        await self._manager.on_device_disconnected(device_id)

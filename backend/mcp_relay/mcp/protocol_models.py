from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from mcp_relay.config.defaults import CAPABILITY_NAMES, DEFAULT_PROTOCOL_VERSION, DEFAULT_TOOL_TIMEOUT_MS


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class CapabilityConfig:
    enabled: bool = True
    auto_approve: list[str] = field(default_factory=list)


def _default_capabilities() -> dict[str, CapabilityConfig]:
    return {
        "tools": CapabilityConfig(enabled=True),
        "resources": CapabilityConfig(enabled=False),
        "prompts": CapabilityConfig(enabled=False),
        "sampling": CapabilityConfig(enabled=False),
    }


@dataclass
class ServerConfig:
    """Per-device tool-server configuration, keyed by (device_id, server_name)."""

    url: str | None = None
    transport: str = "http"
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    capabilities: dict[str, CapabilityConfig] = field(default_factory=_default_capabilities)
    headers: dict[str, str] = field(default_factory=dict)
    timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS
    enabled: bool = True
    description: str | None = None

    @property
    def mode(self) -> str:
        return "local" if self.transport == "stdio" else "remote"

    @property
    def timeout_seconds(self) -> float:
        return max(self.timeout_ms, 1) / 1000.0

    def capability_enabled(self, name: str) -> bool:
        cap = self.capabilities.get(name)
        return bool(cap and cap.enabled)

    def client_capabilities(self) -> dict[str, dict]:
        """Capabilities advertised in the initialize request."""
        return {name: {} for name in CAPABILITY_NAMES if self.capability_enabled(name)}

    def capabilities_to_dict(self) -> dict[str, dict[str, Any]]:
        return {
            name: {"enabled": cap.enabled, "autoApprove": list(cap.auto_approve)}
            for name, cap in self.capabilities.items()
        }

    @staticmethod
    def capabilities_from_dict(raw: dict | None) -> dict[str, CapabilityConfig]:
        capabilities = _default_capabilities()
        if not isinstance(raw, dict):
            return capabilities
        for name, value in raw.items():
            if name not in CAPABILITY_NAMES:
                continue
            if isinstance(value, bool):
                capabilities[name] = CapabilityConfig(enabled=value)
                continue
            if not isinstance(value, dict):
                continue
            auto_approve = value.get("autoApprove", value.get("auto_approve", []))
            capabilities[name] = CapabilityConfig(
                enabled=bool(value.get("enabled", True)),
                auto_approve=[str(n) for n in auto_approve] if isinstance(auto_approve, list) else [],
            )
        return capabilities


@dataclass
class ServerInfo:
    name: str
    version: str


@dataclass
class ToolCatalogEntry:
    name: str
    description: str | None
    input_schema: dict
    usage_count: int = 0


@dataclass
class MCPToolCallResult:
    text_output: str
    content: list[dict]
    is_error: bool = False


def parse_server_info(payload: dict) -> ServerInfo:
    raw = payload.get("serverInfo")
    if not isinstance(raw, dict):
        return ServerInfo(name="unknown", version="unknown")
    return ServerInfo(
        name=str(raw.get("name") or "unknown"),
        version=str(raw.get("version") or "unknown"),
    )


def parse_tools_list_response(payload: dict) -> list[ToolCatalogEntry]:
    tools_raw = payload.get("tools", [])
    if not isinstance(tools_raw, list):
        return []
    tools: list[ToolCatalogEntry] = []
    for item in tools_raw:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name", "")).strip()
        if not name:
            continue
        schema = item.get("inputSchema")
        if not isinstance(schema, dict):
            schema = item.get("input_schema") if isinstance(item.get("input_schema"), dict) else {}
        description = item.get("description")
        tools.append(
            ToolCatalogEntry(
                name=name,
                description=description if isinstance(description, str) else None,
                input_schema=schema,
            )
        )
    return tools


def parse_tool_call_result(payload: dict) -> MCPToolCallResult:
    content = payload.get("content", [])
    if not isinstance(content, list):
        content = []
    parts: list[str] = []
    for part in content:
        if isinstance(part, dict) and part.get("type") == "text":
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
    if not parts:
        text_fallback = payload.get("text")
        if isinstance(text_fallback, str):
            parts.append(text_fallback)
        elif "structuredContent" in payload:
            parts.append(json.dumps(payload["structuredContent"], ensure_ascii=False))
    return MCPToolCallResult(
        text_output="\n".join(parts),
        content=[c for c in content if isinstance(c, dict)],
        is_error=bool(payload.get("isError")),
    )

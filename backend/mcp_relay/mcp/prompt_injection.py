"""Plain-text summary of a device's live MCP tools, injected into chat prompts."""

from __future__ import annotations

import json

from mcp_relay.mcp.protocol_models import ServerConfig, ToolCatalogEntry
from mcp_relay.utils.auto_approve import is_auto_approved

PROMPT_HEADER = "## MCP Tools Available"
PROMPT_INSTRUCTIONS = (
    "You can use the tools listed below. To call one, reply with only a JSON object of the form\n"
    '`{"mcp_tool_call": {"server": "<server>", "tool": "<tool>", "arguments": {...}}}`\n'
    "and wait for the tool result before answering."
)


def format_tool(server_name: str, tool: ToolCatalogEntry, config: ServerConfig | None) -> str:
    auto = is_auto_approved(config, capability="tools", name=tool.name)
    schema = json.dumps(tool.input_schema or {}, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return "\n".join(
        [
            f"### {tool.name} ({server_name})",
            tool.description or "No description provided.",
            f"**Auto-approved**: {'Yes' if auto else 'No'}",
            f"**Schema**: `{schema}`",
        ]
    )


def build_prompt_injection(
    servers: list[tuple[str, ServerConfig | None, list[ToolCatalogEntry]]],
) -> str:
    """Return the tool enumeration, or '' when no server offers any tool."""
    sections = [
        format_tool(server_name, tool, config)
        for server_name, config, tools in servers
        for tool in sorted(tools, key=lambda t: t.name)
    ]
    if not sections:
        return ""
    return f"{PROMPT_HEADER}\n\n{PROMPT_INSTRUCTIONS}\n\n" + "\n\n".join(sections) + "\n"

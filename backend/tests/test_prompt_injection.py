import asyncio

from mcp_relay.mcp.prompt_injection import PROMPT_HEADER, build_prompt_injection, format_tool
from mcp_relay.mcp.protocol_models import CapabilityConfig, ServerConfig, ToolCatalogEntry


def test_format_tool_lists_approval_and_schema() -> None:
    config = ServerConfig(url="http://x")
    config.capabilities["tools"] = CapabilityConfig(enabled=True, auto_approve=["search"])
    tool = ToolCatalogEntry(
        name="search",
        description="Search the web",
        input_schema={"type": "object", "properties": {"q": {"type": "string"}}},
    )

    text = format_tool("web", tool, config)

    assert text.splitlines() == [
        "### search (web)",
        "Search the web",
        "**Auto-approved**: Yes",
        '**Schema**: `{"properties":{"q":{"type":"string"}},"type":"object"}`',
    ]


def test_wildcard_auto_approve_and_missing_description() -> None:
    config = ServerConfig(url="http://x")
    config.capabilities["tools"] = CapabilityConfig(enabled=True, auto_approve=["*"])
    tool = ToolCatalogEntry(name="ls", description=None, input_schema={})

    text = format_tool("fs", tool, config)

    assert "No description provided." in text
    assert "**Auto-approved**: Yes" in text
    assert "**Schema**: `{}`" in text


def test_build_prompt_injection_is_empty_without_tools() -> None:
    assert build_prompt_injection([]) == ""
    assert build_prompt_injection([("web", ServerConfig(url="http://x"), [])]) == ""


def test_build_prompt_injection_groups_all_servers() -> None:
    tools_a = [
        ToolCatalogEntry(name="zeta", description="z", input_schema={}),
        ToolCatalogEntry(name="alpha", description="a", input_schema={}),
    ]
    tools_b = [ToolCatalogEntry(name="calc", description="c", input_schema={})]

    text = build_prompt_injection([("one", None, tools_a), ("two", None, tools_b)])

    assert text.startswith(PROMPT_HEADER + "\n")
    headings = [line for line in text.splitlines() if line.startswith("### ")]
    assert headings == ["### alpha (one)", "### zeta (one)", "### calc (two)"]
    assert text.count("**Auto-approved**: No") == 3


def test_manager_prompt_injection_covers_only_live_servers(make_manager, fake_servers, memory_store) -> None:
    fake_servers.add("http://mcp.test/alpha")
    fake_servers.add("http://mcp.test/beta", fail_connects=1)
    config = ServerConfig(url="http://mcp.test/alpha")
    config.capabilities["tools"] = CapabilityConfig(enabled=True, auto_approve=["echo_tool"])
    memory_store.save_config("dev-1", "alpha", config)
    memory_store.save_config("dev-1", "beta", ServerConfig(url="http://mcp.test/beta"))

    async def scenario():
        manager = make_manager()
        before = manager.generate_prompt_injection("dev-1")
        await manager.on_device_connected("dev-1")
        text = manager.generate_prompt_injection("dev-1")
        other = manager.generate_prompt_injection("dev-2")
        await manager.shutdown()
        return before, text, other

    before, text, other = asyncio.run(scenario())

    assert before == ""
    assert other == ""
    assert "### echo_tool (alpha)" in text
    assert "### add (alpha)" in text
    assert "(beta)" not in text
    echo_section = text.split("### echo_tool (alpha)")[1].split("###")[0]
    assert "**Auto-approved**: Yes" in echo_section

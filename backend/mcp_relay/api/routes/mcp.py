"""Per-device MCP server and tool API.

MCP errors (unknown server, not connected, tool failure) reach the client through
the ServiceError handler with their own status codes.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from mcp_relay.api.deps import get_manager
from mcp_relay.api.envelope import err, ok
from mcp_relay.schemas.mcp import (
    CallMCPToolRequest,
    CreateMCPServerRequest,
    MCPLogOut,
    MCPServerDetailOut,
    MCPServersResponse,
    MCPServerStatusOut,
    MCPToolCallOut,
    MCPToolOut,
    PromptInjectionOut,
    SaveMCPServerResponse,
    SetMCPServerEnabledRequest,
    UpdateMCPServerRequest,
)
from mcp_relay.services.mcp_service import MCPService

router = APIRouter(prefix="/api/devices/{device_id}/mcp", tags=["mcp"])


@router.get("/servers")
def list_mcp_servers(device_id: str, manager=Depends(get_manager)):
    """List configured servers merged with their live status."""
    data = MCPService(manager).list_servers(device_id)
    return ok(MCPServersResponse(servers=data).model_dump())


@router.post("/servers")
async def create_mcp_server(
    device_id: str, request: CreateMCPServerRequest, manager=Depends(get_manager)
):
    """Save a server config and connect it. Connect failures are reported in the body."""
    data = await MCPService(manager).create_server(device_id, request)
    return ok(SaveMCPServerResponse(**data).model_dump())


@router.get("/servers/{server_name}")
def get_mcp_server(device_id: str, server_name: str, manager=Depends(get_manager)):
    data = MCPService(manager).get_server(device_id, server_name)
    return ok(MCPServerDetailOut(**data).model_dump())


@router.put("/servers/{server_name}")
async def update_mcp_server(
    device_id: str,
    server_name: str,
    request: UpdateMCPServerRequest,
    manager=Depends(get_manager),
):
    """Update a server config and reconnect it."""
    try:
        data = await MCPService(manager).update_server(device_id, server_name, request)
    except ValueError as exc:
        return JSONResponse(status_code=400, content=err(str(exc), "ValueError").model_dump())
    return ok(SaveMCPServerResponse(**data).model_dump())


@router.delete("/servers/{server_name}")
async def delete_mcp_server(device_id: str, server_name: str, manager=Depends(get_manager)):
    await MCPService(manager).delete_server(device_id, server_name)
    return ok({"deleted": True})


@router.patch("/servers/{server_name}/enabled")
async def set_mcp_server_enabled(
    device_id: str,
    server_name: str,
    request: SetMCPServerEnabledRequest,
    manager=Depends(get_manager),
):
    """Enable (connect) or disable (tear down) a server."""
    data = await MCPService(manager).set_server_enabled(device_id, server_name, request.enabled)
    return ok(MCPServerStatusOut(**data).model_dump())


@router.get("/servers/{server_name}/tools")
def list_mcp_tools(device_id: str, server_name: str, manager=Depends(get_manager)):
    data = MCPService(manager).list_tools(device_id, server_name)
    return ok([MCPToolOut(**tool).model_dump() for tool in data])


@router.post("/servers/{server_name}/tools/{tool_name}/call")
async def call_mcp_tool(
    device_id: str,
    server_name: str,
    tool_name: str,
    request: CallMCPToolRequest,
    manager=Depends(get_manager),
):
    data = await MCPService(manager).call_tool(device_id, server_name, tool_name, request.arguments)
    return ok(MCPToolCallOut(**data).model_dump())


@router.get("/logs")
def list_mcp_logs(
    device_id: str,
    serverName: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    manager=Depends(get_manager),
):
    data = MCPService(manager).list_logs(device_id, server_name=serverName, limit=limit)
    return ok([MCPLogOut(**entry).model_dump() for entry in data])


@router.get("/prompt-injection")
def get_prompt_injection(device_id: str, manager=Depends(get_manager)):
    """Tool enumeration for the device's chat prompt; empty when nothing is connected."""
    data = MCPService(manager).prompt_injection(device_id)
    return ok(PromptInjectionOut(**data).model_dump())

"""Device session hooks called by the relay's device layer."""

from fastapi import APIRouter, Depends

from mcp_relay.api.deps import get_manager
from mcp_relay.api.envelope import ok
from mcp_relay.schemas.mcp import MCPServersResponse
from mcp_relay.services.mcp_service import MCPService

router = APIRouter(prefix="/api/devices", tags=["devices"])


@router.post("/{device_id}/session")
async def device_connected(device_id: str, manager=Depends(get_manager)):
    """Device came online: connect its enabled MCP servers."""
    data = await MCPService(manager).connect_device(device_id)
    return ok(MCPServersResponse(servers=data).model_dump())


@router.delete("/{device_id}/session")
async def device_disconnected(device_id: str, manager=Depends(get_manager)):
    """Device went away: tear down its connections and pending retries."""
    await MCPService(manager).disconnect_device(device_id)
    return ok({"disconnected": True})

from mcp_relay.core.container import get_container
from mcp_relay.mcp.connection_manager import MCPConnectionManager


def get_manager() -> MCPConnectionManager:
    container = get_container()
    if container is None:
        raise RuntimeError("AppContainer is not initialized")
    return container.mcp_connection_manager

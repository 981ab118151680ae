from mcp_relay.db.models.mcp_log import MCPLog
from mcp_relay.db.models.mcp_server import MCPServer

__all__ = ["MCPLog", "MCPServer"]

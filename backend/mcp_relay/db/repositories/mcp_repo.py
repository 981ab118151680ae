from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from mcp_relay.db.models.mcp_log import MCPLog
from mcp_relay.db.models.mcp_server import MCPServer


class MCPRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def commit(self) -> None:
        self.db.commit()

    def list_servers_for_device(self, device_id: str) -> list[MCPServer]:
        stmt = (
            select(MCPServer)
            .where(MCPServer.device_id == device_id)
            .order_by(MCPServer.server_name.asc())
        )
        return list(self.db.scalars(stmt).all())

    def get_server(self, device_id: str, server_name: str) -> MCPServer | None:
        stmt = select(MCPServer).where(
            MCPServer.device_id == device_id,
            MCPServer.server_name == server_name,
        )
        return self.db.scalars(stmt).first()

    def upsert_server(self, *, id: str, device_id: str, server_name: str, **fields) -> MCPServer:
        server = self.get_server(device_id, server_name)
        if server is None:
            server = MCPServer(id=id, device_id=device_id, server_name=server_name, **fields)
            self.db.add(server)
            return server
        fields.pop("created_at", None)
        for key, value in fields.items():
            setattr(server, key, value)
        return server

    def delete_server(self, device_id: str, server_name: str) -> bool:
        server = self.get_server(device_id, server_name)
        if server is None:
            return False
        self.db.delete(server)
        return True

    def set_server_enabled(self, server: MCPServer, enabled: bool, updated_at: str) -> None:
        server.enabled = 1 if enabled else 0
        server.updated_at = updated_at

    def add_log(self, log: MCPLog) -> None:
        self.db.add(log)

    def list_logs(
        self, device_id: str, *, server_name: str | None = None, limit: int = 100
    ) -> list[MCPLog]:
        stmt = select(MCPLog).where(MCPLog.device_id == device_id)
        if server_name is not None:
            stmt = stmt.where(MCPLog.server_name == server_name)
        stmt = stmt.order_by(MCPLog.id.desc()).limit(limit)
        return list(self.db.scalars(stmt).all())


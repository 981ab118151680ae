"""Persistence of per-device MCP server configs and lifecycle logs."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from mcp_relay.db.models.mcp_log import MCPLog
from mcp_relay.db.models.mcp_server import MCPServer
from mcp_relay.db.repositories.mcp_repo import MCPRepository
from mcp_relay.db.session import get_sessionmaker
from mcp_relay.mcp.protocol_models import ServerConfig
from mcp_relay.utils.encryption import decrypt_headers, encrypt_headers
from mcp_relay.utils.time import utc_now_iso

logger = logging.getLogger(__name__)


def _json_column(kind: type, raw: str | None) -> Any:
    """Decode a JSON text column, falling back to an empty value of `kind` on bad data."""
    if not raw:
        return kind()
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed JSON column value: %.80s", raw)
        return kind()
    return value if isinstance(value, kind) else kind()


class ServerConfigStore(Protocol):
    def get_config(self, device_id: str, server_name: str) -> ServerConfig | None: ...

    def save_config(self, device_id: str, server_name: str, config: ServerConfig) -> None: ...

    def list_configs(self, device_id: str) -> dict[str, ServerConfig]: ...

    def delete_config(self, device_id: str, server_name: str) -> bool: ...

    def set_enabled(self, device_id: str, server_name: str, enabled: bool) -> bool: ...

    def save_log(self, device_id: str, server_name: str | None, level: str, message: str) -> None: ...

    def list_logs(
        self, device_id: str, *, server_name: str | None = None, limit: int = 100
    ) -> list[dict]: ...


def server_row_to_config(row: MCPServer) -> ServerConfig:
    try:
        headers = decrypt_headers(row.headers_encrypted)
    except ValueError:
        logger.error(
            "Could not decrypt headers for MCP server %s (device %s); connecting without them",
            row.server_name, row.device_id,
        )
        headers = {}
    return ServerConfig(
        url=row.url,
        transport=row.transport,
        command=row.command,
        args=[str(a) for a in _json_column(list, row.args_json)],
        env={str(k): str(v) for k, v in _json_column(dict, row.env_json).items()},
        protocol_version=row.protocol_version,
        capabilities=ServerConfig.capabilities_from_dict(_json_column(dict, row.capabilities_json)),
        headers=headers,
        timeout_ms=row.timeout_ms,
        enabled=bool(row.enabled),
        description=row.description,
    )


def config_to_columns(config: ServerConfig) -> dict:
    return {
        "transport": config.transport,
        "url": config.url,
        "command": config.command,
        "args_json": json.dumps(list(config.args)),
        "env_json": json.dumps(dict(config.env), sort_keys=True),
        "protocol_version": config.protocol_version,
        "capabilities_json": json.dumps(config.capabilities_to_dict(), sort_keys=True),
        "headers_encrypted": encrypt_headers(config.headers),
        "timeout_ms": int(config.timeout_ms),
        "enabled": 1 if config.enabled else 0,
        "description": config.description,
    }


class SqlServerConfigStore:
    """ServerConfigStore backed by SQLAlchemy; each call runs in its own session."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory or get_sessionmaker()

    def get_config(self, device_id: str, server_name: str) -> ServerConfig | None:
        with self._session_factory() as db:
            row = MCPRepository(db).get_server(device_id, server_name)
            return server_row_to_config(row) if row is not None else None

    def save_config(self, device_id: str, server_name: str, config: ServerConfig) -> None:
        now = utc_now_iso()
        with self._session_factory() as db:
            repo = MCPRepository(db)
            repo.upsert_server(
                id=f"mcp-{uuid.uuid4().hex[:12]}",
                device_id=device_id,
                server_name=server_name,
                created_at=now,
                updated_at=now,
                **config_to_columns(config),
            )
            repo.commit()

    def list_configs(self, device_id: str) -> dict[str, ServerConfig]:
        with self._session_factory() as db:
            rows = MCPRepository(db).list_servers_for_device(device_id)
            return {row.server_name: server_row_to_config(row) for row in rows}

    def delete_config(self, device_id: str, server_name: str) -> bool:
        with self._session_factory() as db:
            repo = MCPRepository(db)
            deleted = repo.delete_server(device_id, server_name)
            repo.commit()
            return deleted

    def set_enabled(self, device_id: str, server_name: str, enabled: bool) -> bool:
        with self._session_factory() as db:
            repo = MCPRepository(db)
            row = repo.get_server(device_id, server_name)
            if row is None:
                return False
            repo.set_server_enabled(row, enabled, utc_now_iso())
            repo.commit()
            return True

    def save_log(self, device_id: str, server_name: str | None, level: str, message: str) -> None:
        """Append a lifecycle log entry. Storage failures are logged, never raised."""
        try:
            with self._session_factory() as db:
                repo = MCPRepository(db)
                repo.add_log(
                    MCPLog(
                        device_id=device_id,
                        server_name=server_name,
                        level=level,
                        message=message,
                        created_at=utc_now_iso(),
                    )
                )
                repo.commit()
        except SQLAlchemyError:
            logger.warning("Failed to persist MCP log for device %s", device_id, exc_info=True)

    def list_logs(
        self, device_id: str, *, server_name: str | None = None, limit: int = 100
    ) -> list[dict]:
        with self._session_factory() as db:
            rows = MCPRepository(db).list_logs(device_id, server_name=server_name, limit=limit)
            return [
                {
                    "id": row.id,
                    "deviceId": row.device_id,
                    "serverName": row.server_name,
                    "level": row.level,
                    "message": row.message,
                    "createdAt": row.created_at,
                }
                for row in rows
            ]

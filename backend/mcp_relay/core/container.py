from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mcp_relay.config.settings import AppSettings
    from mcp_relay.mcp.config_store import ServerConfigStore
    from mcp_relay.mcp.connection_manager import MCPConnectionManager


@dataclass
class AppContainer:
    """Process-wide handles shared by the routes: the config store and the live connection manager."""

    config_store: ServerConfigStore
    mcp_connection_manager: MCPConnectionManager

    @classmethod
    def build(cls, settings: AppSettings | None = None) -> AppContainer:
        from mcp_relay.mcp.config_store import SqlServerConfigStore
        from mcp_relay.mcp.connection_manager import MCPConnectionManager

        store = SqlServerConfigStore()
        return cls(config_store=store, mcp_connection_manager=MCPConnectionManager(store, settings=settings))


_container: AppContainer | None = None


def set_container(container: AppContainer | None) -> None:
    global _container
    _container = container


def get_container() -> AppContainer | None:
    return _container

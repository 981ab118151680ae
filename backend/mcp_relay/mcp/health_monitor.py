"""Periodic liveness probing of every live MCP connection."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from mcp_relay.config.defaults import HEALTH_CHECK_INTERVAL_SECONDS, LIVENESS_TIMEOUT_SECONDS

if TYPE_CHECKING:
    from mcp_relay.mcp.connection import ToolServerConnection
    from mcp_relay.mcp.connection_manager import MCPConnectionManager

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Owns only the tick loop; all connection state lives in the manager."""

    def __init__(
        self,
        manager: MCPConnectionManager,
        *,
        interval_seconds: float = HEALTH_CHECK_INTERVAL_SECONDS,
        probe_timeout_seconds: float = LIVENESS_TIMEOUT_SECONDS,
    ) -> None:
        self._manager = manager
        self.interval_seconds = interval_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("MCP health monitor started (interval=%.1fs)", self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("MCP health monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.check_all()
            except Exception:
                logger.exception("MCP health check tick failed")

    async def check_all(self) -> dict[tuple[str, str], bool]:
        """Probe every live connection concurrently; returns liveness per key."""
        connections = self._manager.live_connections()
        if not connections:
            return {}
        results = await asyncio.gather(*(self._check(conn) for conn in connections))
        return {conn.key: alive for conn, alive in zip(connections, results)}

    async def _check(self, connection: ToolServerConnection) -> bool:
        try:
            alive = await asyncio.wait_for(connection.is_alive(), timeout=self.probe_timeout_seconds)
        except (asyncio.TimeoutError, TimeoutError):
            alive = False
        if alive:
            connection.touch()
            return True
        logger.warning(
            "MCP health check failed: device=%s server=%s",
            connection.device_id, connection.server_name,
        )
        await self._manager.handle_server_disconnection(
            connection.device_id, connection.server_name, connection=connection
        )
        return False

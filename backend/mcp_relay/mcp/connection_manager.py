"""Owns every device's MCP connections and drives their lifecycle.

The manager is the only writer of connection state. Mutations for one
(device_id, server_name) key run under that key's lock; concurrent
``initialize_server`` calls for the same key share one in-flight task.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Callable

from mcp_relay.config.settings import AppSettings, get_settings
from mcp_relay.mcp.config_store import ServerConfigStore
from mcp_relay.mcp.connection import ToolServerConnection
from mcp_relay.mcp.errors import (
    ConfigNotFoundError,
    HandshakeError,
    MCPError,
    NotConnectedError,
    ShutdownTimeoutError,
)
from mcp_relay.mcp.health_monitor import HealthMonitor
from mcp_relay.mcp.prompt_injection import build_prompt_injection
from mcp_relay.mcp.protocol_models import ConnectionState, ServerConfig, ToolCatalogEntry
from mcp_relay.mcp.reconnection import ReconnectionScheduler, ServerKey
from mcp_relay.mcp.scheduler import Scheduler
from mcp_relay.mcp.transports import build_transport
from mcp_relay.mcp.transports.base import MCPTransport
from mcp_relay.utils.auto_approve import is_auto_approved
from mcp_relay.utils.time import epoch_to_iso

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class MCPConnectionManager:
    def __init__(
        self,
        store: ServerConfigStore,
        *,
        transport_factory: Callable[[ServerConfig], MCPTransport] | None = None,
        scheduler: Scheduler | None = None,
        settings: AppSettings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._transport_factory = transport_factory or build_transport
        self._connections: dict[ServerKey, ToolServerConnection] = {}
        self._states: dict[ServerKey, ConnectionState] = {}
        self._configs: dict[ServerKey, ServerConfig] = {}
        self._last_errors: dict[ServerKey, str] = {}
        self._pending: dict[ServerKey, asyncio.Task] = {}
        self._locks: dict[ServerKey, asyncio.Lock] = {}
        self._closed = False
        self.reconnector = ReconnectionScheduler(
            self._retry_connection,
            scheduler=scheduler,
            base_delay_ms=self._settings.mcp_reconnect_base_delay_ms,
            max_delay_ms=self._settings.mcp_reconnect_max_delay_ms,
        )
        self.health_monitor = HealthMonitor(
            self,
            interval_seconds=self._settings.mcp_health_check_interval_seconds,
            probe_timeout_seconds=self._settings.mcp_liveness_timeout_seconds,
        )

    @property
    def store(self) -> ServerConfigStore:
        return self._store

    def start(self) -> None:
        self._closed = False
        self.health_monitor.start()

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    async def initialize_server(
        self, device_id: str, server_name: str, config: ServerConfig | None = None
    ) -> dict:
        """Connect one configured server and return its status.

        A supplied ``config`` is persisted before connecting. Connection errors are
        raised to the caller after a retry has been scheduled for enabled servers.
        """
        key = (device_id, server_name)
        if config is not None:
            self._store.save_config(device_id, server_name, config)
        task = self._pending.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._initialize(device_id, server_name))
            self._pending[key] = task
            task.add_done_callback(functools.partial(self._forget_pending, key))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and current is not None and not current.cancelling():
                raise HandshakeError(f"{server_name}: connection attempt was cancelled") from None
            raise

    def _forget_pending(self, key: ServerKey, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # Retrieved here so a failed attempt nobody awaited is not reported as unhandled.
            task.exception()

    async def _initialize(self, device_id: str, server_name: str) -> dict:
        key = (device_id, server_name)
        async with self._lock(key):
            if self._closed:
                raise HandshakeError(f"{server_name}: connection manager is shut down")
            existing = self._connections.get(key)
            if existing is not None and not existing.closed:
                self.reconnector.clear(device_id, server_name)
                return self._status(key)

            config = self._store.get_config(device_id, server_name)
            if config is None:
                raise ConfigNotFoundError(device_id, server_name)
            self._configs[key] = config
            if not config.enabled:
                self.reconnector.clear(device_id, server_name)
                self._states.pop(key, None)
                return self._status(key)

            retrying = self.reconnector.get(device_id, server_name) is not None
            self._states[key] = ConnectionState.RECONNECTING if retrying else ConnectionState.CONNECTING
            connection = ToolServerConnection(
                device_id,
                server_name,
                self._transport_factory,
                client_info={
                    "name": self._settings.mcp_client_name,
                    "version": self._settings.mcp_client_version,
                },
                probe_timeout=self._settings.mcp_liveness_timeout_seconds,
            )
            try:
                await connection.connect(config)
                await connection.list_tools()
                if self._closed:
                    raise HandshakeError(f"{server_name}: connection manager is shut down")
            except MCPError as exc:
                await connection.close()
                self._states[key] = ConnectionState.FAILED
                self._last_errors[key] = str(exc)
                self._log_event(device_id, server_name, "error", f"Connection failed: {exc}")
                if config.enabled and not self._closed:
                    self.reconnector.schedule_retry(device_id, server_name)
                raise
            except BaseException:
                await connection.close()
                self._states[key] = ConnectionState.DISCONNECTED
                raise

            self._connections[key] = connection
            self._states[key] = ConnectionState.CONNECTED
            self._last_errors.pop(key, None)
            self.reconnector.clear(device_id, server_name)
            self._log_event(
                device_id,
                server_name,
                "info",
                f"Connected ({config.mode}); {len(connection.tools)} tool(s) available",
            )
            return self._status(key)

    async def _retry_connection(self, device_id: str, server_name: str) -> None:
        try:
            await self.initialize_server(device_id, server_name)
        except ConfigNotFoundError:
            self.reconnector.clear(device_id, server_name)
            logger.info(
                "Dropping MCP reconnection for removed server: device=%s server=%s",
                device_id, server_name,
            )
        except MCPError as exc:
            # The failed attempt already rescheduled itself.
            logger.info(
                "MCP reconnection failed: device=%s server=%s: %s", device_id, server_name, exc
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def live_connections(self) -> list[ToolServerConnection]:
        return [
            conn
            for key, conn in self._connections.items()
            if self._states.get(key) is ConnectionState.CONNECTED
        ]

    def get_server_status(self, device_id: str, server_name: str) -> dict:
        key = (device_id, server_name)
        config = self._store.get_config(device_id, server_name)
        if config is None and key not in self._states and key not in self._connections:
            raise ConfigNotFoundError(device_id, server_name)
        return self._status(key, config)

    def get_device_servers(self, device_id: str) -> list[dict]:
        configs = self._store.list_configs(device_id)
        names = set(configs)
        names.update(name for dev, name in self._states if dev == device_id)
        return [self._status((device_id, name), configs.get(name)) for name in sorted(names)]

    def get_server_tools(self, device_id: str, server_name: str) -> list[dict]:
        key = (device_id, server_name)
        connection = self._connections.get(key)
        state = self._states.get(key, ConnectionState.DISCONNECTED)
        if connection is None or state is not ConnectionState.CONNECTED:
            if key not in self._states and self._store.get_config(device_id, server_name) is None:
                raise ConfigNotFoundError(device_id, server_name)
            raise NotConnectedError(device_id, server_name, state.value)
        config = self._configs.get(key)
        return [
            _tool_to_dict(tool, config)
            for tool in sorted(connection.tools.values(), key=lambda t: t.name)
        ]

    def generate_prompt_injection(self, device_id: str) -> str:
        servers = [
            (key[1], self._configs.get(key), list(conn.tools.values()))
            for key, conn in sorted(self._connections.items())
            if key[0] == device_id and self._states.get(key) is ConnectionState.CONNECTED
        ]
        return build_prompt_injection(servers)

    def _status(self, key: ServerKey, config: ServerConfig | None = None) -> dict:
        device_id, server_name = key
        config = config or self._configs.get(key)
        connection = self._connections.get(key)
        state = self._states.get(key, ConnectionState.DISCONNECTED)
        entry = self.reconnector.get(device_id, server_name)
        retry = None
        if entry is not None:
            retry = {
                "attemptCount": entry.attempt_count,
                "nextRetryAt": epoch_to_iso(entry.next_retry_at) if entry.next_retry_at else None,
                "lastDelayMs": entry.last_delay_ms,
            }
        server_info = None
        if connection is not None and connection.server_info is not None:
            server_info = {
                "name": connection.server_info.name,
                "version": connection.server_info.version,
            }
        return {
            "deviceId": device_id,
            "serverName": server_name,
            "state": state.value,
            "connected": state is ConnectionState.CONNECTED and connection is not None,
            "enabled": bool(config and config.enabled),
            "mode": config.mode if config else None,
            "transport": config.transport if config else None,
            "url": config.url if config else None,
            "command": config.command if config else None,
            "description": config.description if config else None,
            "toolCount": len(connection.tools) if connection is not None else 0,
            "protocolVersion": connection.protocol_version if connection is not None else None,
            "serverInfo": server_info,
            "lastContactAt": connection.last_contact_at if connection is not None else None,
            "lastError": self._last_errors.get(key),
            "retry": retry,
        }

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def handle_tool_call(
        self, device_id: str, server_name: str, tool_name: str, args: dict | None = None
    ) -> dict:
        """Invoke a tool on a connected server. Never retried."""
        key = (device_id, server_name)
        connection = self._connections.get(key)
        state = self._states.get(key, ConnectionState.DISCONNECTED)
        if connection is None or state is not ConnectionState.CONNECTED:
            raise NotConnectedError(device_id, server_name, state.value)
        try:
            result = await connection.call_tool(tool_name, args or {})
        except MCPError as exc:
            self._log_event(device_id, server_name, "error", f"Tool call failed: {exc}")
            raise
        tool = connection.tools.get(tool_name)
        if tool is not None:
            tool.usage_count += 1
        logger.info("MCP tool call ok: device=%s server=%s tool=%s", device_id, server_name, tool_name)
        return {
            "serverName": server_name,
            "toolName": tool_name,
            "output": result.text_output,
            "content": result.content,
            "usageCount": tool.usage_count if tool is not None else None,
        }

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def toggle_server(self, device_id: str, server_name: str, enabled: bool) -> dict:
        """Enable (and connect) or disable (and tear down) a server.

        Connect failures while enabling are reported in the returned status; a retry is
        already scheduled for them.
        """
        if not self._store.set_enabled(device_id, server_name, enabled):
            raise ConfigNotFoundError(device_id, server_name)
        key = (device_id, server_name)
        cached = self._configs.get(key)
        if cached is not None:
            cached.enabled = enabled
        if enabled:
            self._log_event(device_id, server_name, "info", "Server enabled")
            try:
                return await self.initialize_server(device_id, server_name)
            except ConfigNotFoundError:
                raise
            except MCPError:
                return self.get_server_status(device_id, server_name)
        await self.stop_server_process(device_id, server_name)
        self._log_event(device_id, server_name, "info", "Server disabled")
        return self.get_server_status(device_id, server_name)

    async def stop_server_process(self, device_id: str, server_name: str) -> bool:
        """Tear one key down completely. Returns whether a live connection was closed."""
        key = (device_id, server_name)
        tasks = self._cancel_key_tasks(key)
        await _drain(tasks)
        async with self._lock(key):
            # A retry may have been armed while the cancelled tasks unwound.
            await _drain(self._cancel_key_tasks(key))
            connection = self._connections.pop(key, None)
            if connection is not None:
                await connection.close()
            self._states.pop(key, None)
            self._configs.pop(key, None)
            self._last_errors.pop(key, None)
        if connection is not None:
            self._log_event(device_id, server_name, "info", "Server stopped")
        return connection is not None

    async def handle_server_disconnection(
        self,
        device_id: str,
        server_name: str,
        *,
        connection: ToolServerConnection | None = None,
    ) -> None:
        """Retire a dead connection and hand the key to the reconnection scheduler.

        When ``connection`` is given, only that instance is retired, so a probe that
        raced a newer connection is ignored.
        """
        key = (device_id, server_name)
        async with self._lock(key):
            current = self._connections.get(key)
            if current is None or (connection is not None and current is not connection):
                return
            del self._connections[key]
            self._states[key] = ConnectionState.RECONNECTING
            await current.close()
            config = self._configs.get(key)
            if self._closed or (config is not None and not config.enabled):
                self._states.pop(key, None)
                return
            self._log_event(device_id, server_name, "warning", "Connection lost; reconnecting")
            self.reconnector.schedule_retry(device_id, server_name)

    async def shutdown_device_servers(self, device_id: str) -> None:
        keys = {k for k in self._connections if k[0] == device_id}
        keys.update(k for k in self._states if k[0] == device_id)
        keys.update(k for k in self._pending if k[0] == device_id)
        keys.update(k for k in self.reconnector.keys() if k[0] == device_id)
        await _drain(self.reconnector.cancel_device(device_id))
        if keys:
            await asyncio.gather(*(self.stop_server_process(*key) for key in sorted(keys)))
        # Anything armed while the keys were torn down.
        await _drain(self.reconnector.cancel_device(device_id))
        for key in [k for k, lock in self._locks.items() if k[0] == device_id and not lock.locked()]:
            del self._locks[key]
        logger.info("Shut down %d MCP server(s) for device %s", len(keys), device_id)

    async def shutdown(self) -> None:
        """Stop monitoring and close everything within the configured bound."""
        self._closed = True
        await self.health_monitor.stop()
        tasks = self.reconnector.cancel_all()
        for task in list(self._pending.values()):
            if not task.done():
                task.cancel()
                tasks.append(task)
        connections = list(self._connections.items())
        self._connections.clear()
        self._states.clear()
        close_tasks = {
            asyncio.get_running_loop().create_task(conn.close()): key for key, conn in connections
        }
        pending_work = [*tasks, *close_tasks]
        if not pending_work:
            return
        done, not_done = await asyncio.wait(
            pending_work, timeout=self._settings.mcp_shutdown_timeout_seconds
        )
        for task in not_done:
            task.cancel()
            key = close_tasks.get(task)
            if key is not None:
                logger.error(
                    "%s",
                    ShutdownTimeoutError(f"MCP server {key[1]} (device {key[0]}) did not close in time"),
                )
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning("Error during MCP shutdown", exc_info=exc)
        logger.info("MCP connection manager shut down (%d connection(s))", len(connections))

    # ------------------------------------------------------------------
    # Device session hooks
    # ------------------------------------------------------------------

    async def on_device_connected(self, device_id: str) -> list[dict]:
        """Connect every enabled server of the device; failures stay scheduled for retry."""
        configs = self._store.list_configs(device_id)
        names = [name for name, config in sorted(configs.items()) if config.enabled]
        results = await asyncio.gather(
            *(self.initialize_server(device_id, name) for name in names), return_exceptions=True
        )
        for name, result in zip(names, results):
            if isinstance(result, MCPError):
                logger.warning("Auto-connect failed: device=%s server=%s: %s", device_id, name, result)
            elif isinstance(result, BaseException):
                logger.error(
                    "Auto-connect crashed: device=%s server=%s", device_id, name, exc_info=result
                )
        return self.get_device_servers(device_id)

    async def on_device_disconnected(self, device_id: str) -> None:
        await self.shutdown_device_servers(device_id)

    # ------------------------------------------------------------------

    def _lock(self, key: ServerKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _cancel_key_tasks(self, key: ServerKey) -> list[asyncio.Task]:
        tasks = []
        retry = self.reconnector.cancel(*key)
        if retry is not None:
            tasks.append(retry)
        pending = self._pending.get(key)
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            pending.cancel()
            tasks.append(pending)
        return tasks

    def _log_event(self, device_id: str, server_name: str, level: str, message: str) -> None:
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "MCP %s/%s: %s", device_id, server_name, message)
        self._store.save_log(device_id, server_name, level, message)


async def _drain(tasks: list[asyncio.Task]) -> None:
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


def _tool_to_dict(tool: ToolCatalogEntry, config: ServerConfig | None) -> dict:
    return {
        "name": tool.name,
        "description": tool.description,
        "inputSchema": tool.input_schema,
        "usageCount": tool.usage_count,
        "autoApproved": is_auto_approved(config, capability="tools", name=tool.name),
    }

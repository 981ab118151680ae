"""MCP stdio transport: spawn a local server and speak JSON-RPC over stdin/stdout."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

from mcp_relay.mcp.protocol_models import ServerConfig
from mcp_relay.mcp.transports.base import TransportError, raise_for_jsonrpc_error

logger = logging.getLogger(__name__)

# Tool catalogs with long schemas easily exceed asyncio.StreamReader's 64 KiB default.
STDOUT_LINE_LIMIT = 16 * 1024 * 1024


class StdioTransport:
    """Connects to a local MCP server via subprocess stdio using newline-delimited JSON-RPC 2.0."""

    def __init__(self, config: ServerConfig, *, line_limit: int = STDOUT_LINE_LIMIT) -> None:
        self._line_limit = line_limit
        self._argv: list[str] = [config.command or "npx", *[str(a) for a in config.args]]
        if config.env:
            self._env: dict[str, str] | None = dict(os.environ)
            for k, v in config.env.items():
                if k and v is not None:
                    self._env[str(k)] = str(v)
        else:
            self._env = None
        self._process: asyncio.subprocess.Process | None = None
        self._request_id = 0
        self._io_lock = asyncio.Lock()

    async def open(self) -> None:
        if self._process is not None and self._process.returncode is None:
            return
        kwargs: dict[str, Any] = {
            "stdin": asyncio.subprocess.PIPE,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.DEVNULL,
            "limit": self._line_limit,
        }
        if self._env is not None:
            kwargs["env"] = self._env
        try:
            self._process = await asyncio.create_subprocess_exec(*self._argv, **kwargs)
        except OSError as e:
            raise TransportError(f"Failed to start {self._argv[0]}: {e}") from e
        if self._process.stdin is None or self._process.stdout is None:
            await self.close()
            raise TransportError("Subprocess stdin/stdout not available")

    async def request(self, method: str, params: dict | None = None, *, timeout: float) -> dict:
        """Send JSON-RPC request and return the result payload."""
        req_id = self._next_id()
        msg = {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}}
        async with self._io_lock:
            await self._write(msg)
            resp = await asyncio.wait_for(self._read_response(req_id), timeout=timeout)
        raise_for_jsonrpc_error(resp)
        result = resp.get("result")
        return result if isinstance(result, dict) else {}

    async def notify(self, method: str, params: dict | None = None) -> None:
        msg: dict = {"jsonrpc": "2.0", "method": method}
        if params:
            msg["params"] = params
        async with self._io_lock:
            await self._write(msg)

    async def close(self) -> None:
        """Terminate the subprocess."""
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            logger.info("MCP stdio server did not exit on SIGTERM, killing: %s", self._argv[0])
            try:
                process.kill()
            except ProcessLookupError:
                pass
        except ProcessLookupError:
            pass

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _write(self, msg: dict) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise TransportError("MCP stdio server is not running")
        try:
            process.stdin.write((json.dumps(msg) + "\n").encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"MCP stdio server pipe closed: {e}") from e

    async def _read_response(self, req_id: int) -> dict:
        process = self._process
        if process is None or process.stdout is None:
            raise TransportError("MCP stdio server is not running")
        while True:
            try:
                out_line = await process.stdout.readline()
            except ValueError as e:
                raise TransportError(f"MCP stdio server sent an oversized line: {e}") from e
            if not out_line:
                raise TransportError("MCP stdio server closed stdout")
            try:
                resp = json.loads(out_line.decode(errors="replace").strip())
            except json.JSONDecodeError:
                # Servers sometimes print banners to stdout.
                continue
            if isinstance(resp, dict) and resp.get("id") == req_id:
                return resp

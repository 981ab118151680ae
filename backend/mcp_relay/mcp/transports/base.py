"""JSON-RPC transport protocol shared by the MCP connection layer."""

from __future__ import annotations

from typing import Protocol


class TransportError(Exception):
    """The channel failed: connection refused, HTTP error, broken pipe, unreadable body."""


class JSONRPCError(Exception):
    """The remote side answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None, data: object = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


def raise_for_jsonrpc_error(resp: dict) -> None:
    if "error" not in resp:
        return
    error = resp["error"]
    if isinstance(error, dict):
        raise JSONRPCError(
            str(error.get("message", error)),
            code=error.get("code") if isinstance(error.get("code"), int) else None,
            data=error.get("data"),
        )
    raise JSONRPCError(str(error))


class MCPTransport(Protocol):
    """Protocol for MCP transport implementations.

    ``request`` returns the ``result`` member of the JSON-RPC response, raises
    ``JSONRPCError`` for an ``error`` member and ``TransportError`` when the channel
    itself fails. ``close`` must be safe to call repeatedly.
    """

    async def open(self) -> None: ...

    async def request(self, method: str, params: dict | None = None, *, timeout: float) -> dict: ...

    async def notify(self, method: str, params: dict | None = None) -> None: ...

    async def close(self) -> None: ...

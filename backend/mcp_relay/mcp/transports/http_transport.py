"""MCP HTTP transport: POST JSON-RPC to a URL, receive a JSON or SSE-framed response."""

from __future__ import annotations

import json
import logging

import httpx

from mcp_relay.mcp.protocol_models import ServerConfig
from mcp_relay.mcp.transports.base import TransportError, raise_for_jsonrpc_error

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class HttpTransport:
    """Connects to a remote MCP server via HTTP POST (streamable HTTP, request/response)."""

    def __init__(self, config: ServerConfig) -> None:
        self._url = (config.url or "").rstrip("/")
        self._headers = dict(config.headers)
        self._default_timeout = config.timeout_seconds
        self._client: httpx.AsyncClient | None = None
        self._session_id: str | None = None
        self._request_id = 0

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def open(self) -> None:
        if not self._url:
            raise TransportError("No URL configured for HTTP transport")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._default_timeout)

    async def request(self, method: str, params: dict | None = None, *, timeout: float) -> dict:
        """Send JSON-RPC request and return the result payload."""
        msg = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params or {}}
        resp = await self._post(msg, timeout=timeout)
        if resp is None:
            raise TransportError(f"No response to {method} from {self._url}")
        raise_for_jsonrpc_error(resp)
        result = resp.get("result")
        return result if isinstance(result, dict) else {}

    async def notify(self, method: str, params: dict | None = None) -> None:
        msg: dict = {"jsonrpc": "2.0", "method": method}
        if params:
            msg["params"] = params
        await self._post(msg, timeout=self._default_timeout, allow_empty_response=True)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        if self._session_id:
            # Streamable HTTP servers release session state on DELETE; best effort.
            try:
                await client.delete(self._url, headers=self._build_headers(), timeout=2.0)
            except httpx.HTTPError:
                logger.debug("MCP HTTP session DELETE failed: url=%s", self._url)
        self._session_id = None
        await client.aclose()

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _build_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self._headers,
        }
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def _post(
        self, payload: dict, *, timeout: float, allow_empty_response: bool = False
    ) -> dict | None:
        if self._client is None:
            raise TransportError("HTTP transport is not open")
        try:
            response = await self._client.post(
                self._url, json=payload, headers=self._build_headers(), timeout=timeout
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            body = (e.response.text or "")[:300]
            raise TransportError(f"HTTP {e.response.status_code} from {self._url}: {body}") from e
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Timed out after {timeout:.1f}s waiting for {self._url}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP request to {self._url} failed: {e}") from e

        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id

        body = response.text or ""
        if not body.strip():
            if allow_empty_response:
                return None
            logger.warning("MCP HTTP empty response: url=%s status=%s", self._url, response.status_code)
            raise TransportError(f"Empty response from {self._url} (status {response.status_code})")
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as e:
            sse_payload = self._extract_json_from_sse(body)
            if sse_payload is not None:
                return sse_payload
            preview = body[:500].replace("\n", " ")
            if len(body) > 500:
                preview += "..."
            logger.warning(
                "MCP HTTP invalid JSON: url=%s status=%s body_len=%d preview=%s",
                self._url, response.status_code, len(body), preview[:100],
            )
            raise TransportError(
                f"Invalid JSON from server (status {response.status_code}). Body: {preview}"
            ) from e
        if not isinstance(parsed, dict):
            raise TransportError(f"Unexpected JSON-RPC payload from {self._url}: {type(parsed).__name__}")
        return parsed

    @staticmethod
    def _extract_json_from_sse(body: str) -> dict | None:
        # event: message
        # data: {"jsonrpc":"2.0", ...}
        normalized = body.replace("\r\n", "\n").replace("\r", "\n")
        for block in normalized.split("\n\n"):
            if not block.strip():
                continue
            data_lines = [line[5:].lstrip() for line in block.split("\n") if line.startswith("data:")]
            if not data_lines:
                continue
            payload = "\n".join(data_lines).strip()
            if not payload or payload == "[DONE]":
                continue
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError:
                continue
            # Skip server-initiated notifications interleaved before the response.
            if isinstance(parsed, dict) and ("result" in parsed or "error" in parsed):
                return parsed
        return None

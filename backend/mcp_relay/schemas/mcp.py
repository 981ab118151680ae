"""MCP server and tool schemas for API."""

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

TransportName = Literal["http", "streamable-http", "stdio"]


class CapabilityIn(BaseModel):
    enabled: bool = True
    autoApprove: list[str] = []


class CreateMCPServerRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    url: str | None = Field(None, min_length=1)
    transport: TransportName | None = None
    command: str | None = Field(None, min_length=1)
    args: list[str] = []
    env: dict[str, str] = {}
    protocolVersion: str | None = Field(None, min_length=1, max_length=50)
    capabilities: dict[str, CapabilityIn] = {}
    headers: dict[str, str] = {}
    timeoutMs: int | None = Field(None, ge=100, le=600_000)
    enabled: bool = True
    description: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def _check_endpoint(self) -> "CreateMCPServerRequest":
        if not self.url and not self.command:
            raise ValueError("either url (remote) or command (local) is required")
        if self.transport == "stdio" and not self.command:
            raise ValueError("stdio transport requires command")
        if self.transport in ("http", "streamable-http") and not self.url:
            raise ValueError("http transport requires url")
        return self


class UpdateMCPServerRequest(BaseModel):
    url: str | None = Field(None, min_length=1)
    transport: TransportName | None = None
    command: str | None = Field(None, min_length=1)
    args: list[str] | None = None
    env: dict[str, str] | None = None
    protocolVersion: str | None = Field(None, min_length=1, max_length=50)
    capabilities: dict[str, CapabilityIn] | None = None
    headers: dict[str, str] | None = None
    timeoutMs: int | None = Field(None, ge=100, le=600_000)
    enabled: bool | None = None
    description: str | None = Field(None, max_length=2000)


class SetMCPServerEnabledRequest(BaseModel):
    enabled: bool


class CallMCPToolRequest(BaseModel):
    arguments: dict[str, Any] = {}


class MCPToolOut(BaseModel):
    name: str
    description: str | None
    inputSchema: dict[str, Any]
    usageCount: int
    autoApproved: bool


class MCPRetryOut(BaseModel):
    attemptCount: int
    nextRetryAt: str | None
    lastDelayMs: int | None


class MCPServerStatusOut(BaseModel):
    deviceId: str
    serverName: str
    state: str
    connected: bool
    enabled: bool
    mode: str | None
    transport: str | None
    url: str | None
    command: str | None
    description: str | None
    toolCount: int
    protocolVersion: str | None
    serverInfo: dict[str, str] | None
    lastContactAt: str | None
    lastError: str | None
    retry: MCPRetryOut | None


class MCPServersResponse(BaseModel):
    servers: list[MCPServerStatusOut]


class MCPServerDetailOut(MCPServerStatusOut):
    headers: dict[str, str] = {}
    args: list[str] = []
    capabilities: dict[str, CapabilityIn] = {}
    timeoutMs: int | None = None


class SaveMCPServerResponse(BaseModel):
    server: MCPServerStatusOut
    connectError: str | None = None


class MCPToolCallOut(BaseModel):
    serverName: str
    toolName: str
    output: str
    content: list[dict[str, Any]]
    usageCount: int | None


class MCPLogOut(BaseModel):
    id: int
    deviceId: str
    serverName: str | None
    level: str
    message: str
    createdAt: str


class PromptInjectionOut(BaseModel):
    deviceId: str
    prompt: str

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel

from mcp_relay.utils.time import utc_now_iso

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Every route answers with this shape; errorType carries the exception class name on failure."""

    ok: bool
    data: T | None
    error: str | None = None
    errorType: str | None = None
    timestamp: str


def ok(data: T) -> ApiResponse[T]:
    return ApiResponse(ok=True, data=data, timestamp=utc_now_iso())


def err(message: str, error_type: str | None = None) -> ApiResponse[None]:
    return ApiResponse(ok=False, data=None, error=message, errorType=error_type, timestamp=utc_now_iso())

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from mcp_relay.api.envelope import err

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base for errors the API reports to clients as-is. Subclasses pick their HTTP status."""

    status_code = 400


def _describe_validation_error(exc: RequestValidationError) -> str:
    parts = []
    for entry in exc.errors():
        where = ".".join(str(x) for x in entry.get("loc", ()) if x != "body")
        # model_validator failures arrive as "Value error, <message>"
        msg = str(entry.get("msg", "Validation error")).removeprefix("Value error, ")
        parts.append(f"{where}: {msg}" if where else msg)
    return "; ".join(parts) or "Request validation failed"


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = _describe_validation_error(exc)
    logger.info("Rejected %s %s: %s", request.method, request.url.path, message)
    return JSONResponse(status_code=422, content=err(message, "ValidationError").model_dump())


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    status_code = getattr(exc, "status_code", 400)
    # Upstream MCP failures are worth a warning; client mistakes are not.
    level = logging.WARNING if status_code >= 500 else logging.DEBUG
    logger.log(level, "%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=err(str(exc), type(exc).__name__).model_dump())


async def catch_all_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error in %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=err(f"Internal error: {type(exc).__name__}: {exc}", "InternalError").model_dump(),
    )

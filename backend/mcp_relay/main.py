import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from mcp_relay.api.routes.devices import router as devices_router
from mcp_relay.api.routes.mcp import router as mcp_router
from mcp_relay.config.settings import get_settings
from mcp_relay.core.container import AppContainer, get_container, set_container
from mcp_relay.db.session import init_schema
from mcp_relay.middleware.error_handler import (
    ServiceError,
    catch_all_handler,
    service_error_handler,
    validation_error_handler,
)

logger = logging.getLogger(__name__)


def _configure_app_logging(level_name: str) -> None:
    """Send mcp_relay.* records to the uvicorn sink at the configured level."""
    app_logger = logging.getLogger("mcp_relay")
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO

    uvicorn_error_logger = logging.getLogger("uvicorn.error")
    if uvicorn_error_logger.handlers:
        app_logger.handlers = list(uvicorn_error_logger.handlers)
    elif not app_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s:     %(name)s - %(message)s"))
        app_logger.addHandler(handler)
    app_logger.setLevel(level)
    app_logger.propagate = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    _configure_app_logging(get_settings().log_level)
    init_schema()

    # Tests may install their own container (fake transports, fake clock) before startup.
    container = get_container() or AppContainer.build()
    app.state.container = container
    set_container(container)
    container.mcp_connection_manager.start()
    logger.info("MCP relay ready (env=%s)", get_settings().app_env)

    yield

    logger.info("Shutting down MCP connections")
    await container.mcp_connection_manager.shutdown()
    set_container(None)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register error handlers
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(Exception, catch_all_handler)

    app.include_router(mcp_router)
    app.include_router(devices_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()

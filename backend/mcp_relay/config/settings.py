from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_relay.config.defaults import (
    DEFAULT_PROTOCOL_VERSION,
    DEFAULT_TOOL_TIMEOUT_MS,
    HEALTH_CHECK_INTERVAL_SECONDS,
    LIVENESS_TIMEOUT_SECONDS,
    RECONNECT_BASE_DELAY_MS,
    RECONNECT_MAX_DELAY_MS,
    SHUTDOWN_TIMEOUT_SECONDS,
)


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    app_env: str = "dev"
    app_name: str = "mcp-relay"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./mcp_relay.db"
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    mcp_client_name: str = "mcp-relay"
    mcp_client_version: str = "0.1.0"
    mcp_default_protocol_version: str = DEFAULT_PROTOCOL_VERSION
    mcp_default_timeout_ms: int = DEFAULT_TOOL_TIMEOUT_MS
    mcp_health_check_interval_seconds: float = HEALTH_CHECK_INTERVAL_SECONDS
    mcp_liveness_timeout_seconds: float = LIVENESS_TIMEOUT_SECONDS
    mcp_reconnect_base_delay_ms: int = RECONNECT_BASE_DELAY_MS
    mcp_reconnect_max_delay_ms: int = RECONNECT_MAX_DELAY_MS
    mcp_shutdown_timeout_seconds: float = SHUTDOWN_TIMEOUT_SECONDS


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return AppSettings()

"""Static defaults for the MCP connection layer."""

DEFAULT_PROTOCOL_VERSION = "2024-11-05"
SUPPORTED_PROTOCOL_VERSIONS = (
    "2024-11-05",
    "2025-03-26",
    "2025-06-18",
)

DEFAULT_TOOL_TIMEOUT_MS = 30000
HEALTH_CHECK_INTERVAL_SECONDS = 30.0
LIVENESS_TIMEOUT_SECONDS = 5.0
RECONNECT_BASE_DELAY_MS = 30000
RECONNECT_MAX_DELAY_MS = 480000
SHUTDOWN_TIMEOUT_SECONDS = 5.0

CAPABILITY_NAMES = ("tools", "resources", "prompts", "sampling")

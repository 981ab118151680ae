from mcp_relay.mcp.protocol_models import ServerConfig


def is_auto_approved(config: ServerConfig | None, *, capability: str, name: str) -> bool:
    """Check whether a tool/resource/prompt name is on the capability's auto-approve list."""
    if config is None:
        return False
    cap = config.capabilities.get(capability)
    if cap is None or not cap.enabled:
        return False
    return name in cap.auto_approve or "*" in cap.auto_approve

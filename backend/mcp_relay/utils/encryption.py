"""
Encryption utilities for credentials stored with MCP server configs.

Header values (bearer tokens, API keys) are kept encrypted at rest with Fernet.
"""

import json
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_FILE = Path.home() / ".mcp-relay" / "encryption.key"

SENSITIVE_HEADER_NAMES = frozenset({"authorization", "proxy-authorization", "x-api-key", "api-key", "cookie"})


def _get_or_create_encryption_key() -> bytes:
    """
    Get encryption key from the ENCRYPTION_KEY environment variable or the key file.
    Generates and saves a new key if neither holds a valid one.
    """
    env_key = os.getenv("ENCRYPTION_KEY")
    if env_key:
        try:
            Fernet(env_key.encode())
            return env_key.encode()
        except ValueError as e:
            logger.warning("Invalid ENCRYPTION_KEY in environment: %s", e)

    if ENCRYPTION_KEY_FILE.exists():
        try:
            key = ENCRYPTION_KEY_FILE.read_bytes()
            Fernet(key)
            return key
        except (OSError, ValueError) as e:
            logger.warning("Invalid encryption key in file: %s", e)

    logger.info("Generating new encryption key")
    key = Fernet.generate_key()
    try:
        ENCRYPTION_KEY_FILE.parent.mkdir(parents=True, exist_ok=True)
        ENCRYPTION_KEY_FILE.write_bytes(key)
        ENCRYPTION_KEY_FILE.chmod(0o600)
        logger.info("Saved encryption key to %s", ENCRYPTION_KEY_FILE)
    except OSError as e:
        logger.error("Failed to save encryption key: %s", e)
    return key


def encrypt(plaintext: str) -> str:
    if not plaintext:
        return ""
    fernet = Fernet(_get_or_create_encryption_key())
    return fernet.encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    if not ciphertext:
        return ""
    fernet = Fernet(_get_or_create_encryption_key())
    try:
        return fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken as e:
        logger.error("Failed to decrypt data: %s", e)
        raise ValueError("Failed to decrypt data - encryption key may have changed") from e


def encrypt_headers(headers: dict[str, str]) -> str:
    """Serialize and encrypt a header mapping; empty mappings are stored as ''."""
    if not headers:
        return ""
    return encrypt(json.dumps(headers, sort_keys=True))


def decrypt_headers(ciphertext: str) -> dict[str, str]:
    raw = decrypt(ciphertext)
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}


def mask_secret(value: str, show_chars: int = 4) -> str:
    """Mask a secret for display, e.g. 'Bearer ...xyz1'."""
    if not value or len(value) <= show_chars:
        return "***"
    prefix = ""
    if value.lower().startswith("bearer "):
        prefix = value[:7]
        value = value[7:]
        if len(value) <= show_chars:
            return f"{prefix}***"
    return f"{prefix}...{value[-show_chars:]}"


def mask_headers(headers: dict[str, str]) -> dict[str, str]:
    return {
        name: mask_secret(value) if name.lower() in SENSITIVE_HEADER_NAMES else value
        for name, value in headers.items()
    }

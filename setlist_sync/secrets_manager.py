"""
Secrets lookup for setlist-sync
================================

Reads secrets from Docker Secrets (/run/secrets/) first, then a local
./secrets/ directory, then environment variables. Values are never logged
unmasked.

Usage:
    from setlist_sync.secrets_manager import get_secret, get_database_url

    client_id = get_secret('SPOTIFY_CLIENT_ID')
    url = get_database_url()
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

DOCKER_SECRETS_DIR = Path("/run/secrets")
LOCAL_SECRETS_DIR = Path.cwd() / "secrets"


def _read_secret_file(path: Path, key: str) -> Optional[str]:
    if not path.exists():
        return None
    try:
        value = path.read_text().strip()
    except OSError as e:
        logger.warning("Failed to read secret file", key=key, path=str(path), error=str(e))
        return None
    return value or None


def get_secret(
    key: str,
    default: Optional[str] = None,
    required: bool = False,
    secret_file_name: Optional[str] = None
) -> Optional[str]:
    """
    Get secret value from Docker Secrets, local secrets or environment variables.

    Priority order:
    1. Docker Secret file (/run/secrets/<secret_file_name>)
    2. Local secret file (./secrets/<secret_file_name>)
    3. Environment variable
    4. Default value

    Args:
        key: Environment variable name
        default: Default value if not found
        required: If True, raises ValueError when secret not found
        secret_file_name: Custom secret file name (defaults to lowercase key)

    Raises:
        ValueError: If required=True and secret not found
    """
    secret_file_name = secret_file_name or key.lower()

    for directory in (DOCKER_SECRETS_DIR, LOCAL_SECRETS_DIR):
        value = _read_secret_file(directory / secret_file_name, key)
        if value:
            logger.debug("Loaded secret from file", key=key, directory=str(directory))
            return value

    value = os.getenv(key)
    if value:
        return value

    if default is not None:
        return default

    if required:
        raise ValueError(
            f"Required secret '{key}' not found in Docker Secrets or environment variables. "
            f"Set environment variable {key} or create secret file /run/secrets/{secret_file_name}"
        )

    return None


def get_database_config() -> Dict[str, Any]:
    """Get database configuration (host, port, database, user, password)."""
    return {
        "host": get_secret("POSTGRES_HOST", "localhost"),
        "port": int(get_secret("POSTGRES_PORT", "5432")),
        "database": get_secret("POSTGRES_DB", "setlist"),
        "user": get_secret("POSTGRES_USER", "setlist"),
        "password": get_secret("POSTGRES_PASSWORD", ""),
    }


def get_database_url(driver: str = "postgresql+asyncpg") -> str:
    """Get an SQLAlchemy connection URL, asyncpg driver by default."""
    url = get_secret("DATABASE_URL")
    if url:
        return url

    config = get_database_config()
    return (
        f"{driver}://{config['user']}:{config['password']}"
        f"@{config['host']}:{config['port']}/{config['database']}"
    )


def get_redis_config() -> Dict[str, Any]:
    """Get Redis configuration for the real-time channel."""
    return {
        "host": get_secret("REDIS_HOST", "localhost"),
        "port": int(get_secret("REDIS_PORT", "6379")),
        "password": get_secret("REDIS_PASSWORD"),
        "decode_responses": True
    }


def get_spotify_config() -> Dict[str, Optional[str]]:
    """Get Spotify client-credentials for the track catalog source."""
    return {
        "client_id": get_secret("SPOTIFY_CLIENT_ID", ""),
        "client_secret": get_secret("SPOTIFY_CLIENT_SECRET", ""),
    }


def mask_secret(value: Optional[str], show_chars: int = 4) -> str:
    """
    Mask secret for safe logging.

    Returns:
        Masked string like "****cdef"
    """
    if not value or len(value) <= show_chars:
        return "****"

    return "*" * (len(value) - show_chars) + value[-show_chars:]


def validate_secrets() -> bool:
    """
    Validate that the catalog credentials are available.

    Returns:
        True if all required secrets found, False otherwise
    """
    missing = []
    for secret_key in ("SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET"):
        try:
            value = get_secret(secret_key, required=True)
            logger.info("Secret present", key=secret_key, value=mask_secret(value))
        except ValueError:
            missing.append(secret_key)
            logger.error("Secret missing", key=secret_key)

    if missing:
        logger.error("Missing required secrets", missing=missing)
        return False

    return True


__all__ = [
    'get_secret',
    'get_database_config',
    'get_database_url',
    'get_redis_config',
    'get_spotify_config',
    'mask_secret',
    'validate_secrets'
]

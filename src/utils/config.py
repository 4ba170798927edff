"""Configuration utility for the chat listener.

Environment variables are the only source of configuration. Values are
coerced by parse_config_value so "true"/"false" and numbers come back typed.
"""

import os
from typing import Any

# Keys the service cannot run without
REQUIRED_KEYS = ("DATABASE_URL", "WEBHOOK_SECRET", "API_KEY")


def parse_config_value(value: str) -> str | bool | int | float:
    if value.lower() == "true":
        return True
    elif value.lower() == "false":
        return False
    else:
        # Try to parse as a number
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                return value


def get_config_value(key: str, default: Any = None) -> Any:
    """Get a configuration value from environment variables.

    Args:
        key: Configuration key name (e.g., "DATABASE_URL")
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    env_value = os.environ.get(key)
    if env_value is not None:
        return parse_config_value(env_value)

    return default


def get_config_value_str(key: str) -> str | None:
    """
    Get a configuration value from environment variables. Secrets made of digits stay strings.
    """
    return os.environ.get(key)


def require_config_value(key: str) -> str:
    value = os.environ.get(key)
    if value is None:
        raise ValueError(f"Environment variable {key} is required")
    return value


def validate_required_config() -> list[str]:
    """Return the required keys that are missing or empty."""
    return [key for key in REQUIRED_KEYS if not os.environ.get(key)]


def get_listener_environment() -> str:
    """Get listener environment from env var."""
    return get_config_value("LISTENER_ENVIRONMENT", "local")


def is_production() -> bool:
    return get_listener_environment() == "production"


def get_database_url() -> str:
    """Get database connection URL.

    Raises:
        ValueError: If DATABASE_URL is not configured
    """
    url = get_config_value_str("DATABASE_URL")
    if url:
        return url

    raise ValueError("Database URL not found. Please provide DATABASE_URL environment variable")


def get_webhook_secret() -> str | None:
    """Shared secret used to sign inbound webhooks."""
    return get_config_value_str("WEBHOOK_SECRET")


def get_admin_api_key() -> str | None:
    """Static key guarding the administrative endpoints."""
    return get_config_value_str("API_KEY")


def get_openai_api_key() -> str | None:
    return get_config_value_str("OPENAI_API_KEY")


def get_openai_base_url() -> str | None:
    return get_config_value_str("OPENAI_BASE_URL")


def get_openai_org_id() -> str | None:
    return get_config_value_str("OPENAI_ORG_ID")


def get_openai_assistant_model() -> str:
    return get_config_value("OPENAI_ASSISTANT_MODEL", "gpt-4")


def get_storage_timeout_seconds() -> float:
    """Upper bound on storage work for a single request."""
    return float(get_config_value("STORAGE_TIMEOUT_SECONDS", 10))


def get_max_body_bytes() -> int:
    return int(get_config_value("MAX_BODY_BYTES", 10 * 1024 * 1024))


def mirror_on_ingest_enabled() -> bool:
    return bool(get_config_value("MIRROR_ON_INGEST", False))


def get_mirror_poll_interval_seconds() -> float:
    return float(get_config_value("MIRROR_POLL_INTERVAL_SECONDS", 1))


def get_mirror_poll_max_attempts() -> int:
    return int(get_config_value("MIRROR_POLL_MAX_ATTEMPTS", 60))


def get_db_pool_sizes() -> tuple[int, int]:
    """Return (min_size, max_size) for the storage pool."""
    return int(get_config_value("DB_POOL_MIN_SIZE", 1)), int(get_config_value("DB_POOL_MAX_SIZE", 10))


def get_openai_assistant_id() -> str | None:
    """Assistant used for thread runs. When unset the first listed assistant is used."""
    return get_config_value_str("OPENAI_ASSISTANT_ID")

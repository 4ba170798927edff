"""Static API key guard for the administrative endpoints."""

import hmac

from fastapi import Request

from src.listener.errors import InvalidCredential, MissingApiKey
from src.utils.logging import get_logger

logger = get_logger(__name__)

API_KEY_HEADER = "x-api-key"
_AUTH_PREFIXES = ("Bearer ", "ApiKey ")


def extract_api_key(headers) -> str | None:
    """Pull the key from x-api-key or the Authorization header, minus any scheme prefix."""
    value = headers.get(API_KEY_HEADER) or headers.get("authorization")
    if not value:
        return None
    for prefix in _AUTH_PREFIXES:
        if value.startswith(prefix):
            value = value[len(prefix) :]
            break
    return value.strip() or None


def check_api_key(provided: str | None, expected: str | None) -> None:
    """Raise unless ``provided`` equals the configured key.

    An unset server key rejects every request.
    """
    if not provided:
        raise MissingApiKey()
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise InvalidCredential()


async def require_api_key(request: Request) -> None:
    """FastAPI dependency guarding admin routes."""
    try:
        check_api_key(extract_api_key(request.headers), request.app.state.settings.api_key)
    except (MissingApiKey, InvalidCredential) as e:
        logger.warning("Admin request rejected", reason=e.message, path=request.url.path)
        raise

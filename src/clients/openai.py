"""OpenAI client construction."""

from openai import AsyncOpenAI

from src.utils.config import get_openai_api_key, get_openai_base_url, get_openai_org_id

MAX_RETRIES = 4  # default max_retries is 2 for openai clients


def get_async_openai_client() -> AsyncOpenAI | None:
    """Build an AsyncOpenAI client from env, or None when no API key is configured."""
    api_key = get_openai_api_key()
    if not api_key:
        return None
    return AsyncOpenAI(
        api_key=api_key,
        base_url=get_openai_base_url(),
        organization=get_openai_org_id(),
        max_retries=MAX_RETRIES,
    )

"""Process-wide settings resolved once at startup and kept on app.state."""

from dataclasses import dataclass

from src.utils.config import (
    get_admin_api_key,
    get_config_value,
    get_listener_environment,
    get_max_body_bytes,
    get_storage_timeout_seconds,
    get_webhook_secret,
    mirror_on_ingest_enabled,
)


@dataclass
class ListenerSettings:
    environment: str = "local"
    webhook_secret: str | None = None
    api_key: str | None = None
    storage_timeout_seconds: float = 10.0
    max_body_bytes: int = 10 * 1024 * 1024
    mirror_on_ingest: bool = False
    dangerously_disable_webhook_validation: bool = False

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "ListenerSettings":
        return cls(
            environment=get_listener_environment(),
            webhook_secret=get_webhook_secret(),
            api_key=get_admin_api_key(),
            storage_timeout_seconds=get_storage_timeout_seconds(),
            max_body_bytes=get_max_body_bytes(),
            mirror_on_ingest=mirror_on_ingest_enabled(),
            dangerously_disable_webhook_validation=bool(
                get_config_value("DANGEROUSLY_DISABLE_WEBHOOK_VALIDATION", False)
            ),
        )

"""Chat listener FastAPI service: signed ChatGPT webhooks into Postgres."""

import os
import resource
import time
from contextlib import asynccontextmanager

import newrelic.agent

from src.utils.config import get_listener_environment

# The agent reads NEW_RELIC_CONFIG_FILE or NEW_RELIC_* variables; without either it stays off
if os.getenv("NEW_RELIC_CONFIG_FILE") or os.getenv("NEW_RELIC_LICENSE_KEY"):
    newrelic.agent.initialize(
        os.getenv("NEW_RELIC_CONFIG_FILE"), environment=get_listener_environment()
    )

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.clients.chat_db import ChatDBManager
from src.clients.openai import get_async_openai_client
from src.listener.errors import ListenerError
from src.listener.event_router import EventRouter
from src.listener.middleware import (
    RequestContextMiddleware,
    RequestGuardMiddleware,
    SecurityHeadersMiddleware,
)
from src.listener.repositories.chat_repository import ChatRepository
from src.listener.responses import (
    http_exception_handler,
    listener_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
    utc_timestamp,
)
from src.listener.routes import admin_router, openai_router
from src.listener.routes import router as webhook_router
from src.listener.services.thread_mirror import ThreadMirror
from src.listener.settings import ListenerSettings
from src.utils.config import (
    get_config_value,
    get_mirror_poll_interval_seconds,
    get_mirror_poll_max_attempts,
    get_openai_assistant_id,
    get_openai_assistant_model,
    validate_required_config,
)
from src.utils.logging import get_logger, get_uvicorn_log_config

logger = get_logger(__name__)

SERVICE_NAME = "chat-listener"
SERVICE_VERSION = "1.0.0"
API_PREFIX = "/api/v1"


def check_required_config(settings: ListenerSettings) -> None:
    """Refuse to start in production with required settings missing; warn elsewhere."""
    missing = validate_required_config()
    if not missing:
        return
    if settings.is_production:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
    logger.warning("Missing environment variables", missing=missing)


def build_event_router(
    settings: ListenerSettings, repository: ChatRepository, mirror: ThreadMirror
) -> EventRouter:
    message_mirror = None
    if settings.mirror_on_ingest:
        if mirror.is_configured:
            message_mirror = mirror.mirror_message
        else:
            logger.warning("MIRROR_ON_INGEST is set but OPENAI_API_KEY is not; mirroring disabled")
    return EventRouter(
        repository,
        storage_timeout_seconds=settings.storage_timeout_seconds,
        message_mirror=message_mirror,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the storage pool and collaborators on startup, close them on shutdown."""
    logger.info("Starting chat listener...")
    settings: ListenerSettings = app.state.settings
    check_required_config(settings)

    if settings.dangerously_disable_webhook_validation:
        logger.warning(
            "DANGEROUSLY_DISABLE_WEBHOOK_VALIDATION is enabled. "
            "Webhook signatures will NOT be verified!"
        )

    db = ChatDBManager()
    await db.initialize()
    repository = ChatRepository(db.pool)
    mirror = ThreadMirror(
        get_async_openai_client(),
        repository,
        model=get_openai_assistant_model(),
        assistant_id=get_openai_assistant_id(),
        poll_interval_seconds=get_mirror_poll_interval_seconds(),
        max_poll_attempts=get_mirror_poll_max_attempts(),
    )

    app.state.db = db
    app.state.repository = repository
    app.state.thread_mirror = mirror
    app.state.event_router = build_event_router(settings, repository, mirror)
    app.state.started_at = time.monotonic()

    logger.info("Chat listener startup complete", environment=settings.environment)

    yield

    logger.info("Shutting down chat listener...")
    await db.close()
    logger.info("Chat listener shutdown complete")


def memory_usage() -> dict[str, int]:
    """Peak resident set size of this process."""
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {"max_rss_kb": usage.ru_maxrss}


def create_app(settings: ListenerSettings | None = None, use_lifespan: bool = True) -> FastAPI:
    settings = settings or ListenerSettings.from_env()
    app = FastAPI(
        title="Chat Listener",
        description="Signed ChatGPT conversation webhooks stored in Postgres",
        version=SERVICE_VERSION,
        lifespan=lifespan if use_lifespan else None,
    )
    app.state.settings = settings
    app.state.started_at = time.monotonic()

    app.add_exception_handler(ListenerError, listener_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Outermost last: the request context wraps everything else
    app.add_middleware(RequestGuardMiddleware, max_body_bytes=settings.max_body_bytes)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)

    @app.get("/")
    async def service_info():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
            "timestamp": utc_timestamp(),
            "endpoints": {
                "health": "/health",
                "webhook": f"{API_PREFIX}/webhook/chatgpt",
                "manual_sync": f"{API_PREFIX}/sync/manual",
                "admin": f"{API_PREFIX}/admin",
                "openai": f"{API_PREFIX}/openai",
            },
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Storage reachability plus process stats. 503 when storage is down."""
        db: ChatDBManager = request.app.state.db
        database = await db.health_check()
        healthy = database["status"] == "healthy"
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": utc_timestamp(),
            "uptime": round(time.monotonic() - request.app.state.started_at, 3),
            "memory": memory_usage(),
            "database": database,
        }
        if not healthy:
            logger.error("Health check failed", database=database)
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    @app.get("/health/live")
    async def liveness_check():
        return {"status": "alive", "timestamp": utc_timestamp()}

    @app.get("/health/ready")
    async def readiness_check(request: Request):
        database = await request.app.state.db.health_check()
        if database["status"] != "healthy":
            return JSONResponse(status_code=503, content={"status": "not_ready", "database": database})
        return {"status": "ready"}

    app.include_router(webhook_router, prefix=API_PREFIX)
    app.include_router(admin_router, prefix=API_PREFIX)
    app.include_router(openai_router, prefix=API_PREFIX)
    # Legacy unversioned paths
    app.include_router(webhook_router)

    return app


app = create_app()


def main() -> None:
    """Run the listener with uvicorn."""
    import uvicorn

    port = get_config_value("LISTENER_PORT", 3000)
    uvicorn.run(
        "src.listener.main:app",
        host="0.0.0.0",
        port=port,
        log_config=get_uvicorn_log_config(),
    )


if __name__ == "__main__":
    main()

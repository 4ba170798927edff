"""Error bodies and FastAPI exception handlers.

Every error response is a flat JSON object with at least ``error`` and
``timestamp``.
"""

from datetime import UTC, datetime
from typing import Any

import newrelic.agent
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.listener.errors import InvalidPayload, ListenerError
from src.utils.logging import get_logger

logger = get_logger(__name__)


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


def error_body(error: str, **extra: Any) -> dict[str, Any]:
    return {"error": error, **extra, "timestamp": utc_timestamp()}


def _is_production(request: Request) -> bool:
    settings = getattr(request.app.state, "settings", None)
    return bool(settings and settings.is_production)


async def listener_error_handler(request: Request, exc: ListenerError) -> JSONResponse:
    body = exc.to_body()
    body["timestamp"] = utc_timestamp()
    return JSONResponse(status_code=exc.status_code, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render FastAPI body/query validation failures like our own InvalidPayload."""
    details = []
    for err in exc.errors():
        # Drop the leading "body"/"query" segment FastAPI adds
        loc = [str(part) for part in err["loc"][1:]] or [str(part) for part in err["loc"]]
        details.append({"field": ".".join(loc), "message": err["msg"]})
    return await listener_error_handler(request, InvalidPayload(details))


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content=error_body("Route not found", method=request.method, path=request.url.path),
        )
    message = str(exc.detail) if exc.detail else "An error occurred"
    return JSONResponse(status_code=exc.status_code, content=error_body(message))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 for anything unexpected. Details are only exposed outside production."""
    newrelic.agent.notice_error(error=(type(exc), exc, exc.__traceback__))
    logger.error(
        "Unhandled exception", method=request.method, path=request.url.path, exc_info=exc
    )

    if _is_production(request):
        return JSONResponse(status_code=500, content=error_body("Internal server error"))
    return JSONResponse(
        status_code=500,
        content=error_body("Internal server error", message=str(exc), type=type(exc).__name__),
    )

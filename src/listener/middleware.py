"""HTTP middleware: request context, security headers, body guards."""

import time
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.listener.responses import error_body
from src.utils.logging import add_log_context, clear_log_context, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "x-request-id"
MAX_REQUEST_ID_LENGTH = 128

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}

_BODY_METHODS = ("POST", "PUT", "PATCH")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a request id into the log context and echoes it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.monotonic()
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = incoming if 0 < len(incoming) <= MAX_REQUEST_ID_LENGTH else str(uuid.uuid4())
        request.state.request_id = request_id

        clear_log_context()
        add_log_context(request_id=request_id)
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
            return response
        finally:
            clear_log_context()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response


class RequestGuardMiddleware(BaseHTTPMiddleware):
    """Rejects non-JSON bodies on write methods (400) and declared lengths over the limit (413).

    Chunked bodies carry no length up front; the ingest routes cap those while reading.
    """

    def __init__(self, app, max_body_bytes: int):
        super().__init__(app)
        self.max_body_bytes = max_body_bytes

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method in _BODY_METHODS:
            content_length = request.headers.get("content-length")
            if content_length and content_length.isdigit():
                if int(content_length) > self.max_body_bytes:
                    return JSONResponse(status_code=413, content=error_body("Payload too large"))
                has_body = int(content_length) > 0
            else:
                has_body = "transfer-encoding" in request.headers

            content_type = request.headers.get("content-type", "")
            if has_body and "application/json" not in content_type:
                return JSONResponse(
                    status_code=400,
                    content=error_body("Content-Type must be application/json"),
                )

        return await call_next(request)

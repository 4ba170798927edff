"""Error taxonomy for the listener.

Every error that reaches a client is a ListenerError subclass carrying the
HTTP status it maps to. The exception handlers in main.py render them as a
flat ``{"error": ..., "timestamp": ...}`` body.
"""

from typing import Any


class ListenerError(Exception):
    """Base class for errors surfaced to HTTP clients."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message}


class MissingCredential(ListenerError):
    status_code = 401
    default_message = "Missing signature or timestamp"


class MissingApiKey(MissingCredential):
    default_message = "Missing API key"


class StaleRequest(ListenerError):
    """Signed timestamp falls outside the replay window."""

    status_code = 401
    default_message = "Request too old"


class BadSignature(ListenerError):
    status_code = 401
    default_message = "Invalid signature"


class InvalidCredential(ListenerError):
    status_code = 401
    default_message = "Invalid API key"


class InvalidPayload(ListenerError):
    """Body failed validation. ``details`` holds one entry per failing field."""

    status_code = 400
    default_message = "Invalid payload"

    def __init__(self, details: list[dict[str, str]], message: str | None = None):
        super().__init__(message)
        self.details = details

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message, "details": self.details}


class PayloadTooLarge(ListenerError):
    status_code = 413
    default_message = "Payload too large"


class UnknownEventType(ListenerError):
    """Raised internally for unrecognized tags; the router turns it into an ignored result."""

    status_code = 200
    default_message = "Unknown event type"

    def __init__(self, event_type: str):
        super().__init__(f"Unknown event type: {event_type}")
        self.event_type = event_type


class NotFound(ListenerError):
    status_code = 404
    default_message = "Not found"


class StorageUnavailable(ListenerError):
    status_code = 503
    default_message = "Storage unavailable"


class UpstreamIntegrationFailure(ListenerError):
    """The outbound thread mirror failed. Local persistence is unaffected."""

    status_code = 502
    default_message = "Upstream integration failure"


class UpstreamTimeout(UpstreamIntegrationFailure):
    status_code = 504
    default_message = "Timed out waiting for upstream run"

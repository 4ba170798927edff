"""Webhook signature verification.

Senders sign ``"{timestamp}.{raw body}"`` with HMAC-SHA256 using the shared
webhook secret and send:

- ``x-webhook-timestamp``: unix seconds
- ``x-webhook-signature``: ``sha256=<hex digest>`` (prefix optional)

The digest is always computed over the exact bytes received. The body is
never re-serialized before hashing.
"""

import hashlib
import hmac
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from src.listener.errors import BadSignature, ListenerError, MissingCredential, StaleRequest

SIGNATURE_HEADER = "x-webhook-signature"
TIMESTAMP_HEADER = "x-webhook-timestamp"
SIGNATURE_PREFIX = "sha256="
REPLAY_WINDOW_SECONDS = 300


@dataclass
class VerificationResult:
    """Result of webhook verification."""

    success: bool
    error: ListenerError | None = None


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``timestamp.body`` under ``secret``."""
    signed = timestamp.encode() + b"." + body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    headers: Mapping[str, str],
    body: bytes,
    secret: str,
    now: float | None = None,
) -> None:
    """Verify a signed webhook request.

    Args:
        headers: Request headers, keys lower-cased
        body: Raw request body bytes
        secret: Shared webhook secret
        now: Current unix time, defaults to time.time()

    Raises:
        MissingCredential: signature or timestamp header absent
        StaleRequest: timestamp unparseable or outside the replay window
        BadSignature: digest mismatch
    """
    signature = headers.get(SIGNATURE_HEADER)
    timestamp = headers.get(TIMESTAMP_HEADER)
    if not signature or not timestamp:
        raise MissingCredential()

    try:
        request_time = int(timestamp)
    except ValueError:
        raise StaleRequest()

    now = time.time() if now is None else now
    if abs(now - request_time) > REPLAY_WINDOW_SECONDS:
        raise StaleRequest()

    expected = compute_signature(secret, timestamp, body)
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX) :]

    # compare_digest handles unequal lengths without raising
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        raise BadSignature()


class WebhookSignatureVerifier:
    """Verifies inbound webhooks against a single shared secret."""

    def __init__(self, secret: str, clock: Callable[[], float] = time.time):
        self.secret = secret
        self.clock = clock

    def verify(self, headers: Mapping[str, str], body: bytes) -> VerificationResult:
        try:
            verify_webhook_signature(headers, body, self.secret, now=self.clock())
            return VerificationResult(success=True)
        except ListenerError as e:
            return VerificationResult(success=False, error=e)

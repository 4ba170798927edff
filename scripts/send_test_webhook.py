#!/usr/bin/env python3
"""
Send a signed test webhook to a running chat listener.

Reads WEBHOOK_SECRET from the environment (or .env) and signs the body the
same way ChatGPT webhook senders do. Example:

    python scripts/send_test_webhook.py --url http://localhost:3000 --event message.created
"""

import hashlib
import hmac
import json
import os
import time
import uuid

import httpx
import typer
from dotenv import load_dotenv

load_dotenv()

app = typer.Typer(add_completion=False)


def build_payload(conversation_id: str, message_id: str, content: str) -> dict:
    """Envelope with one conversation and one user message."""
    now = int(time.time())
    return {
        "conversation": {
            "id": conversation_id,
            "title": "Test conversation",
            "model": "gpt-4",
            "create_time": now,
            "update_time": now,
        },
        "message": {
            "id": message_id,
            "conversation_id": conversation_id,
            "role": "user",
            "content": content,
            "create_time": now,
            "author": {"name": "Test User", "role": "user"},
        },
        "timestamp": now,
    }


def sign(secret: str, timestamp: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), timestamp.encode() + b"." + body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


@app.command()
def main(
    url: str = typer.Option("http://localhost:3000", help="Listener base URL"),
    event: str = typer.Option("message.created", help="Value for x-event-type"),
    content: str = typer.Option("Hello from the test webhook script", help="Message content"),
    conversation_id: str | None = typer.Option(None, help="Conversation id (random if omitted)"),
) -> None:
    secret = os.getenv("WEBHOOK_SECRET")
    if not secret:
        typer.echo("WEBHOOK_SECRET must be set", err=True)
        raise typer.Exit(1)

    payload = build_payload(conversation_id or f"conv-{uuid.uuid4()}", f"msg-{uuid.uuid4()}", content)
    body = json.dumps(payload).encode()
    timestamp = str(int(time.time()))
    headers = {
        "content-type": "application/json",
        "x-event-type": event,
        "x-webhook-timestamp": timestamp,
        "x-webhook-signature": sign(secret, timestamp, body),
    }

    response = httpx.post(f"{url.rstrip('/')}/api/v1/webhook/chatgpt", content=body, headers=headers)
    typer.echo(f"{response.status_code} {response.text}")
    if response.status_code >= 400:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()

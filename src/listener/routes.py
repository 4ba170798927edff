"""Route definitions for the listener service."""

import json
from datetime import UTC, datetime
from typing import Any, Literal

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.listener.access_guard import require_api_key
from src.listener.errors import (
    InvalidPayload,
    ListenerError,
    NotFound,
    PayloadTooLarge,
    UpstreamIntegrationFailure,
)
from src.listener.event_router import (
    EVENT_TYPE_HEADER,
    EventRouter,
    IngestionFlow,
    IngestionState,
    resolve_event_tag,
)
from src.listener.models import CreateThreadRequest, PostThreadMessageRequest, WebhookResponse
from src.listener.repositories.chat_repository import ChatRepository, MessageSearchFilters
from src.listener.responses import utc_timestamp
from src.listener.services.thread_mirror import ThreadMirror
from src.listener.settings import ListenerSettings
from src.listener.validation import (
    ValidationResult,
    field_error,
    validate_envelope,
    validate_manual_sync,
)
from src.listener.verification import verify_webhook_signature
from src.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

# Mounted under /api/v1 and at the root for senders configured before versioning
router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(require_api_key)])
openai_router = APIRouter(prefix="/openai", dependencies=[Depends(require_api_key)])

SYNC_BATCH_SIZE = 10


def _settings(request: Request) -> ListenerSettings:
    return request.app.state.settings


async def _read_body(request: Request) -> bytes:
    """Raw body, cut off at max_body_bytes even when no Content-Length was sent."""
    limit = _settings(request).max_body_bytes
    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise PayloadTooLarge()
        chunks.append(chunk)
    return b"".join(chunks)


def _decode_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidPayload([field_error("body", "Malformed JSON")])


def _verify_or_raise(request: Request, body: bytes) -> None:
    settings = _settings(request)
    if settings.dangerously_disable_webhook_validation:
        logger.warning(
            "Skipping webhook signature verification (DANGEROUSLY_DISABLE_WEBHOOK_VALIDATION=true)"
        )
        return
    if not settings.webhook_secret:
        raise ListenerError("Webhook secret is not configured")
    verify_webhook_signature(request.headers, body, settings.webhook_secret)


async def _ingest(
    request: Request,
    flow: IngestionFlow,
    validation: ValidationResult,
    tag: str | None,
) -> WebhookResponse:
    """Route and persist a validated envelope, advancing ``flow`` as it goes."""
    if not validation.ok or validation.data is None:
        raise InvalidPayload(validation.errors)
    flow.advance(IngestionState.VALIDATED)

    event_tag = tag or resolve_event_tag(request.headers.get(EVENT_TYPE_HEADER), validation.data)
    event_router: EventRouter = request.app.state.event_router
    with LogContext(event_type=event_tag):
        flow.advance(IngestionState.ROUTED)
        result = await event_router.route(event_tag, validation.data)
        flow.advance(IngestionState.PERSISTED)

    response = WebhookResponse(eventType=event_tag, result=result, timestamp=utc_timestamp())
    flow.advance(IngestionState.RESPONDED)
    return response


@router.post("/webhook/chatgpt", response_model=WebhookResponse)
async def chatgpt_webhook(request: Request):
    """Process a signed ChatGPT conversation webhook."""
    flow = IngestionFlow()
    try:
        body = await _read_body(request)
        _verify_or_raise(request, body)
        validation = validate_envelope(_decode_json(body))
        return await _ingest(request, flow, validation, tag=None)
    except ListenerError as e:
        flow.fail(e)
        logger.warning("Webhook rejected", error=e.message, state=flow.state.value)
        raise


@router.post(
    "/sync/manual", response_model=WebhookResponse, dependencies=[Depends(require_api_key)]
)
async def manual_sync(request: Request):
    """Push a single conversation or message without a webhook signature."""
    flow = IngestionFlow()
    try:
        tag, validation = validate_manual_sync(_decode_json(await _read_body(request)))
        return await _ingest(request, flow, validation, tag=tag)
    except ListenerError as e:
        flow.fail(e)
        raise


@router.post("/test/webhook", response_model=WebhookResponse, include_in_schema=False)
async def test_webhook(request: Request):
    """Unsigned webhook for local testing. Not routed in production."""
    if _settings(request).is_production:
        raise StarletteHTTPException(status_code=404)
    flow = IngestionFlow()
    try:
        validation = validate_envelope(_decode_json(await _read_body(request)))
        return await _ingest(request, flow, validation, tag=None)
    except ListenerError as e:
        flow.fail(e)
        raise


@admin_router.get("/conversations/{conversation_id}")
async def get_conversation(
    request: Request,
    conversation_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    repository: ChatRepository = request.app.state.repository
    conversation = await repository.get_conversation(conversation_id)
    if conversation is None:
        raise NotFound("Conversation not found")
    messages = await repository.list_messages(conversation_id, limit=limit, offset=offset)
    return {
        "conversation": conversation,
        "messages": messages,
        "pagination": {"limit": limit, "offset": offset, "count": len(messages)},
    }


@admin_router.get("/messages/search")
async def search_messages(
    request: Request,
    project: str | None = None,
    q: str | None = None,
    role: Literal["user", "assistant", "system", "tool"] | None = None,
    date_from: float | None = None,
    date_to: float | None = None,
    limit: int = Query(100, ge=1, le=1000),
):
    """Report query over stored messages."""
    repository: ChatRepository = request.app.state.repository
    filters = MessageSearchFilters(
        project=project,
        query=q,
        role=role,
        date_from=datetime.fromtimestamp(date_from, tz=UTC) if date_from is not None else None,
        date_to=datetime.fromtimestamp(date_to, tz=UTC) if date_to is not None else None,
        limit=limit,
    )
    messages = await repository.search_messages(filters)
    return {"messages": messages, "count": len(messages)}


@openai_router.get("/status")
async def openai_status(request: Request):
    mirror: ThreadMirror = request.app.state.thread_mirror
    return {"configured": mirror.is_configured, "model": mirror.model, "timestamp": utc_timestamp()}


@openai_router.post("/conversations", status_code=201)
async def create_thread_conversation(request: Request, payload: CreateThreadRequest):
    mirror: ThreadMirror = request.app.state.thread_mirror
    data = await mirror.start_conversation(
        title=payload.title,
        project_id=payload.project_id,
        initial_message=payload.initial_message,
    )
    return {"status": "success", "data": data, "timestamp": utc_timestamp()}


@openai_router.post("/conversations/{thread_id}/messages")
async def post_thread_message(
    request: Request, thread_id: str, payload: PostThreadMessageRequest
):
    """Add a message to a thread. User messages also get an assistant reply."""
    mirror: ThreadMirror = request.app.state.thread_mirror
    user_message = await mirror.add_thread_message(thread_id, payload.message, payload.role)

    assistant_response = None
    if payload.role == "user":
        try:
            assistant_response = await mirror.reply(thread_id)
        except ListenerError as e:
            # The posted message is already stored; report the missing reply as null
            logger.warning("Assistant reply failed", thread_id=thread_id, error=e.message)

    return {
        "status": "success",
        "data": {"userMessage": user_message, "assistantResponse": assistant_response},
        "timestamp": utc_timestamp(),
    }


@openai_router.post("/sync", status_code=202)
async def sync_threads(request: Request, background_tasks: BackgroundTasks):
    """Mirror conversations that have no thread yet, in the background."""
    mirror: ThreadMirror = request.app.state.thread_mirror
    if not mirror.is_configured:
        raise UpstreamIntegrationFailure("OpenAI integration is not configured")
    background_tasks.add_task(mirror.sync_pending, SYNC_BATCH_SIZE)
    return {"status": "accepted", "limit": SYNC_BATCH_SIZE, "timestamp": utc_timestamp()}

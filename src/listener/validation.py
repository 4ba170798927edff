"""Payload validation and normalization.

validate_envelope() turns a decoded JSON body into a NormalizedEnvelope or a
list of field-level errors. Nothing here touches storage, so a failed
validation can never leave a partial write behind.
"""

import json
import math
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from src.listener.models import (
    UNTITLED,
    ConversationPayload,
    ConversationRecord,
    ManualSyncRequest,
    MessageContent,
    MessagePayload,
    MessageRecord,
    MessageRole,
    NormalizedEnvelope,
    ProjectPayload,
    ProjectRecord,
    StructuredContent,
    TextContent,
    WebhookEnvelope,
)
from src.utils.logging import get_logger

logger = get_logger(__name__)

ONE_YEAR_SECONDS = 365 * 24 * 60 * 60

# C0 controls and DEL, keeping \t and \n
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class ValidationResult:
    ok: bool
    data: NormalizedEnvelope | None = None
    errors: list[dict[str, str]] = field(default_factory=list)


def field_error(field_name: str, message: str) -> dict[str, str]:
    return {"field": field_name, "message": message}


def errors_from_pydantic(exc: ValidationError, prefix: str = "") -> list[dict[str, str]]:
    """Flatten pydantic errors into {field, message} entries with dotted paths."""
    errors = []
    for err in exc.errors():
        # Union members add their type name to loc, e.g. ("content", "str"); drop those
        loc = [str(part) for part in err["loc"] if not _is_union_tag(part)]
        path = ".".join(([prefix] if prefix else []) + loc)
        errors.append(field_error(path or prefix, err["msg"]))
    return errors


def _is_union_tag(part: Any) -> bool:
    return isinstance(part, str) and (
        part in ("str", "float", "int", "bool") or part.startswith(("dict[", "list["))
    )


def normalize_text(value: str) -> str:
    """Collapse CRLF/CR to LF, strip control characters, trim surrounding whitespace."""
    value = value.replace("\r\n", "\n").replace("\r", "\n")
    value = _CONTROL_CHARS.sub("", value)
    return value.strip()


def epoch_to_datetime(value: float) -> datetime:
    """Convert epoch seconds to an aware UTC datetime.

    Raises:
        ValueError: for NaN, infinity, or values outside the datetime range
    """
    if not math.isfinite(value):
        raise ValueError("Timestamp must be a finite number")
    try:
        return datetime.fromtimestamp(value, tz=UTC)
    except (OverflowError, OSError, ValueError) as e:
        raise ValueError("Timestamp is out of range") from e


def _timestamp(
    field_name: str, value: float, errors: list[dict[str, str]]
) -> datetime | None:
    try:
        return epoch_to_datetime(value)
    except ValueError as e:
        errors.append(field_error(field_name, str(e)))
        return None


def check_timestamp_window(field_name: str, value: float | None, now: float | None = None) -> bool:
    """Log a warning when a timestamp is more than a year away from now.

    Never rejects. Returns False when the value is out of the window so callers
    can count it if they want to.
    """
    if value is None:
        return True
    now = time.time() if now is None else now
    if abs(now - value) > ONE_YEAR_SECONDS:
        logger.warning(
            "Timestamp outside the expected window",
            field=field_name,
            value=value,
        )
        return False
    return True


def resolve_content(payload: MessagePayload) -> MessageContent | None:
    """Resolve the message's content into a TextContent or StructuredContent.

    Falls back to the text found in ``parts`` when ``content`` is absent.
    Returns None when nothing non-empty remains after normalization.
    """
    source = payload.content if payload.content is not None else _text_from_parts(payload.parts)
    if source is None:
        return None

    if isinstance(source, str):
        text = normalize_text(source)
        return TextContent(text) if text else None

    if not source:
        return None
    return StructuredContent.from_value(source)


def _text_from_parts(parts: Any) -> str | None:
    if isinstance(parts, str):
        return parts
    if isinstance(parts, list):
        texts = [p for p in parts if isinstance(p, str)]
        if texts:
            return "\n".join(texts)
        return None
    return None


def _serialize_parts(parts: Any) -> str | None:
    if parts is None:
        return None
    return json.dumps(parts, ensure_ascii=False)


def build_conversation(
    payload: ConversationPayload,
) -> tuple[ConversationRecord | None, list[dict[str, str]]]:
    check_timestamp_window("conversation.create_time", payload.create_time)
    check_timestamp_window("conversation.update_time", payload.update_time)
    errors: list[dict[str, str]] = []
    create_time = _timestamp("conversation.create_time", payload.create_time, errors)
    update_time = _timestamp("conversation.update_time", payload.update_time, errors)
    if errors:
        return None, errors

    return ConversationRecord(
        conversation_id=payload.id,
        title=normalize_text(payload.title) or UNTITLED,
        model=payload.model,
        create_time=create_time,
        update_time=update_time,
        chatgpt_project_id=payload.project_id,
        openai_thread_id=payload.openai_thread_id,
    ), []


def build_message(payload: MessagePayload) -> tuple[MessageRecord | None, list[dict[str, str]]]:
    content = resolve_content(payload)
    if content is None:
        return None, [field_error("message.content", "Content must not be empty")]

    check_timestamp_window("message.create_time", payload.create_time)
    errors: list[dict[str, str]] = []
    create_time = _timestamp("message.create_time", payload.create_time, errors)
    if errors:
        return None, errors

    record = MessageRecord(
        id=payload.id,
        conversation_id=payload.conversation_id,
        role=MessageRole(payload.role),
        content=content,
        create_time=create_time,
        parts=_serialize_parts(payload.parts),
        parent=payload.parent,
        children=payload.children,
        author_name=payload.author.name if payload.author else None,
    )
    return record, []


def build_project(payload: ProjectPayload) -> ProjectRecord:
    return ProjectRecord(
        name=payload.name,
        description=payload.description,
        is_starred=payload.is_starred,
        chatgpt_project_id=payload.chatgpt_project_id,
    )


def validate_envelope(body: Any) -> ValidationResult:
    """Validate a decoded webhook body.

    Args:
        body: The JSON-decoded request body

    Returns:
        ValidationResult with ok=True and a NormalizedEnvelope, or ok=False
        and the list of field errors.
    """
    if not isinstance(body, dict):
        return ValidationResult(ok=False, errors=[field_error("body", "Payload must be a JSON object")])

    errors: list[dict[str, str]] = []
    if body.get("conversation") is None and body.get("message") is None:
        errors.append(field_error("conversation", "conversation is required unless message is present"))

    try:
        envelope = WebhookEnvelope.model_validate(body)
    except ValidationError as e:
        errors.extend(errors_from_pydantic(e))
        return ValidationResult(ok=False, errors=errors)

    if errors:
        return ValidationResult(ok=False, errors=errors)

    normalized = NormalizedEnvelope(
        event_type=envelope.event_type,
        extra=dict(envelope.model_extra or {}),
    )
    check_timestamp_window("timestamp", envelope.timestamp)

    if envelope.project is not None:
        normalized.project = build_project(envelope.project)
    if envelope.conversation is not None:
        conversation, conversation_errors = build_conversation(envelope.conversation)
        errors.extend(conversation_errors)
        normalized.conversation = conversation
    if envelope.message is not None:
        message, message_errors = build_message(envelope.message)
        errors.extend(message_errors)
        normalized.message = message

    if (
        normalized.message is not None
        and normalized.conversation is not None
        and normalized.message.conversation_id != normalized.conversation.conversation_id
    ):
        errors.append(
            field_error("message.conversation_id", "Must match conversation.id when both are present")
        )

    if errors:
        return ValidationResult(ok=False, errors=errors)
    return ValidationResult(ok=True, data=normalized)


def validate_manual_sync(body: Any) -> tuple[str, ValidationResult]:
    """Validate a manual sync request and map it onto a webhook envelope.

    ``data`` is normally an envelope holding a ``conversation`` or ``message``
    object (plus an optional ``project``). When that key is missing, ``data``
    is taken as the bare conversation or message record.

    Returns the event type to route as, along with the envelope result.
    """
    try:
        request = ManualSyncRequest.model_validate(body)
    except ValidationError as e:
        return "unknown", ValidationResult(ok=False, errors=errors_from_pydantic(e))

    data = dict(request.data)
    if request.type == "conversation":
        if isinstance(data.get("conversation"), dict):
            return "conversation.updated", validate_envelope(data)
        return "conversation.updated", validate_envelope({"conversation": data})

    if isinstance(data.get("message"), dict):
        return "message.created", validate_envelope(data)
    envelope: dict[str, Any] = {"message": data}
    if isinstance(data.get("conversation"), dict):
        envelope["conversation"] = data.pop("conversation")
    return "message.created", validate_envelope(envelope)

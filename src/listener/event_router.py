"""Event routing: dispatch a validated envelope to the handler for its event type."""

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from src.listener.errors import (
    InvalidPayload,
    ListenerError,
    UnknownEventType,
)
from src.listener.models import ConversationRecord, MessageRecord, NormalizedEnvelope
from src.listener.repositories.chat_repository import ChatRepository, storage_errors
from src.listener.validation import field_error
from src.utils.logging import get_logger

logger = get_logger(__name__)

EVENT_TYPE_HEADER = "x-event-type"


class EventType(StrEnum):
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_UPDATED = "conversation.updated"
    MESSAGE_CREATED = "message.created"
    MESSAGE_UPDATED = "message.updated"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, tag: str) -> "EventType":
        """Map a tag onto a known event type.

        Raises:
            UnknownEventType: for any tag outside the known set
        """
        try:
            event_type = cls(tag)
        except ValueError:
            raise UnknownEventType(tag)
        if event_type is cls.UNKNOWN:
            raise UnknownEventType(tag)
        return event_type


class IngestionState(StrEnum):
    """Per-request lifecycle. Never persisted."""

    RECEIVED = "received"
    VALIDATED = "validated"
    ROUTED = "routed"
    PERSISTED = "persisted"
    RESPONDED = "responded"
    REJECTED = "rejected"
    FAILED = "failed"


_TRANSITIONS: dict[IngestionState, set[IngestionState]] = {
    IngestionState.RECEIVED: {IngestionState.VALIDATED, IngestionState.REJECTED},
    IngestionState.VALIDATED: {IngestionState.ROUTED, IngestionState.REJECTED},
    IngestionState.ROUTED: {IngestionState.PERSISTED, IngestionState.FAILED, IngestionState.REJECTED},
    IngestionState.PERSISTED: {IngestionState.RESPONDED, IngestionState.FAILED},
    IngestionState.RESPONDED: set(),
    IngestionState.REJECTED: set(),
    IngestionState.FAILED: set(),
}

TERMINAL_STATES = frozenset(
    {IngestionState.RESPONDED, IngestionState.REJECTED, IngestionState.FAILED}
)


class IngestionFlow:
    """Tracks one request through the ingestion states."""

    def __init__(self) -> None:
        self.state = IngestionState.RECEIVED
        self.history = [IngestionState.RECEIVED]

    def advance(self, state: IngestionState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal ingestion transition {self.state} -> {state}")
        self.state = state
        self.history.append(state)
        logger.debug("Ingestion state changed", state=state.value)

    def fail(self, error: Exception) -> None:
        """Move to rejected or failed depending on where the error happened."""
        if self.state in TERMINAL_STATES:
            return
        client_error = isinstance(error, ListenerError) and error.status_code < 500
        if self.state is IngestionState.PERSISTED or (
            self.state is IngestionState.ROUTED and not client_error
        ):
            self.advance(IngestionState.FAILED)
        else:
            self.advance(IngestionState.REJECTED)


def resolve_event_tag(header_value: str | None, envelope: NormalizedEnvelope | None) -> str:
    """Event tag from the header, then the envelope, then 'unknown'."""
    if header_value:
        return header_value
    if envelope is not None and envelope.event_type:
        return envelope.event_type
    return EventType.UNKNOWN.value


Handler = Callable[[NormalizedEnvelope, str], Awaitable[dict[str, Any]]]
# Called after a message commits; failures are logged, never raised
MessageMirror = Callable[[MessageRecord], Awaitable[None]]


class EventRouter:
    """Routes validated envelopes to persistence handlers."""

    def __init__(
        self,
        repository: ChatRepository,
        storage_timeout_seconds: float = 10.0,
        message_mirror: MessageMirror | None = None,
    ):
        self.repository = repository
        self.storage_timeout_seconds = storage_timeout_seconds
        self.message_mirror = message_mirror
        self._handlers: dict[EventType, Handler] = {
            EventType.CONVERSATION_CREATED: self._handle_conversation,
            EventType.CONVERSATION_UPDATED: self._handle_conversation,
            EventType.MESSAGE_CREATED: self._handle_message,
            EventType.MESSAGE_UPDATED: self._handle_message,
            EventType.UNKNOWN: self._handle_unknown,
        }

    async def route(self, tag: str, envelope: NormalizedEnvelope) -> dict[str, Any]:
        """Dispatch ``envelope`` to the handler for ``tag`` and return its result."""
        try:
            event_type = EventType.parse(tag)
        except UnknownEventType as e:
            logger.info("Ignoring unknown event type", event_type=e.event_type)
            event_type = EventType.UNKNOWN

        return await self._handlers[event_type](envelope, tag)

    async def _handle_unknown(self, envelope: NormalizedEnvelope, tag: str) -> dict[str, Any]:
        return {"status": "ignored", "eventType": tag}

    async def _handle_conversation(
        self, envelope: NormalizedEnvelope, tag: str
    ) -> dict[str, Any]:
        conversation = envelope.conversation
        if conversation is None:
            raise InvalidPayload(
                [field_error("conversation", f"conversation is required for {tag} events")]
            )

        async with storage_errors(tag), asyncio.timeout(self.storage_timeout_seconds):
            async with self.repository.transaction() as conn:
                project_row_id = None
                if envelope.project is not None:
                    project_row_id = await self.repository.upsert_project(conn, envelope.project)
                inserted = await self.repository.upsert_conversation(
                    conn, conversation, project_row_id
                )
                if envelope.message is not None:
                    await self.repository.upsert_message(conn, envelope.message)

        status = "conversation_created" if inserted else "conversation_updated"
        logger.info("Conversation stored", conversation_id=conversation.conversation_id, status=status)
        result: dict[str, Any] = {"status": status, "conversationId": conversation.conversation_id}
        if envelope.message is not None:
            result["messageId"] = envelope.message.id
            await self._mirror(envelope.message)
        return result

    async def _handle_message(self, envelope: NormalizedEnvelope, tag: str) -> dict[str, Any]:
        message = envelope.message
        if message is None:
            raise InvalidPayload([field_error("message", f"message is required for {tag} events")])

        async with storage_errors(tag), asyncio.timeout(self.storage_timeout_seconds):
            async with self.repository.transaction() as conn:
                project_row_id = None
                if envelope.project is not None:
                    project_row_id = await self.repository.upsert_project(conn, envelope.project)

                if envelope.conversation is not None:
                    await self.repository.upsert_conversation(
                        conn, envelope.conversation, project_row_id
                    )
                else:
                    synthesized = await self.repository.ensure_conversation(
                        conn,
                        ConversationRecord.placeholder(message.conversation_id, message.create_time),
                    )
                    if synthesized:
                        logger.info(
                            "Created placeholder conversation for message",
                            conversation_id=message.conversation_id,
                            message_id=message.id,
                        )

                inserted = await self.repository.upsert_message(conn, message)

        status = "message_created" if inserted else "message_updated"
        logger.info("Message stored", message_id=message.id, status=status)
        await self._mirror(message)
        return {"status": status, "messageId": message.id}

    async def _mirror(self, message: MessageRecord) -> None:
        if self.message_mirror is None:
            return
        try:
            await self.message_mirror(message)
        except Exception as e:
            # Local rows are already committed; the mirror can be retried via /openai/sync
            logger.error(
                "Thread mirror failed after ingestion",
                conversation_id=message.conversation_id,
                message_id=message.id,
                error=e.message if isinstance(e, ListenerError) else str(e),
                exc_info=not isinstance(e, ListenerError),
            )

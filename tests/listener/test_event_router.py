"""Tests for event routing, message-first synthesis and ingestion states."""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, Mock, patch

import asyncpg
import pytest

from src.listener.errors import (
    BadSignature,
    InvalidPayload,
    StorageUnavailable,
    UnknownEventType,
    UpstreamIntegrationFailure,
)
from src.listener.event_router import (
    EventRouter,
    EventType,
    IngestionFlow,
    IngestionState,
    resolve_event_tag,
)
from src.listener.models import NormalizedEnvelope
from src.listener.validation import validate_envelope

TS = 1_700_000_000
CONVERSATION = {"id": "c1", "title": "T", "create_time": TS, "update_time": TS}
MESSAGE = {"id": "m1", "conversation_id": "c1", "role": "user", "content": "hi", "create_time": TS}


def envelope(**body) -> NormalizedEnvelope:
    result = validate_envelope(body)
    assert result.ok, result.errors
    return result.data


@pytest.fixture
def connection():
    return Mock(name="connection")


@pytest.fixture
def repository(connection):
    """Repository double whose transaction() yields a sentinel connection."""
    repo = Mock()
    repo.committed = False

    @asynccontextmanager
    async def transaction():
        yield connection
        repo.committed = True

    repo.transaction = transaction
    repo.upsert_project = AsyncMock(return_value=7)
    repo.upsert_conversation = AsyncMock(return_value=True)
    repo.ensure_conversation = AsyncMock(return_value=True)
    repo.upsert_message = AsyncMock(return_value=True)
    return repo


@pytest.fixture
def event_router(repository):
    return EventRouter(repository, storage_timeout_seconds=5)


class TestEventTypeParsing:
    def test_known_tags(self):
        assert EventType.parse("message.created") is EventType.MESSAGE_CREATED
        assert EventType.parse("conversation.updated") is EventType.CONVERSATION_UPDATED

    @pytest.mark.parametrize("tag", ["something.else", "unknown", ""])
    def test_unknown_tags_raise(self, tag):
        with pytest.raises(UnknownEventType):
            EventType.parse(tag)

    def test_header_wins_over_envelope(self):
        env = envelope(conversation=CONVERSATION, event_type="conversation.updated")
        assert resolve_event_tag("conversation.created", env) == "conversation.created"
        assert resolve_event_tag(None, env) == "conversation.updated"
        assert resolve_event_tag(None, envelope(conversation=CONVERSATION)) == "unknown"


class TestConversationEvents:
    @pytest.mark.asyncio
    async def test_conversation_created(self, event_router, repository, connection):
        result = await event_router.route("conversation.created", envelope(conversation=CONVERSATION))

        assert result == {"status": "conversation_created", "conversationId": "c1"}
        repository.upsert_conversation.assert_awaited_once()
        args = repository.upsert_conversation.await_args.args
        assert args[0] is connection
        assert args[1].conversation_id == "c1"
        assert args[2] is None
        assert repository.committed

    @pytest.mark.asyncio
    async def test_redelivery_reports_update(self, event_router, repository):
        repository.upsert_conversation.return_value = False
        result = await event_router.route("conversation.updated", envelope(conversation=CONVERSATION))
        assert result["status"] == "conversation_updated"

    @pytest.mark.asyncio
    async def test_project_upserted_and_linked(self, event_router, repository, connection):
        env = envelope(conversation=CONVERSATION, project={"name": "Alpha"})
        await event_router.route("conversation.created", env)

        repository.upsert_project.assert_awaited_once()
        assert repository.upsert_conversation.await_args.args[2] == 7

    @pytest.mark.asyncio
    async def test_conversation_event_without_conversation_is_invalid(
        self, event_router, repository
    ):
        with pytest.raises(InvalidPayload) as exc_info:
            await event_router.route("conversation.created", envelope(message=MESSAGE))
        assert exc_info.value.details[0]["field"] == "conversation"
        repository.upsert_conversation.assert_not_awaited()


class TestMessageEvents:
    @pytest.mark.asyncio
    async def test_message_with_embedded_conversation(self, event_router, repository):
        """Message-first delivery creates the conversation and then the message."""
        env = envelope(conversation=CONVERSATION, message=MESSAGE)
        result = await event_router.route("message.created", env)

        assert result == {"status": "message_created", "messageId": "m1"}
        repository.upsert_conversation.assert_awaited_once()
        repository.ensure_conversation.assert_not_awaited()
        message = repository.upsert_message.await_args.args[1]
        assert message.conversation_id == "c1"
        assert message.content.stored == "hi"

    @pytest.mark.asyncio
    async def test_message_without_conversation_synthesizes_placeholder(
        self, event_router, repository
    ):
        await event_router.route("message.created", envelope(message=MESSAGE))

        placeholder = repository.ensure_conversation.await_args.args[1]
        assert placeholder.conversation_id == "c1"
        assert placeholder.title == "Untitled"
        repository.upsert_message.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_conversation_written_before_message(self, event_router, repository):
        calls = []
        repository.upsert_conversation.side_effect = lambda *a: calls.append("conversation") or True
        repository.upsert_message.side_effect = lambda *a: calls.append("message") or True

        await event_router.route(
            "message.created", envelope(conversation=CONVERSATION, message=MESSAGE)
        )
        assert calls == ["conversation", "message"]

    @pytest.mark.asyncio
    async def test_redelivered_message_reports_update(self, event_router, repository):
        repository.upsert_message.return_value = False
        result = await event_router.route("message.updated", envelope(message=MESSAGE))
        assert result["status"] == "message_updated"

    @pytest.mark.asyncio
    async def test_message_event_without_message_is_invalid(self, event_router):
        with pytest.raises(InvalidPayload):
            await event_router.route("message.created", envelope(conversation=CONVERSATION))


class TestUnknownEvents:
    @pytest.mark.asyncio
    async def test_unknown_event_ignored_without_writes(self, event_router, repository):
        result = await event_router.route(
            "something.else", envelope(conversation=CONVERSATION, message=MESSAGE)
        )

        assert result == {"status": "ignored", "eventType": "something.else"}
        repository.upsert_project.assert_not_awaited()
        repository.upsert_conversation.assert_not_awaited()
        repository.upsert_message.assert_not_awaited()
        assert not repository.committed


class TestStorageFailures:
    @pytest.mark.asyncio
    async def test_connection_error_becomes_storage_unavailable(self, event_router, repository):
        repository.upsert_conversation.side_effect = ConnectionRefusedError("db down")
        with pytest.raises(StorageUnavailable):
            await event_router.route("conversation.created", envelope(conversation=CONVERSATION))

    @pytest.mark.asyncio
    async def test_slow_storage_times_out(self, repository):
        async def hang(*args):
            await asyncio.sleep(5)

        repository.upsert_conversation.side_effect = hang
        event_router = EventRouter(repository, storage_timeout_seconds=0.01)
        with pytest.raises(StorageUnavailable):
            await event_router.route("conversation.created", envelope(conversation=CONVERSATION))


class TestMirrorOnIngest:
    @pytest.mark.asyncio
    async def test_mirror_called_after_commit(self, repository):
        mirror = AsyncMock()
        event_router = EventRouter(repository, message_mirror=mirror)
        await event_router.route("message.created", envelope(message=MESSAGE))

        mirror.assert_awaited_once()
        assert mirror.await_args.args[0].id == "m1"
        assert repository.committed

    @pytest.mark.asyncio
    async def test_mirror_failure_does_not_fail_ingestion(self, repository):
        mirror = AsyncMock(side_effect=UpstreamIntegrationFailure("boom"))
        event_router = EventRouter(repository, message_mirror=mirror)
        result = await event_router.route("message.created", envelope(message=MESSAGE))

        assert result["status"] == "message_created"
        assert repository.committed

    @pytest.mark.parametrize(
        "error",
        [
            asyncpg.exceptions.UndefinedTableError('relation "conversations" does not exist'),
            RuntimeError("unexpected client failure"),
        ],
    )
    @pytest.mark.asyncio
    async def test_unexpected_mirror_errors_are_logged(self, repository, error):
        mirror = AsyncMock(side_effect=error)
        event_router = EventRouter(repository, message_mirror=mirror)
        with patch("src.listener.event_router.logger") as mock_logger:
            result = await event_router.route("message.created", envelope(message=MESSAGE))

        assert result == {"status": "message_created", "messageId": "m1"}
        assert repository.committed
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args.kwargs["error"] == str(error)

    @pytest.mark.asyncio
    async def test_conversation_event_mirror_failure_keeps_result(self, repository):
        mirror = AsyncMock(side_effect=KeyError("openai_thread_id"))
        event_router = EventRouter(repository, message_mirror=mirror)
        result = await event_router.route(
            "conversation.updated", envelope(conversation=CONVERSATION, message=MESSAGE)
        )

        assert result["status"] == "conversation_created"
        assert result["messageId"] == "m1"


class TestIngestionFlow:
    def test_happy_path(self):
        flow = IngestionFlow()
        for state in (
            IngestionState.VALIDATED,
            IngestionState.ROUTED,
            IngestionState.PERSISTED,
            IngestionState.RESPONDED,
        ):
            flow.advance(state)
        assert flow.history[0] is IngestionState.RECEIVED
        assert flow.state is IngestionState.RESPONDED

    def test_cannot_skip_validation(self):
        with pytest.raises(RuntimeError):
            IngestionFlow().advance(IngestionState.ROUTED)

    def test_auth_failure_rejects(self):
        flow = IngestionFlow()
        flow.fail(BadSignature())
        assert flow.state is IngestionState.REJECTED

    def test_storage_failure_after_routing_fails(self):
        flow = IngestionFlow()
        flow.advance(IngestionState.VALIDATED)
        flow.advance(IngestionState.ROUTED)
        flow.fail(StorageUnavailable())
        assert flow.state is IngestionState.FAILED

    def test_invalid_routed_payload_rejects(self):
        flow = IngestionFlow()
        flow.advance(IngestionState.VALIDATED)
        flow.advance(IngestionState.ROUTED)
        flow.fail(InvalidPayload([]))
        assert flow.state is IngestionState.REJECTED

"""Mirror stored conversations into OpenAI threads.

Runs are polled until they finish, with a bounded number of attempts. Every
OpenAI error is raised as UpstreamIntegrationFailure so callers can keep it
apart from local storage failures.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import openai
from openai import AsyncOpenAI

from src.listener.errors import NotFound, UpstreamIntegrationFailure, UpstreamTimeout
from src.listener.models import (
    DEFAULT_MODEL,
    ConversationRecord,
    MessageRecord,
    MessageRole,
    TextContent,
)
from src.listener.repositories.chat_repository import ChatRepository, storage_errors
from src.utils.logging import get_logger

logger = get_logger(__name__)

MIRRORED_ROLES = (MessageRole.USER, MessageRole.ASSISTANT)
PENDING_RUN_STATUSES = ("queued", "in_progress", "cancelling")
NEW_THREAD_TITLE = "New Conversation"


@dataclass
class AssistantReply:
    message_id: str
    text: str


@asynccontextmanager
async def upstream_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except openai.OpenAIError as e:
        logger.error("OpenAI request failed", operation=operation, error=str(e))
        raise UpstreamIntegrationFailure(f"OpenAI {operation} failed") from e


class ThreadMirror:
    """Creates threads, posts messages and waits for assistant runs."""

    def __init__(
        self,
        client: AsyncOpenAI | None,
        repository: ChatRepository,
        model: str = DEFAULT_MODEL,
        assistant_id: str | None = None,
        poll_interval_seconds: float = 1.0,
        max_poll_attempts: int = 60,
    ):
        self.client = client
        self.repository = repository
        self.model = model
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self._assistant_id = assistant_id

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    def _require_client(self) -> AsyncOpenAI:
        if self.client is None:
            raise UpstreamIntegrationFailure("OpenAI integration is not configured")
        return self.client

    async def create_thread(self, metadata: dict[str, str] | None = None) -> str:
        client = self._require_client()
        async with upstream_errors("create_thread"):
            thread = await client.beta.threads.create(metadata=metadata or {})
        logger.info("Created OpenAI thread", thread_id=thread.id)
        return thread.id

    async def post_message(self, thread_id: str, content: str, role: str = "user") -> str:
        client = self._require_client()
        async with upstream_errors("post_message"):
            message = await client.beta.threads.messages.create(
                thread_id, role=role, content=content
            )
        return message.id

    async def get_assistant_id(self) -> str:
        """Configured assistant, else the first one on the account, else a new one."""
        if self._assistant_id:
            return self._assistant_id
        client = self._require_client()
        async with upstream_errors("resolve_assistant"):
            assistants = await client.beta.assistants.list(limit=1)
            if assistants.data:
                self._assistant_id = assistants.data[0].id
            else:
                assistant = await client.beta.assistants.create(
                    model=self.model,
                    name="Chat Listener",
                    instructions="You are a helpful assistant.",
                )
                self._assistant_id = assistant.id
        return self._assistant_id

    async def run_and_wait(self, thread_id: str) -> AssistantReply:
        """Start a run on ``thread_id`` and poll it to completion.

        Returns:
            The newest assistant message

        Raises:
            UpstreamTimeout: the run did not finish within max_poll_attempts
            UpstreamIntegrationFailure: the run ended in a non-completed state
        """
        client = self._require_client()
        assistant_id = await self.get_assistant_id()
        async with upstream_errors("create_run"):
            run = await client.beta.threads.runs.create(thread_id=thread_id, assistant_id=assistant_id)

        for attempt in range(self.max_poll_attempts):
            if run.status == "completed":
                return await self._latest_assistant_reply(thread_id)
            if run.status not in PENDING_RUN_STATUSES:
                raise UpstreamIntegrationFailure(f"Run ended with status: {run.status}")

            await asyncio.sleep(self.poll_interval_seconds)
            async with upstream_errors("retrieve_run"):
                run = await client.beta.threads.runs.retrieve(run.id, thread_id=thread_id)
            logger.debug("Polled run", run_id=run.id, status=run.status, attempt=attempt + 1)

        if run.status == "completed":
            return await self._latest_assistant_reply(thread_id)

        await self._cancel_run(thread_id, run.id)
        raise UpstreamTimeout()

    async def _cancel_run(self, thread_id: str, run_id: str) -> None:
        client = self._require_client()
        try:
            await client.beta.threads.runs.cancel(run_id, thread_id=thread_id)
        except openai.OpenAIError as e:
            logger.warning("Failed to cancel timed out run", run_id=run_id, error=str(e))

    async def _latest_assistant_reply(self, thread_id: str) -> AssistantReply:
        client = self._require_client()
        async with upstream_errors("list_messages"):
            page = await client.beta.threads.messages.list(thread_id, order="desc", limit=1)
        for message in page.data:
            if message.role != "assistant":
                continue
            texts = [block.text.value for block in message.content if block.type == "text"]
            if texts:
                return AssistantReply(message.id, "\n".join(texts))
        raise UpstreamIntegrationFailure("Run completed without an assistant reply")

    async def ensure_thread(self, conversation_id: str) -> str:
        """Thread id for a stored conversation, creating and recording one if needed."""
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if conversation["openai_thread_id"]:
            return conversation["openai_thread_id"]

        thread_id = await self.create_thread({"conversation_id": conversation_id})
        await self.repository.set_thread_id(conversation_id, thread_id)
        return thread_id

    async def mirror_message(self, message: MessageRecord) -> None:
        """Post one ingested message to its conversation's thread."""
        if message.role not in MIRRORED_ROLES:
            return
        thread_id = await self.ensure_thread(message.conversation_id)
        await self.post_message(thread_id, message.content.stored, message.role.value)
        logger.info("Mirrored message", message_id=message.id, thread_id=thread_id)

    async def mirror_conversation(self, conversation_id: str) -> str:
        """Create a thread for a conversation that has none and replay its messages."""
        thread_id = await self.create_thread({"conversation_id": conversation_id})
        await self.repository.set_thread_id(conversation_id, thread_id)

        offset = 0
        while True:
            messages = await self.repository.list_messages(conversation_id, limit=100, offset=offset)
            for message in messages:
                if message["role"] in MIRRORED_ROLES:
                    await self.post_message(thread_id, message["content"], message["role"])
            if len(messages) < 100:
                break
            offset += len(messages)

        logger.info("Mirrored conversation", conversation_id=conversation_id, thread_id=thread_id)
        return thread_id

    async def sync_pending(self, limit: int = 10) -> dict[str, int]:
        """Mirror up to ``limit`` conversations that have no thread yet."""
        conversation_ids = await self.repository.conversations_without_thread(limit)
        synced = failed = 0
        for conversation_id in conversation_ids:
            try:
                await self.mirror_conversation(conversation_id)
                synced += 1
            except UpstreamIntegrationFailure as e:
                failed += 1
                logger.error("Conversation sync failed", conversation_id=conversation_id, error=e.message)
        logger.info("Thread sync finished", synced=synced, failed=failed)
        return {"synced": synced, "failed": failed}

    async def start_conversation(
        self,
        title: str | None = None,
        project_id: str | None = None,
        initial_message: str | None = None,
    ) -> dict[str, Any]:
        """Open a new thread and store it locally as a conversation keyed by the thread id."""
        metadata = {"project_id": project_id} if project_id else {}
        thread_id = await self.create_thread(metadata)
        now = datetime.now(UTC)
        record = ConversationRecord(
            conversation_id=thread_id,
            title=title or NEW_THREAD_TITLE,
            model=self.model,
            create_time=now,
            update_time=now,
            chatgpt_project_id=project_id,
            openai_thread_id=thread_id,
        )
        async with storage_errors("start_conversation"), self.repository.transaction() as conn:
            await self.repository.upsert_conversation(conn, record)

        if initial_message:
            await self.add_thread_message(thread_id, initial_message, "user")
        return {"conversationId": thread_id, "threadId": thread_id, "projectId": project_id}

    async def add_thread_message(self, thread_id: str, content: str, role: str) -> dict[str, Any]:
        """Post to a thread and store the message under the matching conversation."""
        conversation = await self.repository.get_conversation_by_thread(thread_id)
        if conversation is None:
            raise NotFound("Conversation not found")

        message_id = await self.post_message(thread_id, content, role)
        await self._store_thread_message(conversation["conversation_id"], message_id, content, role)
        return {"id": message_id, "content": content, "role": role}

    async def reply(self, thread_id: str) -> dict[str, str]:
        """Run the assistant on a thread and store its reply locally."""
        conversation = await self.repository.get_conversation_by_thread(thread_id)
        if conversation is None:
            raise NotFound("Conversation not found")

        reply = await self.run_and_wait(thread_id)
        await self._store_thread_message(
            conversation["conversation_id"], reply.message_id, reply.text, "assistant"
        )
        return {"id": reply.message_id, "content": reply.text, "role": "assistant"}

    async def _store_thread_message(
        self, conversation_id: str, message_id: str, content: str, role: str
    ) -> None:
        record = MessageRecord(
            id=message_id,
            conversation_id=conversation_id,
            role=MessageRole(role),
            content=TextContent(content),
            create_time=datetime.now(UTC),
            author_name="User" if role == "user" else "Assistant",
        )
        async with storage_errors("store_thread_message"), self.repository.transaction() as conn:
            await self.repository.upsert_message(conn, record)

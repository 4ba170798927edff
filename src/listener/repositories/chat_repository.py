"""Repository for projects, conversations and messages.

Every write is a single INSERT ... ON CONFLICT statement keyed by the natural
identity (project name, conversation_id, message id), so concurrent deliveries
of the same entity resolve inside Postgres instead of racing a read-then-write.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import asyncpg

from src.listener.errors import StorageUnavailable
from src.listener.models import ConversationRecord, MessageRecord, ProjectRecord
from src.utils.logging import get_logger

logger = get_logger(__name__)

# Report queries skip messages this short; they are usually "ok"/"hi" noise
MIN_SEARCH_CONTENT_LENGTH = 4
MAX_SEARCH_LIMIT = 1000

_CONNECTIVITY_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.InterfaceError,
)


@asynccontextmanager
async def storage_errors(operation: str) -> AsyncIterator[None]:
    """Translate connectivity failures and timeouts into StorageUnavailable."""
    try:
        yield
    except _CONNECTIVITY_ERRORS as e:
        logger.error("Storage unavailable", operation=operation, error=repr(e))
        raise StorageUnavailable() from e


@dataclass
class MessageSearchFilters:
    project: str | None = None
    query: str | None = None
    role: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = 100


class ChatRepository:
    """Conversation store on top of an injected asyncpg pool."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and open a transaction; rolls back on any error."""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def upsert_project(self, conn: asyncpg.Connection, project: ProjectRecord) -> int:
        """Insert a project or refresh its description and external id.

        name and is_starred are left alone on conflict.

        Returns:
            The project's row id
        """
        return await conn.fetchval(
            """
            INSERT INTO projects (name, description, is_starred, chatgpt_project_id)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (name) DO UPDATE SET
                description = EXCLUDED.description,
                chatgpt_project_id = EXCLUDED.chatgpt_project_id,
                updated_at = NOW()
            RETURNING id
            """,
            project.name,
            project.description,
            project.is_starred,
            project.chatgpt_project_id,
        )

    async def upsert_conversation(
        self,
        conn: asyncpg.Connection,
        conversation: ConversationRecord,
        project_row_id: int | None = None,
    ) -> bool:
        """Insert a conversation or update it in place.

        Title, model and update_time take the latest delivery's values.
        Project linkage follows the latest delivery as well. create_time keeps
        the first delivery's value, and openai_thread_id is only replaced by a
        non-null value since the mirror sets it and webhooks never carry it.

        Returns:
            True if the row was inserted, False if an existing row was updated
        """
        return await conn.fetchval(
            """
            INSERT INTO conversations
                (conversation_id, title, model, create_time, update_time, project_id, openai_thread_id)
            VALUES (
                $1, $2, $3, $4, $5,
                COALESCE($6::bigint, (SELECT id FROM projects WHERE chatgpt_project_id = $7::text LIMIT 1)),
                $8
            )
            ON CONFLICT (conversation_id) DO UPDATE SET
                title = EXCLUDED.title,
                model = EXCLUDED.model,
                update_time = EXCLUDED.update_time,
                project_id = EXCLUDED.project_id,
                openai_thread_id = COALESCE(EXCLUDED.openai_thread_id, conversations.openai_thread_id),
                updated_at = NOW()
            RETURNING (xmax = 0) AS inserted
            """,
            conversation.conversation_id,
            conversation.title,
            conversation.model,
            conversation.create_time,
            conversation.update_time,
            project_row_id,
            conversation.chatgpt_project_id,
            conversation.openai_thread_id,
        )

    async def ensure_conversation(
        self, conn: asyncpg.Connection, conversation: ConversationRecord
    ) -> bool:
        """Insert the conversation only if it does not exist yet.

        Returns:
            True if a row was created
        """
        inserted = await conn.fetchval(
            """
            INSERT INTO conversations (conversation_id, title, model, create_time, update_time)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (conversation_id) DO NOTHING
            RETURNING conversation_id
            """,
            conversation.conversation_id,
            conversation.title,
            conversation.model,
            conversation.create_time,
            conversation.update_time,
        )
        return inserted is not None

    async def upsert_message(self, conn: asyncpg.Connection, message: MessageRecord) -> bool:
        """Insert a message or update it in place. create_time is never overwritten.

        Returns:
            True if the row was inserted
        """
        return await conn.fetchval(
            """
            INSERT INTO messages
                (id, conversation_id, role, content, content_type, parts, create_time, parent, children, author_name)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9::jsonb, $10)
            ON CONFLICT (id) DO UPDATE SET
                role = EXCLUDED.role,
                content = EXCLUDED.content,
                content_type = EXCLUDED.content_type,
                parts = EXCLUDED.parts,
                parent = EXCLUDED.parent,
                children = EXCLUDED.children,
                author_name = EXCLUDED.author_name,
                updated_at = NOW()
            RETURNING (xmax = 0) AS inserted
            """,
            message.id,
            message.conversation_id,
            message.role.value,
            message.content.stored,
            message.content.content_type,
            message.parts,
            message.create_time,
            message.parent,
            json.dumps(message.children) if message.children is not None else None,
            message.author_name,
        )

    async def set_thread_id(self, conversation_id: str, thread_id: str) -> None:
        async with storage_errors("set_thread_id"), self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE conversations SET openai_thread_id = $2, updated_at = NOW()
                WHERE conversation_id = $1
                """,
                conversation_id,
                thread_id,
            )

    async def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        async with storage_errors("get_conversation"), self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT c.conversation_id, c.title, c.model, c.create_time, c.update_time,
                       c.openai_thread_id, p.name AS project_name
                FROM conversations c
                LEFT JOIN projects p ON p.id = c.project_id
                WHERE c.conversation_id = $1
                """,
                conversation_id,
            )
        return _row_to_dict(row) if row else None

    async def get_conversation_by_thread(self, thread_id: str) -> dict[str, Any] | None:
        async with storage_errors("get_conversation_by_thread"), self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT conversation_id, title, model, create_time, update_time, openai_thread_id
                FROM conversations WHERE openai_thread_id = $1
                """,
                thread_id,
            )
        return _row_to_dict(row) if row else None

    async def list_messages(
        self, conversation_id: str, limit: int = 100, offset: int = 0
    ) -> list[dict[str, Any]]:
        """Messages of a conversation in creation order."""
        async with storage_errors("list_messages"), self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, conversation_id, role, content, content_type, parts, create_time,
                       parent, children, author_name
                FROM messages
                WHERE conversation_id = $1
                ORDER BY create_time ASC, id ASC
                LIMIT $2 OFFSET $3
                """,
                conversation_id,
                limit,
                offset,
            )
        return [_row_to_dict(row) for row in rows]

    async def conversations_without_thread(self, limit: int = 10) -> list[str]:
        async with storage_errors("conversations_without_thread"), self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT conversation_id FROM conversations
                WHERE openai_thread_id IS NULL
                ORDER BY update_time DESC
                LIMIT $1
                """,
                limit,
            )
        return [row["conversation_id"] for row in rows]

    async def search_messages(self, filters: MessageSearchFilters) -> list[dict[str, Any]]:
        """Report query across messages joined with their conversation and project."""
        conditions = [f"LENGTH(TRIM(m.content)) >= {MIN_SEARCH_CONTENT_LENGTH}"]
        params: list[Any] = []

        def add(condition: str, value: Any) -> None:
            params.append(value)
            conditions.append(condition.format(n=len(params)))

        if filters.project:
            add("p.name = ${n}", filters.project)
        if filters.query:
            add(
                "(m.content ILIKE ${n} OR c.title ILIKE ${n} OR p.name ILIKE ${n})",
                f"%{filters.query}%",
            )
        if filters.role:
            add("m.role = ${n}", filters.role)
        if filters.date_from:
            add("m.create_time >= ${n}", filters.date_from)
        if filters.date_to:
            add("m.create_time <= ${n}", filters.date_to)

        params.append(max(1, min(filters.limit, MAX_SEARCH_LIMIT)))
        sql = f"""
            SELECT m.id, m.conversation_id, m.role, m.content, m.create_time, m.author_name,
                   c.title AS conversation_title, p.name AS project_name
            FROM messages m
            JOIN conversations c ON c.conversation_id = m.conversation_id
            LEFT JOIN projects p ON p.id = c.project_id
            WHERE {" AND ".join(conditions)}
            ORDER BY m.create_time DESC
            LIMIT ${len(params)}
        """

        async with storage_errors("search_messages"), self.db_pool.acquire() as conn:
            rows = await conn.fetch(sql, *params)
        return [_row_to_dict(row) for row in rows]


def _row_to_dict(row: Any) -> dict[str, Any]:
    result = dict(row)
    for key, value in result.items():
        if isinstance(value, datetime):
            result[key] = value.astimezone(UTC).isoformat()
    return result

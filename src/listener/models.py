"""Pydantic models and normalized records for the listener.

Inbound payload models tolerate unknown fields (extra="allow") so upstream
additions never fail validation. Records are what the validator hands to the
router and the repository: timestamps converted to datetimes and message
content resolved into a single stored representation.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat

DEFAULT_MODEL = "gpt-4"
UNTITLED = "Untitled"

JsonValue = str | dict[str, Any] | list[Any]


# Inbound payloads


class AuthorPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    role: str | None = None


class ConversationPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    model: str = DEFAULT_MODEL
    create_time: StrictFloat
    update_time: StrictFloat
    project_id: str | None = None
    openai_thread_id: str | None = None


class MessagePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    conversation_id: str
    role: Literal["user", "assistant", "system"]
    content: JsonValue | None = None
    parts: JsonValue | None = None
    create_time: StrictFloat
    parent: str | None = None
    children: list[str] | None = None
    author: AuthorPayload | None = None


class ProjectPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str
    description: str | None = None
    is_starred: StrictBool = False
    chatgpt_project_id: str | None = None


class WebhookEnvelope(BaseModel):
    """Top-level webhook body. ``conversation`` is required unless ``message`` is present."""

    model_config = ConfigDict(extra="allow")

    conversation: ConversationPayload | None = None
    message: MessagePayload | None = None
    project: ProjectPayload | None = None
    event_type: str | None = None
    timestamp: StrictFloat | None = None


class ManualSyncRequest(BaseModel):
    type: Literal["conversation", "message"]
    data: dict[str, Any]


class CreateThreadRequest(BaseModel):
    project_id: str | None = Field(default=None, alias="projectId")
    initial_message: str | None = Field(default=None, alias="initialMessage")
    title: str | None = None


class PostThreadMessageRequest(BaseModel):
    message: str = Field(min_length=1)
    role: Literal["user", "assistant"] = "user"


# Normalized records


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass(frozen=True)
class TextContent:
    text: str

    content_type = "text"

    @property
    def stored(self) -> str:
        return self.text


@dataclass(frozen=True)
class StructuredContent:
    """Content that arrived as a JSON object or array, kept in serialized form."""

    serialized: str

    content_type = "json"

    @property
    def stored(self) -> str:
        return self.serialized

    @classmethod
    def from_value(cls, value: Any) -> "StructuredContent":
        return cls(json.dumps(value, ensure_ascii=False))


MessageContent = TextContent | StructuredContent


@dataclass
class ProjectRecord:
    name: str
    description: str | None = None
    is_starred: bool = False
    chatgpt_project_id: str | None = None


@dataclass
class ConversationRecord:
    conversation_id: str
    title: str
    model: str
    create_time: datetime
    update_time: datetime
    chatgpt_project_id: str | None = None
    openai_thread_id: str | None = None

    @classmethod
    def placeholder(cls, conversation_id: str, created: datetime) -> "ConversationRecord":
        """Stand-in row for a message whose conversation has not been delivered yet."""
        return cls(
            conversation_id=conversation_id,
            title=UNTITLED,
            model=DEFAULT_MODEL,
            create_time=created,
            update_time=created,
        )


@dataclass
class MessageRecord:
    id: str
    conversation_id: str
    role: MessageRole
    content: MessageContent
    create_time: datetime
    parts: str | None = None
    parent: str | None = None
    children: list[str] | None = None
    author_name: str | None = None


@dataclass
class NormalizedEnvelope:
    event_type: str | None = None
    project: ProjectRecord | None = None
    conversation: ConversationRecord | None = None
    message: MessageRecord | None = None
    extra: dict[str, Any] = field(default_factory=dict)


# Responses


class WebhookResponse(BaseModel):
    status: Literal["success"] = "success"
    eventType: str
    result: dict[str, Any]
    timestamp: str

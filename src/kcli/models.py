"""Data models for chats, messages and the records kept in JSONL stores."""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant", "system", "tool"]

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
ROLE_TOOL = "tool"

DEFAULT_CONTENT_TYPE = "text"


def now() -> datetime:
    """Current local time with its UTC offset."""
    return datetime.now().astimezone()


def unix_millis() -> int:
    return int(time.time() * 1000)


def generate_chat_id() -> str:
    """Short chat identifier: the first 6 hex characters of a uuid4."""
    return uuid.uuid4().hex[:6]


class ContentPart(BaseModel):
    type: str = DEFAULT_CONTENT_TYPE
    text: str = ""
    cache_control: dict[str, Any] | None = None


class Message(BaseModel):
    role: Role
    # Either plain text or a list of typed parts; the same field on disk.
    content: str | list[ContentPart] = ""

    timestamp: datetime | None = None
    unix_timestamp: int | None = None

    reasoning_content: str | None = None
    reasoning_effort: str | None = None
    links: list[str] | None = None
    images: list[str] | None = None
    model: str | None = None
    provider: str | None = None
    id: str | None = None
    parent_id: str | None = None
    server: str | None = None
    tool: str | None = None
    arguments: dict[str, Any] | None = None

    @classmethod
    def create(cls, role: str, content: str | list[ContentPart], **options: Any) -> Message:
        """Build a message stamped with the current time.

        Options left empty (``None``, ``""``) are dropped so they stay out of
        the serialized record.
        """
        extra = {key: value for key, value in options.items() if value not in (None, "")}
        return cls(
            role=role,
            content=content,
            timestamp=now(),
            unix_timestamp=unix_millis(),
            **extra,
        )

    def text(self) -> str:
        """Plain text of the message, joining text parts with newlines."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text for part in self.content if part.type == DEFAULT_CONTENT_TYPE)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ChatRecord(BaseModel):
    id: str
    create_time: datetime = Field(default_factory=now)
    update_time: datetime = Field(default_factory=now)
    messages: list[Message] = Field(
        default_factory=list,
        validation_alias=AliasChoices("messages", "Messages"),
    )

    @field_validator("create_time", "update_time")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        # Naive values are read as local time so records stay comparable.
        return value if value.tzinfo is not None else value.astimezone()

    @field_validator("messages")
    @classmethod
    def _drop_system_messages(cls, messages: list[Message]) -> list[Message]:
        return [m for m in messages if m.role != ROLE_SYSTEM]

    @classmethod
    def new(cls, messages: list[Message], chat_id: str | None = None) -> ChatRecord:
        stamp = now()
        return cls(
            id=chat_id or generate_chat_id(),
            create_time=stamp,
            update_time=stamp,
            messages=list(messages),
        )

    def update_messages(self, messages: list[Message]) -> None:
        """Replace the messages wholesale, without system messages."""
        self.messages = [m for m in messages if m.role != ROLE_SYSTEM]
        self.update_time = now()

    def to_json_line(self) -> str:
        return self.model_dump_json(exclude_none=True)


class PromptItem(BaseModel):
    name: str
    content: str
    description: str | None = None


class MCPServerItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: Literal["stdio", "sse", "streamableHttp"] = "stdio"
    is_active: bool = Field(default=True, alias="isActive")
    description: str | None = None
    base_url: str | None = Field(default=None, alias="baseUrl")
    command: str | None = None
    args: list[str] = []
    env: dict[str, str] | None = None
    auto_confirm: list[str] = Field(default_factory=list, alias="autoConfirm")

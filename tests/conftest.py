"""Shared pytest fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from kcli.models import ChatRecord, ContentPart, Message

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_chat(
    chat_id: str,
    text: str = "hello there",
    model: str | None = None,
    provider: str | None = None,
    minutes: int = 0,
) -> ChatRecord:
    stamp = BASE_TIME + timedelta(minutes=minutes)
    return ChatRecord(
        id=chat_id,
        create_time=stamp,
        update_time=stamp,
        messages=[
            Message(role="user", content=text),
            Message(role="assistant", content="ok", model=model, provider=provider),
        ],
    )


@pytest.fixture
def chats_path(tmp_path):
    return tmp_path / "data" / "chats.jsonl"


@pytest.fixture
def parts_message() -> Message:
    return Message(
        role="user",
        content=[
            ContentPart(text="first part"),
            ContentPart(text="Second HELLO part", cache_control={"type": "ephemeral"}),
        ],
    )

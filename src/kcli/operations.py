"""Typed operations accepted by the chat store's worker queue."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Union

from .config import DEFAULT_LIST_LIMIT
from .models import ChatRecord


@dataclass(frozen=True)
class ListChats:
    keyword: str | None = None
    model: str | None = None
    provider: str | None = None
    limit: int = DEFAULT_LIST_LIMIT


@dataclass(frozen=True)
class GetChat:
    chat_id: str


@dataclass(frozen=True)
class AddChat:
    chat: ChatRecord


@dataclass(frozen=True)
class UpdateChat:
    chat: ChatRecord


@dataclass(frozen=True)
class DeleteChat:
    chat_id: str


Operation = Union[ListChats, GetChat, AddChat, UpdateChat, DeleteChat]


@dataclass
class OperationResponse:
    """Outcome of one operation: a value or an error, never both."""

    value: Any = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


@dataclass
class OperationRequest:
    operation: Operation
    future: asyncio.Future[OperationResponse] = field(repr=False)

    def respond(self, response: OperationResponse) -> bool:
        """Deliver the response once. Returns False if the caller already went away."""
        if self.future.done():
            return False
        self.future.set_result(response)
        return True

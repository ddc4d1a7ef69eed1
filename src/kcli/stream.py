"""Decode streamed chat-completion bodies into discrete content events."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Callable, Protocol

import httpx

from .errors import StreamCancelledError, StreamError


@dataclass(slots=True)
class StreamEvent:
    """One decoded increment of a live model response."""

    id: str = ""
    model: str = ""
    content: str = ""
    done: bool = False
    error: Exception | None = None


class ContentPolicy(str, Enum):
    """Which delta field becomes the visible content.

    PREFER_CONTENT is a presentation preference carried over from earlier
    clients, not something the provider protocols require: content wins when
    non-empty, otherwise the reasoning field is shown.
    """

    PREFER_CONTENT = "prefer_content"
    CONTENT_ONLY = "content_only"
    REASONING_ONLY = "reasoning_only"

    def pick(self, content: str | None, reasoning: str | None) -> str:
        content = content or ""
        reasoning = reasoning or ""
        if self is ContentPolicy.CONTENT_ONLY:
            return content
        if self is ContentPolicy.REASONING_ONLY:
            return reasoning
        return content if content else reasoning


class WireFormat(Protocol):
    def frame(self, line: str) -> str | None:
        """Payload of a line, or None when the line carries no data."""

    def is_sentinel(self, data: str) -> bool: ...

    def parse(self, data: str) -> StreamEvent | None:
        """Decode one payload. Raises ValueError when it is malformed."""


def _loads_object(data: str) -> dict[str, Any]:
    payload = json.loads(data)  # JSONDecodeError is a ValueError
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


class OpenAIWireFormat:
    """Server-sent events from /v1/chat/completions."""

    prefix = "data: "
    sentinel = "[DONE]"

    def __init__(self, policy: ContentPolicy = ContentPolicy.PREFER_CONTENT):
        self.policy = policy

    def frame(self, line: str) -> str | None:
        if not line or not line.startswith(self.prefix):
            return None
        return line[len(self.prefix):].strip()

    def is_sentinel(self, data: str) -> bool:
        return data == self.sentinel

    def parse(self, data: str) -> StreamEvent | None:
        payload = _loads_object(data)
        choices = payload.get("choices") or []
        if not choices:
            return None

        choice = choices[0] or {}
        delta = choice.get("delta") or {}
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        return StreamEvent(
            id=payload.get("id") or "",
            model=payload.get("model") or "",
            content=self.policy.pick(delta.get("content"), reasoning),
            done=bool(choice.get("finish_reason")),
        )


class OllamaWireFormat:
    """Newline-delimited JSON from /api/chat."""

    def __init__(self, policy: ContentPolicy = ContentPolicy.PREFER_CONTENT):
        self.policy = policy

    def frame(self, line: str) -> str | None:
        line = line.strip()
        return line or None

    def is_sentinel(self, data: str) -> bool:
        return False

    def parse(self, data: str) -> StreamEvent | None:
        payload = _loads_object(data)
        message = payload.get("message") or {}
        content = message.get("content")
        if content is not None and not isinstance(content, str):
            content = str(content)
        return StreamEvent(
            model=payload.get("model") or "",
            content=self.policy.pick(content, message.get("thinking")),
            done=bool(payload.get("done")),
        )


class StreamDecoder:
    """Lazy, single-use sequence of StreamEvents for one response body.

    ``lines`` is typically ``httpx.Response.aiter_lines()``. Malformed lines
    are logged and skipped. A read failure or a set ``cancel`` event yields
    one error event and ends the sequence. A terminal event ends it too.
    """

    def __init__(
        self,
        lines: AsyncIterable[str],
        wire_format: WireFormat,
        cancel: asyncio.Event | None = None,
        logger: logging.Logger | None = None,
    ):
        self._lines = lines
        self._format = wire_format
        self._cancel = cancel
        self.log = logger or logging.getLogger(__name__)
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise StreamError("stream decoder can only be iterated once")
        self._consumed = True
        return self._events()

    async def _events(self) -> AsyncIterator[StreamEvent]:
        lines = aiter(self._lines)
        line_count = 0
        last_id = last_model = ""

        while True:
            try:
                line = await self._next_line(lines)
            except StopAsyncIteration:
                self.log.debug("Stream body exhausted after %d lines", line_count)
                return
            except StreamCancelledError as exc:
                self.log.info("Stream cancelled after %d lines", line_count)
                yield StreamEvent(id=last_id, model=last_model, error=exc)
                return
            except (httpx.HTTPError, OSError) as exc:
                self.log.error("Error reading response stream: %s", exc)
                yield StreamEvent(
                    id=last_id,
                    model=last_model,
                    error=StreamError(f"error reading response stream: {exc}"),
                )
                return

            line_count += 1
            self.log.debug("Received line %d: %s", line_count, line)

            data = self._format.frame(line)
            if data is None:
                continue

            if self._format.is_sentinel(data):
                self.log.info("Stream marked as done")
                yield StreamEvent(id=last_id, model=last_model, done=True)
                return

            try:
                event = self._format.parse(data)
            except ValueError as exc:
                self.log.error("Error decoding response line %d: %s", line_count, exc)
                continue
            if event is None:
                continue

            last_id = event.id or last_id
            last_model = event.model or last_model
            yield event

            if event.done:
                self.log.info("Stream marked as done")
                return

    async def _next_line(self, lines: AsyncIterator[str]) -> str:
        if self._cancel is None:
            return await anext(lines)
        if self._cancel.is_set():
            raise StreamCancelledError()

        reader = asyncio.ensure_future(_read_next(lines))
        waiter = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            pending = not reader.done()
            if pending:
                reader.cancel()
        if pending or reader.cancelled():
            raise StreamCancelledError()
        line = reader.result()
        if line is None:
            raise StopAsyncIteration
        return line


async def _read_next(lines: AsyncIterator[str]) -> str | None:
    # StopAsyncIteration does not travel well through a Task
    try:
        return await anext(lines)
    except StopAsyncIteration:
        return None


@dataclass(slots=True)
class AssembledReply:
    id: str
    model: str
    content: str


async def assemble_reply(
    events: AsyncIterable[StreamEvent],
    on_content: Callable[[str], None] | None = None,
    logger: logging.Logger | None = None,
) -> AssembledReply | None:
    """Concatenate a stream's content into one reply.

    Empty chunks are skipped rather than read as the end of the stream.
    Returns None when the stream ends before any content arrives or when an
    error event shows up, so a failed stream never yields a truncated reply.
    """
    log = logger or logging.getLogger(__name__)
    parts: list[str] = []
    reply_id = reply_model = ""

    async for event in events:
        if event.error is not None:
            log.error("Stream error: %s", event.error)
            return None

        reply_id = event.id or reply_id
        reply_model = event.model or reply_model

        if event.content:
            if not parts:
                log.info("Received first chunk")
            parts.append(event.content)
            if on_content is not None:
                on_content(event.content)
        elif not parts and not event.done:
            log.debug("Empty chunk, waiting for next")

        if event.done:
            log.info("Stream completed")
            break

    if not parts:
        log.info("Stream closed without content")
        return None
    return AssembledReply(id=reply_id, model=reply_model, content="".join(parts))

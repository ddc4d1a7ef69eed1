"""Chat-completion providers speaking OpenAI- and Ollama-style streaming HTTP."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Callable, Protocol

import httpx

from .config import PROVIDER_OLLAMA, PROVIDER_OPENAI, ClientConfig
from .errors import StreamError
from .models import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_TOOL, ROLE_USER, Message
from .stream import (
    ContentPolicy,
    OllamaWireFormat,
    OpenAIWireFormat,
    StreamDecoder,
    StreamEvent,
    WireFormat,
    assemble_reply,
)

MODEL_CLAUDE_3 = "claude-3"
MODEL_DEEPSEEK_R1 = "deepseek-r1"
MODEL_DEEPSEEK_V31 = "DeepSeek-V3_1"

CACHE_CONTROL_EPHEMERAL = {"type": "ephemeral"}


class Provider(Protocol):
    name: str
    model: str

    def stream_completion(
        self, transcript: list[Message], system_prompt: str | None
    ) -> AsyncIterator[StreamEvent]: ...


class HTTPProvider:
    """Shared request plumbing; subclasses pick the body shape and wire format."""

    name = ""
    default_headers: dict[str, str] = {}

    def __init__(
        self,
        config: ClientConfig,
        client: httpx.AsyncClient | None = None,
        cancel: asyncio.Event | None = None,
        logger: logging.Logger | None = None,
    ):
        self.config = config
        self.model = config.model
        self.reasoning_effort = config.reasoning_effort
        self.cancel = cancel
        self.log = logger or logging.getLogger(__name__)
        self._client = client
        self._owns_client = client is None

    @property
    def url(self) -> str:
        return self.config.base_url.rstrip("/") + (self.config.api_path or "")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def content_policy(self) -> ContentPolicy:
        try:
            return ContentPolicy(self.config.content_policy)
        except ValueError:
            self.log.warning("Unknown content policy %r, using prefer_content", self.config.content_policy)
            return ContentPolicy.PREFER_CONTENT

    def wire_format(self) -> WireFormat:
        raise NotImplementedError

    def headers(self) -> dict[str, str]:
        return dict(self.default_headers)

    def wire_role(self, role: str) -> str:
        return role

    def prepare_messages(self, transcript: list[Message], system_prompt: str | None) -> list[dict[str, Any]]:
        """Wire messages: the system prompt first, then the transcript without timestamps."""
        prepared: list[dict[str, Any]] = []
        if system_prompt:
            prepared.append({"role": ROLE_SYSTEM, "content": system_prompt})

        cache_parts = MODEL_CLAUDE_3 in self.model
        for message in transcript:
            if isinstance(message.content, str):
                content: Any = message.content
            else:
                content = []
                for part in message.content:
                    wire_part: dict[str, Any] = {"type": part.type, "text": part.text}
                    if cache_parts and part.type == "text":
                        wire_part["cache_control"] = dict(CACHE_CONTROL_EPHEMERAL)
                    content.append(wire_part)
            prepared.append({"role": self.wire_role(message.role), "content": content})
        return prepared

    def build_body(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        return {"model": self.model, "messages": messages, "stream": True}

    async def stream_completion(
        self, transcript: list[Message], system_prompt: str | None
    ) -> AsyncIterator[StreamEvent]:
        body = self.build_body(self.prepare_messages(transcript, system_prompt))
        self.log.info("Making %s request to %s", self.name, self.url)
        self.log.debug("Request body: %s", body)

        try:
            async with self.client.stream("POST", self.url, json=body, headers=self.headers()) as response:
                self.log.info("Response status: %d", response.status_code)
                if response.status_code != httpx.codes.OK:
                    yield StreamEvent(error=StreamError(f"HTTP error: status code {response.status_code}"))
                    return

                decoder = StreamDecoder(response.aiter_lines(), self.wire_format(), self.cancel, self.log)
                async for event in decoder:
                    yield event
        except httpx.HTTPError as exc:
            self.log.error("HTTP request error: %s", exc)
            yield StreamEvent(error=StreamError(f"HTTP error getting chat response: {exc}"))


class OpenAIProvider(HTTPProvider):
    name = PROVIDER_OPENAI
    default_headers = {"HTTP-Referer": "https://kydenul.github.io", "X-Title": "K-CLI"}

    def wire_format(self) -> WireFormat:
        return OpenAIWireFormat(self.content_policy())

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def wire_role(self, role: str) -> str:
        # Tool results travel as user turns; the tool protocol lives in the prompt.
        return ROLE_USER if role == ROLE_TOOL else role

    def build_body(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        body = super().build_body(messages)
        if MODEL_DEEPSEEK_R1 in self.model:
            body["include_reasoning"] = True
        if MODEL_DEEPSEEK_V31 in self.model:
            body["thinking"] = True
        if self.config.max_tokens > 0:
            body["max_tokens"] = self.config.max_tokens
        if self.config.reasoning_effort:
            body["reasoning_effort"] = self.config.reasoning_effort
        return body


class OllamaProvider(HTTPProvider):
    name = PROVIDER_OLLAMA

    def wire_format(self) -> WireFormat:
        return OllamaWireFormat(self.content_policy())


def build_provider(
    config: ClientConfig,
    client: httpx.AsyncClient | None = None,
    cancel: asyncio.Event | None = None,
    logger: logging.Logger | None = None,
) -> HTTPProvider:
    """Provider for ``config.provider``; unknown names fall back to OpenAI."""
    providers: dict[str, type[HTTPProvider]] = {
        PROVIDER_OPENAI.lower(): OpenAIProvider,
        PROVIDER_OLLAMA.lower(): OllamaProvider,
    }
    cls = providers.get(config.provider.lower())
    if cls is None:
        (logger or logging.getLogger(__name__)).warning(
            "Unknown provider %r, using %s", config.provider, PROVIDER_OPENAI
        )
        cls = OpenAIProvider
    return cls(config, client=client, cancel=cancel, logger=logger)


async def complete(
    provider: Provider,
    transcript: list[Message],
    system_prompt: str | None,
    on_content: Callable[[str], None] | None = None,
    logger: logging.Logger | None = None,
) -> Message | None:
    """Run one streamed completion and return the assistant message, or None."""
    async with contextlib.aclosing(provider.stream_completion(transcript, system_prompt)) as events:
        reply = await assemble_reply(events, on_content=on_content, logger=logger)
    if reply is None:
        return None

    return Message.create(
        ROLE_ASSISTANT,
        reply.content,
        id=reply.id,
        model=reply.model or provider.model,
        provider=provider.name,
        reasoning_effort=getattr(provider, "reasoning_effort", None),
    )

"""The turn loop: completions, tool dispatch and transcript persistence."""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from .config import DEFAULT_MAX_TURNS, PROMPT_MCP
from .errors import StoreError, ToolError, UnsupportedToolResultError
from .models import ROLE_TOOL, ROLE_USER, ChatRecord, Message, PromptItem, generate_chat_id
from .prompts import time_prompt
from .providers import Provider, complete
from .storage import ChatStore
from .tooluse import parse_tool_use


class ToolSession(Protocol):
    def server_names(self) -> list[str]: ...

    async def describe_servers(self) -> str: ...

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any: ...


class PromptSource(Protocol):
    def by_name(self, name: str) -> PromptItem | None: ...


def first_text_result(result: Any) -> str:
    """Text of the first content part of a tool result.

    Only "text" parts are understood; anything else is an error for the call.
    """
    content = getattr(result, "content", None) or []
    if not content:
        raise ToolError("no content in tool results")

    part = content[0]
    part_type = getattr(part, "type", type(part).__name__)
    if part_type != "text":
        raise UnsupportedToolResultError(str(part_type))
    return part.text


class ConversationEngine:
    """Drives one chat: user input -> completion -> optional tool calls -> persist.

    The engine owns the in-progress transcript. Each user input may use up to
    ``max_turns`` completion requests; a reply without a tool block ends the
    loop and the transcript is written to the store.
    """

    def __init__(
        self,
        store: ChatStore,
        provider: Provider,
        tools: ToolSession | None = None,
        prompts: PromptSource | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        prompt_name: str | None = PROMPT_MCP,
        chat_id: str | None = None,
        on_content: Callable[[str], None] | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.provider = provider
        self.tools = tools
        self.prompts = prompts
        self.max_turns = max_turns
        self.prompt_name = prompt_name
        self.on_content = on_content
        self.log = logger or logging.getLogger(__name__)

        self.continue_existing = bool(chat_id)
        self.chat_id = chat_id or generate_chat_id()
        self.chat: ChatRecord | None = None
        self.messages: list[Message] = []
        self.turns_used = 0
        self._loaded = False

        if self.continue_existing:
            self.log.info("Continuing existing chat %s", self.chat_id)
        else:
            self.log.info("New chat created, chat id: %s", self.chat_id)

    async def load_chat(self) -> None:
        self._loaded = True
        try:
            chat = await self.store.get_chat(self.chat_id)
        except StoreError as exc:
            self.log.error("Failed to load chat %s: %s", self.chat_id, exc)
            return
        if chat is None:
            self.log.warning("Chat %s not found, starting it fresh", self.chat_id)
            return

        self.chat = chat
        self.messages = list(chat.messages)
        self.log.info("Loaded %d messages from chat %s", len(self.messages), self.chat_id)

    async def compose_system_prompt(self) -> str:
        """Time context, the MCP catalog and the active prompt template."""
        parts = [time_prompt()]
        used: set[str] = set()

        if self.tools is not None and self.tools.server_names():
            catalog = await self.tools.describe_servers()
            if catalog:
                mcp_prompt = self._prompt(PROMPT_MCP)
                if mcp_prompt is not None:
                    parts.append(f"{mcp_prompt.content}\n\n{catalog}")
                    used.add(PROMPT_MCP)
                else:
                    parts.append(catalog)

        if self.prompt_name and self.prompt_name not in used:
            template = self._prompt(self.prompt_name)
            if template is not None:
                parts.append(template.content)

        return "\n".join(parts) + "\n"

    def _prompt(self, name: str) -> PromptItem | None:
        return self.prompts.by_name(name) if self.prompts is not None else None

    async def handle_user_input(self, text: str) -> Message | None:
        """Run one turn. Returns the newest message, or None when nothing came back."""
        if self.continue_existing and not self._loaded:
            await self.load_chat()

        system_prompt = await self.compose_system_prompt()
        self.log.debug("System prompt: %s", system_prompt)

        start = len(self.messages)
        self.turns_used = await self._run(Message.create(ROLE_USER, text), system_prompt)
        self.log.info("Used %d completion requests for this input", self.turns_used)

        if len(self.messages) > start + 1:
            return self.messages[-1]

        # Nothing beyond the user message: drop it so a retry starts clean.
        del self.messages[start:]
        return None

    async def _run(self, message: Message, system_prompt: str) -> int:
        """Iterate completions until a plain reply, a failure or the turn limit."""
        turn = 1
        while True:
            if turn > self.max_turns:
                self.log.error("MaxTurns %d exceeded", self.max_turns)
                return turn - 1

            self.messages.append(message)
            reply = await complete(
                self.provider, self.messages, system_prompt, on_content=self.on_content, logger=self.log
            )
            if reply is None:
                self.log.error("Failed to get response from provider")
                return turn

            content = reply.text()
            parsed = parse_tool_use(content)
            if parsed is None:
                self.messages.append(reply)
                await self.persist()
                return turn

            invocation = parsed.invocation
            reply.content = parsed.visible_text
            reply.server = invocation.server
            reply.tool = invocation.tool
            reply.arguments = invocation.arguments
            self.messages.append(reply)
            self.log.info("Tool use detected: %s/%s", invocation.server, invocation.tool)

            try:
                text = await self._dispatch(invocation.tool, invocation.arguments)
            except Exception:
                self.log.exception("Failed to call tool %s", invocation.tool)
                return turn

            message = Message.create(
                ROLE_TOOL,
                text,
                id=reply.id,
                model=reply.model,
                provider=reply.provider,
                server=invocation.server,
                tool=invocation.tool,
                arguments=invocation.arguments,
            )
            turn += 1

    async def _dispatch(self, tool_name: str, arguments: dict[str, Any]) -> str:
        if self.tools is None:
            raise ToolError("no tool session available")
        result = await self.tools.call_tool(tool_name, arguments)
        return first_text_result(result)

    async def persist(self) -> None:
        """Create the chat on first persist, then replace its messages."""
        try:
            if self.chat is None:
                self.chat = await self.store.add_chat(ChatRecord.new(self.messages, self.chat_id))
                self.log.info("Created chat %s", self.chat_id)
            else:
                self.chat.update_messages(self.messages)
                self.chat = await self.store.update_chat(self.chat)
        except StoreError as exc:
            self.log.error("Failed to persist chat %s: %s", self.chat_id, exc)

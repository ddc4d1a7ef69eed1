from types import SimpleNamespace

import pytest
import pytest_asyncio

from kcli.engine import ConversationEngine, first_text_result
from kcli.errors import StreamError, ToolError, ToolNotFoundError, UnsupportedToolResultError
from kcli.models import ChatRecord, Message, PromptItem
from kcli.storage import ChatStore
from kcli.stream import StreamEvent

TOOL_REPLY = (
    "Let me look that up.\n"
    "<use_mcp_tool>\n"
    "<server_name>todo</server_name>\n"
    "<tool_name>list_todos</tool_name>\n"
    '<arguments>{"status": "open"}</arguments>\n'
    "</use_mcp_tool>"
)


class ScriptedProvider:
    """Plays back one scripted reply per completion request."""

    name = "OpenAI"
    model = "fake/model"
    reasoning_effort = "low"

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    async def stream_completion(self, transcript, system_prompt):
        self.requests.append((list(transcript), system_prompt))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            yield StreamEvent(error=reply)
            return
        yield StreamEvent(id=f"gen-{len(self.requests)}", model=self.model)
        yield StreamEvent(id=f"gen-{len(self.requests)}", model=self.model, content=reply)
        yield StreamEvent(done=True)


def text_result(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


class FakeTools:
    def __init__(self, result=None, error=None):
        self.result = result if result is not None else text_result("1. buy milk")
        self.error = error
        self.calls = []

    def server_names(self):
        return ["todo"]

    async def describe_servers(self):
        return "## todo\n\n### Available Tools\n- list_todos: list items"

    async def call_tool(self, tool_name, arguments):
        self.calls.append((tool_name, arguments))
        if self.error is not None:
            raise self.error
        return self.result


class FakePrompts:
    def __init__(self):
        self.items = {
            "mcp": PromptItem(name="mcp", content="MCP INSTRUCTIONS"),
            "deep-research": PromptItem(name="deep-research", content="RESEARCH CAREFULLY"),
        }

    def by_name(self, name):
        return self.items.get(name)


@pytest_asyncio.fixture
async def store(chats_path):
    chat_store = ChatStore(chats_path, workers=2)
    await chat_store.start()
    yield chat_store
    await chat_store.close()


def make_engine(store, provider, **kwargs):
    kwargs.setdefault("prompts", FakePrompts())
    return ConversationEngine(store, provider, **kwargs)


@pytest.mark.asyncio
async def test_plain_reply_is_persisted(store):
    provider = ScriptedProvider("Hi! How can I help?")
    shown = []
    engine = make_engine(store, provider, on_content=shown.append)

    reply = await engine.handle_user_input("hello")

    assert reply.role == "assistant"
    assert reply.content == "Hi! How can I help?"
    assert reply.provider == "OpenAI"
    assert engine.turns_used == 1
    assert shown == ["Hi! How can I help?"]

    saved = await store.get_chat(engine.chat_id)
    assert [m.role for m in saved.messages] == ["user", "assistant"]
    assert saved.messages[0].content == "hello"


@pytest.mark.asyncio
async def test_tool_call_round_trip(store):
    provider = ScriptedProvider(TOOL_REPLY, "You have one open item: buy milk.")
    tools = FakeTools()
    engine = make_engine(store, provider, tools=tools)

    reply = await engine.handle_user_input("what is on my list?")

    assert reply.content == "You have one open item: buy milk."
    assert tools.calls == [("list_todos", {"status": "open"})]
    assert engine.turns_used == 2

    roles = [m.role for m in engine.messages]
    assert roles == ["user", "assistant", "tool", "assistant"]

    call = engine.messages[1]
    assert call.content == "Let me look that up."
    assert (call.server, call.tool, call.arguments) == ("todo", "list_todos", {"status": "open"})

    result = engine.messages[2]
    assert result.content == "1. buy milk"
    assert result.id == call.id == "gen-1"
    assert result.model == "fake/model"
    assert (result.server, result.tool) == ("todo", "list_todos")

    second_transcript, _ = provider.requests[1]
    assert second_transcript[-1].role == "tool"

    saved = await store.get_chat(engine.chat_id)
    assert [m.role for m in saved.messages] == roles


@pytest.mark.asyncio
async def test_turn_limit_bounds_completion_requests(store):
    provider = ScriptedProvider(TOOL_REPLY)
    tools = FakeTools()
    engine = make_engine(store, provider, tools=tools, max_turns=3)

    reply = await engine.handle_user_input("loop forever")

    assert len(provider.requests) == 3
    assert len(tools.calls) == 3
    assert engine.turns_used == 3
    assert reply.role == "assistant"
    assert reply.tool == "list_todos"


@pytest.mark.asyncio
async def test_single_turn_limit(store):
    provider = ScriptedProvider(TOOL_REPLY)
    engine = make_engine(store, provider, tools=FakeTools(), max_turns=1)

    await engine.handle_user_input("go")

    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_failed_completion_returns_none_and_keeps_nothing(store):
    provider = ScriptedProvider(StreamError("HTTP error: status code 500"))
    engine = make_engine(store, provider)

    assert await engine.handle_user_input("hello") is None
    assert engine.messages == []
    assert engine.turns_used == 1
    assert await store.list_chats() == []


@pytest.mark.asyncio
async def test_unknown_tool_stops_the_loop(store):
    provider = ScriptedProvider(TOOL_REPLY, "never requested")
    tools = FakeTools(error=ToolNotFoundError("list_todos"))
    engine = make_engine(store, provider, tools=tools)

    reply = await engine.handle_user_input("list")

    assert len(provider.requests) == 1
    assert reply.tool == "list_todos"
    assert [m.role for m in engine.messages] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_non_text_tool_result_stops_the_loop(store):
    image = SimpleNamespace(content=[SimpleNamespace(type="image", data="...", mimeType="image/png")])
    provider = ScriptedProvider(TOOL_REPLY, "never requested")
    engine = make_engine(store, provider, tools=FakeTools(result=image))

    await engine.handle_user_input("draw")

    assert len(provider.requests) == 1
    assert engine.messages[-1].role == "assistant"


@pytest.mark.asyncio
async def test_tool_reply_without_tool_session(store):
    provider = ScriptedProvider(TOOL_REPLY)
    engine = make_engine(store, provider, tools=None)

    reply = await engine.handle_user_input("list")

    assert reply.tool == "list_todos"
    assert len(provider.requests) == 1


@pytest.mark.asyncio
async def test_continue_existing_chat(store):
    existing = ChatRecord.new(
        [Message(role="user", content="earlier"), Message(role="assistant", content="reply")],
        chat_id="abc123",
    )
    await store.add_chat(existing)
    provider = ScriptedProvider("continued")
    engine = make_engine(store, provider, chat_id="abc123")

    await engine.handle_user_input("again")

    transcript, _ = provider.requests[0]
    assert [m.content for m in transcript] == ["earlier", "reply", "again"]
    saved = await store.get_chat("abc123")
    assert [m.content for m in saved.messages] == ["earlier", "reply", "again", "continued"]
    assert len(await store.list_chats()) == 1


@pytest.mark.asyncio
async def test_missing_chat_id_starts_fresh(store):
    engine = make_engine(store, ScriptedProvider("fresh"), chat_id="nope00")

    await engine.handle_user_input("hi")

    saved = await store.get_chat("nope00")
    assert [m.content for m in saved.messages] == ["hi", "fresh"]


@pytest.mark.asyncio
async def test_second_input_updates_same_record(store):
    provider = ScriptedProvider("one", "two")
    engine = make_engine(store, provider)

    await engine.handle_user_input("first")
    await engine.handle_user_input("second")

    chats = await store.list_chats()
    assert len(chats) == 1
    assert [m.content for m in chats[0].messages] == ["first", "one", "second", "two"]


@pytest.mark.asyncio
async def test_system_prompt_with_tools(store):
    engine = make_engine(store, ScriptedProvider("x"), tools=FakeTools())

    prompt = await engine.compose_system_prompt()

    assert prompt.startswith("Current time:")
    assert "MCP INSTRUCTIONS" in prompt
    assert "### Available Tools" in prompt
    assert prompt.count("MCP INSTRUCTIONS") == 1


@pytest.mark.asyncio
async def test_system_prompt_adds_active_template(store):
    engine = make_engine(store, ScriptedProvider("x"), tools=None, prompt_name="deep-research")

    prompt = await engine.compose_system_prompt()

    assert "RESEARCH CAREFULLY" in prompt
    assert "MCP INSTRUCTIONS" not in prompt


def test_first_text_result():
    assert first_text_result(text_result("ok")) == "ok"
    with pytest.raises(ToolError):
        first_text_result(SimpleNamespace(content=[]))
    with pytest.raises(UnsupportedToolResultError):
        first_text_result(SimpleNamespace(content=[SimpleNamespace(type="resource")]))

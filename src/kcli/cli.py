"""CLI interface for kcli."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

import click

from . import __version__
from .config import CONFIG_PATH, DATA_DIR, DEFAULT_LIST_LIMIT, ClientConfig, load_config
from .engine import ConversationEngine
from .errors import KCliError
from .mcp_session import MCPSessionManager
from .models import ROLE_ASSISTANT, ROLE_TOOL, ROLE_USER, ChatRecord
from .providers import build_provider
from .repos import MCPServerRepo, PromptRepo
from .storage import ChatStore

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(verbosity: int, log_file: str | None = None) -> None:
    """Configure root logging once. Logs go to stderr so stdout stays for answers."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(log_file).expanduser(), encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def _format_ts(ts: datetime | None) -> str:
    if ts is None:
        return "Unknown date"
    return ts.strftime("%Y-%m-%d %H:%M")


def _run(coro):
    try:
        return asyncio.run(coro)
    except KCliError as exc:
        raise click.ClickException(str(exc)) from exc


def _open_store(config: ClientConfig) -> ChatStore:
    return ChatStore(
        config.chats_path,
        workers=config.workers,
        queue_size=config.queue_size,
        logger=logging.getLogger("kcli.storage"),
    )


@click.group()
@click.version_option(version=__version__, prog_name="kcli")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help=f"YAML config file (default: {CONFIG_PATH})",
)
@click.option("-v", "--verbose", count=True, help="-v for info logs, -vv for debug logs")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None, help="Also write logs to this file")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: int, log_file: str | None):
    """kcli: chat with OpenAI- or Ollama-compatible models from the terminal.

    Models can call tools on the MCP servers listed in mcp_servers.jsonl.
    Every conversation is saved to chats.jsonl and can be continued later
    with --chat-id.
    """
    setup_logging(verbose, log_file)
    try:
        ctx.obj = load_config(config_path)
    except KCliError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.argument("message", required=False)
@click.option("--chat-id", default=None, help="Continue an existing chat")
@click.option("--no-tools", is_flag=True, help="Do not connect to MCP servers")
@click.pass_obj
def chat(config: ClientConfig, message: str | None, chat_id: str | None, no_tools: bool):
    """Send MESSAGE, or start an interactive session when it is omitted.

    Example:
        kcli chat "What's the weather in Shanghai today?"
    """
    _run(_chat(config, message, chat_id, no_tools))


async def _chat(config: ClientConfig, message: str | None, chat_id: str | None, no_tools: bool) -> None:
    prompts = PromptRepo(config.prompts_path, logger=logging.getLogger("kcli.prompts"))
    servers = MCPServerRepo(config.mcp_servers_path, logger=logging.getLogger("kcli.mcp"))
    provider = build_provider(config, logger=logging.getLogger("kcli.providers"))
    tools = None if no_tools else MCPSessionManager(servers, logger=logging.getLogger("kcli.mcp"))

    def show(chunk: str) -> None:
        click.echo(chunk, nl=False)

    try:
        async with _open_store(config) as store:
            if tools is not None:
                await tools.connect()
            engine = ConversationEngine(
                store,
                provider,
                tools=tools,
                prompts=prompts,
                max_turns=config.max_turns,
                prompt_name=config.prompt_name,
                chat_id=chat_id,
                on_content=show,
                logger=logging.getLogger("kcli.engine"),
            )
            click.echo(click.style(f"Chat {engine.chat_id}", dim=True), err=True)

            if message is not None:
                await _turn(engine, message)
                return

            while True:
                try:
                    text = await asyncio.to_thread(click.prompt, click.style("You", bold=True), prompt_suffix="> ")
                except (EOFError, click.Abort):
                    click.echo()
                    break
                if text.strip() in {"/exit", "/quit"}:
                    break
                if text.strip():
                    await _turn(engine, text)
    finally:
        if tools is not None:
            await tools.close()
        await provider.aclose()


async def _turn(engine: ConversationEngine, text: str) -> None:
    click.echo(click.style("Assistant: ", bold=True), nl=False)
    reply = await engine.handle_user_input(text)
    click.echo()
    if reply is None:
        click.echo(click.style("No new message.", fg="yellow"), err=True)
    elif reply.role != ROLE_ASSISTANT or reply.tool:
        click.echo(
            click.style(f"Stopped after {engine.turns_used} requests (last: {reply.role}).", fg="yellow"),
            err=True,
        )


@cli.command()
@click.option("--keyword", default=None, help="Case-insensitive text to look for in messages")
@click.option("--model", default=None, help="Substring of the model name")
@click.option("--provider", default=None, help="Substring of the provider name")
@click.option("--limit", default=DEFAULT_LIST_LIMIT, show_default=True, help="Maximum number of chats")
@click.pass_obj
def history(config: ClientConfig, keyword: str | None, model: str | None, provider: str | None, limit: int):
    """List saved chats, newest first."""

    async def run() -> list[ChatRecord]:
        async with _open_store(config) as store:
            return await store.list_chats(keyword=keyword, model=model, provider=provider, limit=limit)

    chats = _run(run())
    if not chats:
        click.echo("No chats found.")
        return

    for i, record in enumerate(chats, 1):
        first_user = next((m.text() for m in record.messages if m.role == ROLE_USER), "")
        preview = first_user.replace("\n", " ")[:80]
        models = sorted({m.model for m in record.messages if m.model})
        click.echo(f"{i}. {click.style(record.id, bold=True)} ({_format_ts(record.create_time)}) {preview}")
        click.echo(f"   {len(record.messages)} msgs | Model: {', '.join(models) or '?'}")


@cli.command()
@click.argument("chat_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw record")
@click.pass_obj
def show(config: ClientConfig, chat_id: str, as_json: bool):
    """Print a saved chat transcript."""

    async def run() -> ChatRecord | None:
        async with _open_store(config) as store:
            return await store.get_chat(chat_id)

    record = _run(run())
    if record is None:
        raise click.ClickException(f"Chat not found: {chat_id}")

    if as_json:
        click.echo(json.dumps(record.model_dump(mode="json", exclude_none=True), indent=2, ensure_ascii=False))
        return

    click.echo(click.style(f"# Chat {record.id}", bold=True))
    click.echo(f"Created: {_format_ts(record.create_time)} | Updated: {_format_ts(record.update_time)}")
    click.echo()
    for msg in record.messages:
        if msg.role == ROLE_USER:
            header = click.style("User", fg="cyan", bold=True)
        elif msg.role == ROLE_TOOL:
            header = click.style(f"Tool {msg.server}/{msg.tool}", fg="magenta", bold=True)
        else:
            header = click.style("Assistant", fg="green", bold=True)
            if msg.tool:
                header += f" (calls {msg.server}/{msg.tool} {json.dumps(msg.arguments or {}, ensure_ascii=False)})"
        click.echo(f"{header}:")
        click.echo(msg.text())
        click.echo()


@cli.command()
@click.argument("chat_id")
@click.confirmation_option(prompt="Delete this chat?")
@click.pass_obj
def delete(config: ClientConfig, chat_id: str):
    """Delete a saved chat."""

    async def run() -> bool:
        async with _open_store(config) as store:
            return await store.delete_chat(chat_id)

    if _run(run()):
        click.echo(f"Deleted chat {chat_id}")
    else:
        click.echo(f"Chat not found: {chat_id}")


@cli.command()
@click.pass_obj
def stats(config: ClientConfig):
    """Show statistics about saved chats."""

    async def run() -> dict:
        async with _open_store(config) as store:
            return await store.stats()

    s = _run(run())
    click.echo()
    click.echo(click.style("Chat Statistics", bold=True))
    click.echo(f"  Chats:          {s['total_chats']:,}")
    click.echo(f"  Messages:       {s['total_messages']:,}")
    click.echo(f"  Avg msgs/chat:  {s['avg_messages_per_chat']}")
    if s["date_range_start"]:
        click.echo(f"  Date range:     {s['date_range_start']} → {s['date_range_end']}")
    if s["top_models"]:
        click.echo("  Models used:")
        for m in s["top_models"]:
            click.echo(f"    {m['model']}: {m['count']:,}")

    size = config.chats_path.stat().st_size if config.chats_path.exists() else 0
    click.echo(f"  Storage:        {size / 1024:.1f} KB")
    click.echo(f"  Location:       {config.chats_path}")
    click.echo()


@cli.command()
@click.pass_obj
def prompts(config: ClientConfig):
    """List the prompt templates."""
    try:
        repo = PromptRepo(config.prompts_path)
    except KCliError as exc:
        raise click.ClickException(str(exc)) from exc

    for item in repo.all_items():
        active = " (active)" if item.name == config.prompt_name else ""
        click.echo(f"{click.style(item.name, bold=True)}{active}: {item.description or ''}")


@cli.command()
@click.pass_obj
def servers(config: ClientConfig):
    """List the configured MCP servers."""
    try:
        repo = MCPServerRepo(config.mcp_servers_path)
    except KCliError as exc:
        raise click.ClickException(str(exc)) from exc

    for item in repo.all_items():
        state = click.style("active", fg="green") if item.is_active else click.style("inactive", dim=True)
        target = item.base_url if item.type != "stdio" else " ".join([item.command or "", *item.args]).strip()
        click.echo(f"{click.style(item.name, bold=True)} [{item.type}, {state}] {target}")


@cli.command()
@click.pass_obj
def paths(config: ClientConfig):
    """Print where kcli keeps its files."""
    click.echo(f"Data dir:     {DATA_DIR}")
    click.echo(f"Config:       {CONFIG_PATH}")
    click.echo(f"Chats:        {config.chats_path}")
    click.echo(f"MCP servers:  {config.mcp_servers_path}")
    click.echo(f"Prompts:      {config.prompts_path}")

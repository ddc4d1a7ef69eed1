import json

import pytest
from click.testing import CliRunner

import kcli.cli
from kcli.cli import cli
from tests.conftest import make_chat


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setattr(kcli.cli, "setup_logging", lambda verbosity, log_file=None: None)
    chats = tmp_path / "chats.jsonl"
    chats.write_text(
        "\n".join(
            [
                make_chat("newer1", text="How do I parse JSON?", model="gpt-4o", minutes=10).to_json_line(),
                make_chat("older1", text="Plan a trip", model="llama3", minutes=0).to_json_line(),
            ]
        )
        + "\n"
    )
    path = tmp_path / "client.yaml"
    path.write_text(
        "K-CLI:\n"
        f"  chats_path: {chats}\n"
        f"  prompts_path: {tmp_path / 'prompts.jsonl'}\n"
        f"  mcp_servers_path: {tmp_path / 'servers.jsonl'}\n"
    )
    return path


def invoke(config_file, *args, **kwargs):
    return CliRunner().invoke(cli, ["--config", str(config_file), *args], **kwargs)


def test_history_lists_newest_first(config_file):
    result = invoke(config_file, "history")

    assert result.exit_code == 0, result.output
    assert result.output.index("newer1") < result.output.index("older1")
    assert "How do I parse JSON?" in result.output


def test_history_filters(config_file):
    result = invoke(config_file, "history", "--model", "llama")

    assert result.exit_code == 0
    assert "older1" in result.output
    assert "newer1" not in result.output

    result = invoke(config_file, "history", "--keyword", "nothing like this")
    assert "No chats found." in result.output


def test_show_transcript_and_json(config_file):
    result = invoke(config_file, "show", "older1")

    assert result.exit_code == 0
    assert "Plan a trip" in result.output

    result = invoke(config_file, "show", "older1", "--json")
    assert json.loads(result.output)["id"] == "older1"


def test_show_unknown_chat_fails(config_file):
    result = invoke(config_file, "show", "zzz999")

    assert result.exit_code == 1


def test_delete(config_file):
    result = invoke(config_file, "delete", "older1", "--yes")

    assert result.exit_code == 0
    assert "Deleted chat older1" in result.output
    assert "older1" not in invoke(config_file, "history").output


def test_stats(config_file):
    result = invoke(config_file, "stats")

    assert result.exit_code == 0
    assert "Chats:          2" in result.output
    assert "gpt-4o: 1" in result.output


def test_prompts_and_servers(config_file):
    prompts = invoke(config_file, "prompts")
    servers = invoke(config_file, "servers")

    assert "mcp (active)" in prompts.output
    assert "deep-research" in prompts.output
    assert "todo [stdio, active] uvx mcp-todo" in servers.output


def test_bad_config_is_reported(tmp_path, monkeypatch):
    monkeypatch.setattr(kcli.cli, "setup_logging", lambda verbosity, log_file=None: None)
    path = tmp_path / "client.yaml"
    path.write_text("K-CLI:\n  max_turns: 0\n")

    result = CliRunner().invoke(cli, ["--config", str(path), "paths"])

    assert result.exit_code == 1

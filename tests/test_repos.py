import json

from kcli.models import MCPServerItem, PromptItem
from kcli.repos import MCPServerRepo, PromptRepo


def read_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_prompt_repo_seeds_defaults(tmp_path):
    path = tmp_path / "prompts.jsonl"
    repo = PromptRepo(path)

    assert [p.name for p in repo.all_items()] == ["deep-research", "mcp"]
    assert "<use_mcp_tool>" in repo.by_name("mcp").content
    assert [line["name"] for line in read_lines(path)] == ["deep-research", "mcp"]


def test_prompt_repo_keeps_user_edits(tmp_path):
    path = tmp_path / "prompts.jsonl"
    path.write_text(json.dumps({"name": "mcp", "content": "my own rules"}) + "\nbroken line\n")

    repo = PromptRepo(path)

    assert repo.by_name("mcp").content == "my own rules"
    assert repo.by_name("deep-research") is not None


def test_upsert_and_delete(tmp_path):
    path = tmp_path / "prompts.jsonl"
    repo = PromptRepo(path)

    repo.upsert(PromptItem(name="coder", content="write code", description="coding"))
    assert PromptRepo(path).by_name("coder").description == "coding"

    assert repo.delete("coder") is True
    assert repo.delete("coder") is False
    assert PromptRepo(path).by_name("coder") is None


def test_server_repo_seeds_todo_and_uses_aliases(tmp_path):
    path = tmp_path / "servers.jsonl"
    repo = MCPServerRepo(path)

    todo = repo.by_name("todo")
    assert todo.type == "stdio"
    assert todo.command == "uvx"
    assert read_lines(path)[0]["isActive"] is True


def test_server_repo_active_filter(tmp_path):
    path = tmp_path / "servers.jsonl"
    path.write_text(
        "\n".join(
            [
                json.dumps({"name": "remote", "type": "sse", "baseUrl": "http://localhost:8000/sse", "isActive": False}),
                json.dumps({"name": "web", "type": "streamableHttp", "baseUrl": "http://localhost:9000/mcp"}),
            ]
        )
    )

    repo = MCPServerRepo(path)

    assert [s.name for s in repo.active()] == ["todo", "web"]
    assert repo.by_name("remote").base_url == "http://localhost:8000/sse"

    repo.upsert(MCPServerItem(name="remote", type="sse", base_url="http://localhost:8000/sse", is_active=True))
    assert [s.name for s in MCPServerRepo(path).active()] == ["remote", "todo", "web"]

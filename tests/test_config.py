import pytest

from kcli.config import DEFAULT_MAX_TURNS, ClientConfig, load_config
from kcli.errors import ConfigError


@pytest.fixture(autouse=True)
def no_env_key(monkeypatch):
    monkeypatch.delenv("KCLI_API_KEY", raising=False)


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(tmp_path / "absent.yaml")

    assert config == ClientConfig()
    assert config.max_turns == DEFAULT_MAX_TURNS


def test_reads_k_cli_section(tmp_path):
    path = tmp_path / "client.yaml"
    path.write_text(
        "K-CLI:\n"
        "  provider: Ollama\n"
        "  base_url: http://localhost:11434\n"
        "  api_path: /api/chat\n"
        "  model: llama3\n"
        "  max_turns: 4\n"
        "  chats_path: ~/kcli-test/chats.jsonl\n"
    )

    config = load_config(path)

    assert config.provider == "Ollama"
    assert config.model == "llama3"
    assert config.max_turns == 4
    assert "~" not in str(config.chats_path)


def test_root_mapping_without_section(tmp_path):
    path = tmp_path / "client.yaml"
    path.write_text("model: some/model\n")

    assert load_config(path).model == "some/model"


def test_env_api_key_wins(tmp_path, monkeypatch):
    path = tmp_path / "client.yaml"
    path.write_text("K-CLI:\n  api_key: from-file\n")
    monkeypatch.setenv("KCLI_API_KEY", "from-env")

    assert load_config(path).api_key == "from-env"


@pytest.mark.parametrize(
    "content",
    [
        "K-CLI: [unclosed\n",
        "- just\n- a list\n",
        "K-CLI: nope\n",
        "K-CLI:\n  max_turns: many\n",
        "K-CLI:\n  max_turns: 0\n",
        "K-CLI:\n  workers: 0\n",
    ],
)
def test_invalid_config(tmp_path, content):
    path = tmp_path / "client.yaml"
    path.write_text(content)

    with pytest.raises(ConfigError):
        load_config(path)

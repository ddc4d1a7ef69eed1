"""Central configuration for paths, defaults and the YAML client config."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from .errors import ConfigError

# Data directory, override with KCLI_DATA_DIR env var
DATA_DIR = Path(os.environ.get("KCLI_DATA_DIR", str(Path.home() / ".config" / "k-cli")))

CONFIG_PATH = DATA_DIR / "client.yaml"
CHATS_PATH = DATA_DIR / "chats.jsonl"
MCP_SERVERS_PATH = DATA_DIR / "mcp_servers.jsonl"
PROMPTS_PATH = DATA_DIR / "prompts.jsonl"

# Top-level key of the YAML file
YAML_KEY = "K-CLI"

# Provider defaults
PROVIDER_OPENAI = "OpenAI"
PROVIDER_OLLAMA = "Ollama"
DEFAULT_PROVIDER = PROVIDER_OPENAI
DEFAULT_BASE_URL = "https://openrouter.ai/api"
DEFAULT_API_PATH = "/v1/chat/completions"
DEFAULT_MODEL = "deepseek/deepseek-chat-v3.1:free"
DEFAULT_TIMEOUT = 60.0

# Conversation loop
DEFAULT_MAX_TURNS = 10  # Completion requests allowed per user input
DEFAULT_MAX_TOKENS = 32768
DEFAULT_REASONING_EFFORT = "medium"

# Chat store worker pool
DEFAULT_WORKER_COUNT = 5
DEFAULT_QUEUE_SIZE = 100
DEFAULT_LIST_LIMIT = 20

# Prompt names
PROMPT_MCP = "mcp"
PROMPT_DEEP_RESEARCH = "deep-research"


class ClientConfig(BaseModel):
    provider: str = DEFAULT_PROVIDER
    base_url: str = DEFAULT_BASE_URL
    api_path: str = DEFAULT_API_PATH
    model: str = DEFAULT_MODEL
    api_key: str = ""

    max_turns: int = DEFAULT_MAX_TURNS
    max_tokens: int = DEFAULT_MAX_TOKENS
    reasoning_effort: str = DEFAULT_REASONING_EFFORT
    content_policy: str = "prefer_content"
    timeout: float = DEFAULT_TIMEOUT

    workers: int = DEFAULT_WORKER_COUNT
    queue_size: int = DEFAULT_QUEUE_SIZE
    prompt_name: str = PROMPT_MCP

    chats_path: Path = CHATS_PATH
    mcp_servers_path: Path = MCP_SERVERS_PATH
    prompts_path: Path = PROMPTS_PATH


def expand_user(path: str | Path) -> Path:
    return Path(path).expanduser()


def ensure_file(path: Path) -> Path:
    """Create the file (and its parent directories) if it does not exist yet."""
    path = expand_user(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    return path


def load_config(path: str | Path | None = None) -> ClientConfig:
    """Load the client config from YAML, falling back to defaults.

    A missing file yields the defaults; an unreadable or malformed file
    raises ConfigError.
    """
    config_path = expand_user(path) if path else CONFIG_PATH
    data: dict[str, Any] = {}

    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"failed to read configuration file {config_path}: {exc}") from exc

        if not isinstance(raw, dict):
            raise ConfigError(f"configuration file {config_path} must contain a mapping")
        section = raw.get(YAML_KEY, raw)
        if not isinstance(section, dict):
            raise ConfigError(f"'{YAML_KEY}' in {config_path} must be a mapping")
        data.update(section)

    api_key = os.environ.get("KCLI_API_KEY")
    if api_key:
        data["api_key"] = api_key

    try:
        config = ClientConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration values in {config_path}: {exc}") from exc

    if config.max_turns < 1:
        raise ConfigError("max_turns must be at least 1")
    if config.workers < 1:
        raise ConfigError("workers must be at least 1")

    for field in ("chats_path", "mcp_servers_path", "prompts_path"):
        setattr(config, field, expand_user(getattr(config, field)))
    return config

"""Read-mostly JSONL repositories for prompts and MCP server definitions."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from .config import PROMPT_DEEP_RESEARCH, PROMPT_MCP, ensure_file
from .errors import StoreError
from .models import MCPServerItem, PromptItem
from .prompts import DEEP_RESEARCH_PROMPT, MCP_PROMPT
from .storage import write_jsonl

ItemT = TypeVar("ItemT", bound=BaseModel)


class JsonlRepo(Generic[ItemT]):
    """Items keyed by ``name``, cached in memory and rewritten sorted by name."""

    item_type: type[BaseModel] = BaseModel

    def __init__(self, path: Path, logger: logging.Logger | None = None):
        self.log = logger or logging.getLogger(__name__)
        try:
            self.path = ensure_file(path)
        except OSError as exc:
            raise StoreError(f"failed to initialize {path}: {exc}") from exc
        self._lock = threading.RLock()
        self._cache: dict[str, ItemT] = {}
        self._load()
        self.ensure_defaults()

    def _load(self) -> None:
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise StoreError(f"failed to load initial data from {self.path}: {exc}") from exc

        for line_no, line in enumerate(lines, 1):
            line = line.strip()
            if not line:
                continue
            try:
                item = self.item_type.model_validate_json(line)
            except ValidationError:
                self.log.debug("Skipping invalid line %s:%d", self.path, line_no)
                continue
            self._cache[item.name] = item  # type: ignore[attr-defined]

    def _persist(self) -> None:
        items = sorted(self._cache.values(), key=lambda item: item.name)  # type: ignore[attr-defined]
        lines = [item.model_dump_json(by_alias=True, exclude_none=True) for item in items]
        try:
            write_jsonl(self.path, lines)
        except OSError as exc:
            raise StoreError(f"failed to persist {self.path}: {exc}") from exc

    def ensure_defaults(self) -> None:
        """Hook for subclasses that seed default items."""

    def by_name(self, name: str) -> ItemT | None:
        with self._lock:
            return self._cache.get(name)

    def all_items(self) -> list[ItemT]:
        with self._lock:
            return sorted(self._cache.values(), key=lambda item: item.name)  # type: ignore[attr-defined]

    def upsert(self, item: ItemT) -> None:
        name = item.name  # type: ignore[attr-defined]
        if not name:
            raise ValueError("item name is empty")
        with self._lock:
            previous = self._cache.get(name)
            self._cache[name] = item
            try:
                self._persist()
            except StoreError:
                if previous is None:
                    del self._cache[name]
                else:
                    self._cache[name] = previous
                raise
        self.log.info("Saved %s '%s'", self.item_type.__name__, name)

    def delete(self, name: str) -> bool:
        with self._lock:
            previous = self._cache.pop(name, None)
            if previous is None:
                return False
            try:
                self._persist()
            except StoreError:
                self._cache[name] = previous
                raise
        self.log.info("Deleted %s '%s'", self.item_type.__name__, name)
        return True


class PromptRepo(JsonlRepo[PromptItem]):
    item_type = PromptItem

    def ensure_defaults(self) -> None:
        defaults = [
            PromptItem(name=PROMPT_MCP, content=MCP_PROMPT, description="mcp prompt"),
            PromptItem(
                name=PROMPT_DEEP_RESEARCH,
                content=DEEP_RESEARCH_PROMPT,
                description="deep research prompt",
            ),
        ]
        for prompt in defaults:
            if self.by_name(prompt.name) is None:
                self.log.info("Creating default prompt '%s'", prompt.name)
                self.upsert(prompt)


class MCPServerRepo(JsonlRepo[MCPServerItem]):
    item_type = MCPServerItem

    def ensure_defaults(self) -> None:
        if self.by_name("todo") is None:
            self.log.info("Creating default MCP server config 'todo'")
            self.upsert(MCPServerItem(name="todo", type="stdio", command="uvx", args=["mcp-todo"]))

    def active(self) -> list[MCPServerItem]:
        return [item for item in self.all_items() if item.is_active]

"""Exception types raised by the conversation engine and its stores."""

from __future__ import annotations


class KCliError(RuntimeError):
    """Base class for every error raised by kcli."""


class ConfigError(KCliError):
    """Raised when the configuration file is missing or invalid."""


class StoreError(KCliError):
    """Raised when the chat store cannot be opened or used."""


class StoreShutdownError(StoreError):
    def __init__(self) -> None:
        super().__init__("repository is shutdown")


class OperationCancelledError(StoreError):
    """Raised when a submission is cancelled before it reaches the queue."""


class InvalidOperationError(StoreError):
    """Raised when the store receives a payload it cannot dispatch."""


class PersistenceError(StoreError):
    """Raised when the chat file cannot be rewritten. The cache is rolled back."""


class ChatNotFoundError(StoreError):
    def __init__(self, chat_id: str) -> None:
        super().__init__(f"chat with id {chat_id} not found")
        self.chat_id = chat_id


class StreamError(KCliError):
    """Raised for transport or protocol failures on a completion stream."""


class StreamCancelledError(StreamError):
    def __init__(self, message: str = "stream cancelled") -> None:
        super().__init__(message)


class ToolError(KCliError):
    """Raised when a tool call cannot be dispatched or its result is unusable."""


class ToolNotFoundError(ToolError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"tool '{tool_name}' not found on any connected server")
        self.tool_name = tool_name


class UnsupportedToolResultError(ToolError):
    def __init__(self, content_type: str) -> None:
        super().__init__(f"unsupported tool result content type: {content_type}")
        self.content_type = content_type

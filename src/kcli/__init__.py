"""kcli: a terminal chat agent for OpenAI- and Ollama-compatible models with MCP tools."""

__version__ = "0.1.0"

"""Built-in prompt templates and the time context block."""

from __future__ import annotations

from datetime import datetime

from .models import now

MCP_PROMPT = """\
You can use tools provided by connected MCP servers. Use one tool per \
message and wait for its result before deciding on the next step.

To call a tool, write the request in this exact XML format:

<use_mcp_tool>
<server_name>server name here</server_name>
<tool_name>tool name here</tool_name>
<arguments>
{
  "param1": "value1"
}
</arguments>
</use_mcp_tool>

The arguments must be a single JSON object that matches the tool's input
schema. The tool result is sent back to you in the next message. When you
no longer need a tool, answer the user directly without any tool block.
"""

DEEP_RESEARCH_PROMPT = """\
You are a meticulous research assistant. Break the question into
sub-questions, gather evidence for each one with the available tools,
compare sources, and flag anything uncertain. Finish with a structured
answer: a short summary, the key findings, and the sources you used.
"""


def time_prompt(current: datetime | None = None) -> str:
    """Context block telling the model the current local date and time."""
    current = current or now()
    return (
        f"Current time: {current.strftime('%Y-%m-%d %H:%M:%S %z')} "
        f"({current.strftime('%A')}). Use it for anything that depends on today's date."
    )

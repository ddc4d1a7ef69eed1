"""Find tool-use blocks embedded in model output and pull out the invocation."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TOOL_TAGS = ("use_mcp_tool", "access_mcp_resource")

_SERVER_RE = re.compile(r"<server_name>(.*?)</server_name>", re.DOTALL)
_TOOL_RE = re.compile(r"<tool_name>(.*?)</tool_name>", re.DOTALL)
_ARGUMENTS_RE = re.compile(r"<arguments>\s*(\{.*?\})\s*</arguments>", re.DOTALL)


@dataclass
class ToolInvocation:
    server: str
    tool: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedToolUse:
    invocation: ToolInvocation
    visible_text: str
    block: str


def contains_tool_use(content: str) -> bool:
    """True when some tag's opening and closing markers both appear."""
    return any(f"<{tag}>" in content and f"</{tag}>" in content for tag in TOOL_TAGS)


def split_content(content: str) -> tuple[str, str | None]:
    """Split into (visible text, tool block).

    Only the tag whose opening marker occurs first is considered. Without a
    complete block the whole text is visible and the block is None.
    """
    first_index = len(content)
    first_tag: str | None = None
    for tag in TOOL_TAGS:
        start = content.find(f"<{tag}>")
        if start != -1 and start < first_index:
            first_index, first_tag = start, tag

    if first_tag is not None:
        end_tag = f"</{first_tag}>"
        end = content.find(end_tag, first_index)
        if end != -1:
            end += len(end_tag)
            block = content[first_index:end].strip()
            visible = (content[:first_index] + content[end:]).strip()
            return visible, block

    return content.strip(), None


def extract_invocation(block: str) -> ToolInvocation | None:
    """Read server, tool and JSON arguments from a tool block.

    Any missing or malformed field means no invocation; model output that
    only looks like a tool call is treated as prose.
    """
    server = _SERVER_RE.search(block)
    if server is None:
        logger.info("No <server_name> tag found in tool block")
        return None

    tool = _TOOL_RE.search(block)
    if tool is None:
        logger.info("No <tool_name> tag found in tool block")
        return None

    arguments = _ARGUMENTS_RE.search(block)
    if arguments is None:
        logger.info("No <arguments> tag found in tool block")
        return None

    try:
        parsed = json.loads(arguments.group(1))
    except json.JSONDecodeError as exc:
        logger.info("Failed to parse tool arguments: %s", exc)
        return None
    if not isinstance(parsed, dict):
        return None

    return ToolInvocation(
        server=server.group(1).strip(),
        tool=tool.group(1).strip(),
        arguments=parsed,
    )


def parse_tool_use(content: str) -> ParsedToolUse | None:
    visible, block = split_content(content)
    if block is None:
        return None

    invocation = extract_invocation(block)
    if invocation is None:
        return None

    logger.debug("Extracted tool use: %s", invocation)
    return ParsedToolUse(invocation=invocation, visible_text=visible, block=block)

"""Client sessions to the configured MCP servers and tool routing."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import CallToolResult

from .errors import ToolError, ToolNotFoundError
from .models import MCPServerItem
from .repos import MCPServerRepo


class MCPSessionManager:
    """One ClientSession per active server; tools are routed by name."""

    def __init__(self, repo: MCPServerRepo, logger: logging.Logger | None = None):
        self.repo = repo
        self.log = logger or logging.getLogger(__name__)
        self._stacks: dict[str, AsyncExitStack] = {}
        self._sessions: dict[str, ClientSession] = {}
        self._tools: dict[str, str] = {}  # tool name -> server name

    async def connect(self) -> None:
        """(Re)connect every active server. Servers that fail to connect are skipped."""
        await self.close()

        servers = self.repo.active()
        if not servers:
            self.log.info("No active MCP servers configured")
            return

        for item in servers:
            stack = AsyncExitStack()
            try:
                session = await self._open(stack, item)
                tools = await session.list_tools()
            except Exception as exc:
                self.log.warning("Failed to connect to server '%s': %s", item.name, exc)
                await stack.aclose()
                continue

            self._stacks[item.name] = stack
            self._sessions[item.name] = session
            for tool in tools.tools:
                self._tools[tool.name] = item.name
                self.log.info("Registered tool '%s' for server '%s'", tool.name, item.name)
            self.log.info("Connected to server '%s'", item.name)

    async def _open(self, stack: AsyncExitStack, item: MCPServerItem) -> ClientSession:
        if item.type == "stdio":
            if not item.command:
                raise ToolError(f"server '{item.name}' has no command")
            params = StdioServerParameters(command=item.command, args=list(item.args), env=item.env)
            read, write = await stack.enter_async_context(stdio_client(params))
        elif item.type == "sse":
            if not item.base_url:
                raise ToolError(f"server '{item.name}' has no baseUrl")
            read, write = await stack.enter_async_context(sse_client(item.base_url))
        elif item.type == "streamableHttp":
            if not item.base_url:
                raise ToolError(f"server '{item.name}' has no baseUrl")
            read, write, _ = await stack.enter_async_context(streamablehttp_client(item.base_url))
        else:
            raise ToolError(f"server '{item.name}' has unsupported type {item.type!r}")

        session = await stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        return session

    async def close(self) -> None:
        for name in list(self._stacks):
            stack = self._stacks.pop(name)
            try:
                await stack.aclose()
            except Exception as exc:
                self.log.error("Failed to close session for server '%s': %s", name, exc)
            else:
                self.log.info("Closed session for server '%s'", name)
        self._sessions.clear()
        self._tools.clear()

    async def __aenter__(self) -> MCPSessionManager:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def server_names(self) -> list[str]:
        return sorted(self._sessions)

    def server_for_tool(self, tool_name: str) -> str | None:
        return self._tools.get(tool_name)

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> CallToolResult:
        server_name = self._tools.get(tool_name)
        if server_name is None:
            self.log.info("Tool '%s' not found in any connected server", tool_name)
            raise ToolNotFoundError(tool_name)

        self.log.info("Routing tool '%s' to server '%s'", tool_name, server_name)
        try:
            return await self._sessions[server_name].call_tool(tool_name, arguments)
        except McpError as exc:
            raise ToolError(f"tool '{tool_name}' failed on server '{server_name}': {exc}") from exc

    # -- system prompt catalog -----------------------------------------------

    async def describe_servers(self) -> str:
        """Markdown catalog of every connected server's tools and resources."""
        sections = []
        for name in self.server_names():
            sections.append(
                f"## {name}"
                + await self._tools_section(name)
                + await self._resource_templates_section(name)
                + await self._resources_section(name)
            )
        return "\n\n".join(sections)

    async def _tools_section(self, name: str) -> str:
        try:
            result = await self._sessions[name].list_tools()
        except McpError as exc:
            self.log.warning("Failed to list tools for server '%s': %s", name, exc)
            return ""

        entries = []
        for tool in result.tools:
            schema = json.dumps(tool.inputSchema, indent=2, ensure_ascii=False)
            schema = "\n    ".join(schema.splitlines())
            entries.append(f"- {tool.name}: {tool.description or ''}\n    Input Schema:\n    {schema}")
        if not entries:
            return ""
        return "\n\n### Available Tools\n" + "\n\n".join(entries)

    async def _resource_templates_section(self, name: str) -> str:
        try:
            result = await self._sessions[name].list_resource_templates()
        except McpError as exc:
            self.log.debug("No resource templates for server '%s': %s", name, exc)
            return ""

        entries = [
            f"- {template.uriTemplate} ({template.name}): {template.description or ''}"
            for template in result.resourceTemplates
        ]
        if not entries:
            return ""
        return "\n\n### Resource Templates\n" + "\n".join(entries)

    async def _resources_section(self, name: str) -> str:
        try:
            result = await self._sessions[name].list_resources()
        except McpError as exc:
            self.log.debug("No resources for server '%s': %s", name, exc)
            return ""

        entries = [
            f"- {resource.uri} ({resource.name}): {resource.description or ''}"
            for resource in result.resources
        ]
        if not entries:
            return ""
        return "\n\n### Resources\n" + "\n".join(entries)

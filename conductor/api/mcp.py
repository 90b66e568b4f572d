"""MCP client -- external tool servers exposed through the ToolDispatcher.

Each configured server is connected at startup with the mcp library
(stdio subprocess or Streamable HTTP), its tools listed once, and every
tool exposed to the model as ``mcp__<server>__<tool>``.  Results are
mapped onto the dispatcher's tool contract.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any

import httpx
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamable_http_client
from mcp.types import CallToolResult, Tool

from conductor.config import McpServerConfig

logger = logging.getLogger(__name__)

TOOL_PREFIX = "mcp"
_SEPARATOR = "__"


def qualified_tool_name(server: str, tool: str) -> str:
    return f"{TOOL_PREFIX}{_SEPARATOR}{server}{_SEPARATOR}{tool}"


def render_call_result(result: CallToolResult) -> str:
    """Flatten MCP content items into text. Non-text items become a short marker."""
    parts: list[str] = []
    for item in result.content:
        item_type = getattr(item, "type", None)
        if item_type == "text":
            parts.append(item.text)
        elif item_type == "resource":
            parts.append(f"Resource: {item.resource.uri}")
        elif item_type == "resource_link":
            parts.append(f"Resource: {item.uri}")
        elif item_type in ("image", "audio"):
            parts.append(f"[{item_type}: {getattr(item, 'mimeType', 'unknown')}]")
    return "\n".join(parts)


def call_result_to_contract(result: CallToolResult) -> dict[str, Any]:
    text = render_call_result(result)
    if result.isError:
        return {"success": False, "error": text or "MCP tool reported an error"}
    return {"success": True, "output": text}


class McpToolProvider:
    """Connection to one MCP server plus its tool catalogue."""

    def __init__(self, config: McpServerConfig) -> None:
        self.config = config
        self.name = config.name
        self._exit_stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None
        self._tools: dict[str, Tool] = {}  # qualified name -> Tool

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def connect(self) -> None:
        """Open the transport, run the initialize handshake and list tools."""
        stack = AsyncExitStack()
        try:
            if self.config.transport == "stdio":
                params = StdioServerParameters(
                    command=self.config.command,
                    args=self.config.args,
                    env=self.config.env,
                )
                read, write = await stack.enter_async_context(stdio_client(params))
            else:
                http_client = await stack.enter_async_context(
                    httpx.AsyncClient(headers=self.config.headers, timeout=httpx.Timeout(30.0))
                )
                streams = await stack.enter_async_context(
                    streamable_http_client(self.config.url, http_client=http_client)
                )
                read, write = streams[0], streams[1]

            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
            listing = await session.list_tools()
        except BaseException:
            await stack.aclose()
            raise

        self._exit_stack = stack
        self._session = session
        self._tools = {qualified_tool_name(self.name, tool.name): tool for tool in listing.tools}
        logger.info(
            "Connected to MCP server '%s' (%s): %d tools",
            self.name,
            self.config.transport,
            len(self._tools),
        )

    def has_tool(self, tool_name: str) -> bool:
        return tool_name in self._tools

    def tool_definitions(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": qualified,
                    "description": tool.description or "",
                    "parameters": tool.inputSchema or {"type": "object", "properties": {}},
                },
            }
            for qualified, tool in self._tools.items()
        ]

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Call a tool by its qualified name. Transport errors propagate to the dispatcher."""
        if not self.connected:
            return {"success": False, "error": f"MCP server '{self.name}' is not connected"}
        tool = self._tools.get(tool_name)
        if tool is None:
            return {"success": False, "error": f"Unknown tool: {tool_name}"}

        result = await self._session.call_tool(tool.name, arguments)
        return call_result_to_contract(result)

    async def close(self) -> None:
        if self._exit_stack is not None:
            stack, self._exit_stack = self._exit_stack, None
            self._session = None
            self._tools = {}
            await stack.aclose()
            logger.info("Closed MCP server '%s'", self.name)


async def connect_mcp_servers(
    configs: list[McpServerConfig],
    timeout: float = 10.0,
) -> list[McpToolProvider]:
    """Connect every configured server; failures are logged and the server skipped."""
    providers: list[McpToolProvider] = []
    for config in configs:
        provider = McpToolProvider(config)
        try:
            # Connect in this task so the transport scopes are closed from it too
            async with asyncio.timeout(timeout):
                await provider.connect()
        except Exception as e:
            logger.warning("Skipping MCP server '%s': %s", config.name, e)
            continue
        providers.append(provider)
    return providers

"""Tool dispatcher -- routes model tool calls to local handlers or MCP providers.

Local handlers are async callables taking the tool arguments as keyword
arguments and returning the tool contract:

    {"success": bool, "output": str | None, "error": str | None}

Anything the model hands us (bad JSON, unknown tool, wrong arguments) and
anything a handler raises becomes a failed ToolResult.  execute() never
raises, so a broken tool shows up as a failed step, not a crashed turn.
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from conductor.api.models import ToolCall
from conductor.api.schemas import ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[dict[str, Any]]]


class ToolProvider(Protocol):
    """External tool source (e.g. an MCP server) discovered at session start."""

    name: str

    def has_tool(self, tool_name: str) -> bool: ...

    def tool_definitions(self) -> list[dict[str, Any]]: ...

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]: ...


def parse_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """Parse a tool-call argument payload into a dict.

    Raises ValueError with a readable message on malformed payloads.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"arguments are not valid JSON ({e.msg} at position {e.pos})") from e
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ValueError(f"arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


def to_tool_result(tool_name: str, outcome: Any, duration_ms: int | None = None) -> ToolResult:
    """Normalize a handler's return value into a ToolResult."""
    if not isinstance(outcome, dict) or "success" not in outcome:
        return ToolResult(
            tool_name=tool_name,
            success=False,
            error=f"Tool '{tool_name}' returned an invalid result: {str(outcome)[:200]}",
            duration_ms=duration_ms,
        )
    success = bool(outcome["success"])
    return ToolResult(
        tool_name=tool_name,
        success=success,
        output=outcome.get("output") if success else None,
        error=None if success else (outcome.get("error") or "Tool reported failure"),
        duration_ms=duration_ms,
    )


class ToolDispatcher:
    """Registers local tool handlers and dispatches tool calls from the model.

    Lookup order: local registry first, then each external provider in the
    order it was added.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._schemas: dict[str, dict[str, Any]] = {}
        self._providers: list[ToolProvider] = []

    def register(self, name: str, handler: ToolHandler, schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        if name in self._handlers:
            logger.warning("Tool '%s' re-registered, replacing previous handler", name)
        self._handlers[name] = handler
        self._schemas[name] = schema

    def add_provider(self, provider: ToolProvider) -> None:
        self._providers.append(provider)

    def tool_names(self) -> list[str]:
        names = list(self._handlers)
        for provider in self._providers:
            names.extend(d["function"]["name"] for d in provider.tool_definitions())
        return names

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in chat-completions function format."""
        definitions = [
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": schema.get("description", ""),
                    "parameters": {k: v for k, v in schema.items() if k != "description"},
                },
            }
            for name, schema in self._schemas.items()
        ]
        for provider in self._providers:
            definitions.extend(provider.tool_definitions())
        return definitions

    def _resolve_provider(self, name: str) -> ToolProvider | None:
        for provider in self._providers:
            if provider.has_tool(name):
                return provider
        return None

    async def execute(self, tool_call: ToolCall) -> ToolResult:
        """Dispatch a tool call and return a uniform ToolResult. Never raises."""
        name = tool_call.name
        start_time = time.monotonic()

        handler = self._handlers.get(name)
        provider = None if handler else self._resolve_provider(name)
        if handler is None and provider is None:
            logger.warning("Model called unknown tool '%s'", name)
            return ToolResult.failure(name, f"Unknown tool: {name}")

        try:
            args = parse_arguments(tool_call.arguments)
        except ValueError as e:
            logger.warning("Invalid arguments for tool '%s': %s", name, e)
            return ToolResult.failure(name, f"Invalid arguments for tool '{name}': {e}")

        try:
            if handler is not None:
                # Check the call shape first so a TypeError inside the
                # handler is not mistaken for bad arguments
                try:
                    inspect.signature(handler).bind(**args)
                except TypeError as e:
                    return ToolResult.failure(name, f"Invalid arguments for tool '{name}': {e}")
                outcome = await handler(**args)
            else:
                outcome = await provider.call_tool(name, args)
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return ToolResult(
                tool_name=name,
                success=False,
                error=f"Tool error: {e}",
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        result = to_tool_result(name, outcome, duration_ms)
        logger.debug("Tool %s finished in %d ms (success=%s)", name, duration_ms, result.success)
        return result

"""Tests for ToolDispatcher: resolution, argument parsing, error shaping."""

import pytest

from conductor.api.models import ToolCall
from conductor.api.tools import ToolDispatcher, parse_arguments, to_tool_result


class FakeProvider:
    name = "fake"

    def __init__(self):
        self.calls = []

    def has_tool(self, tool_name):
        return tool_name == "mcp__fake__lookup"

    def tool_definitions(self):
        return [
            {
                "type": "function",
                "function": {"name": "mcp__fake__lookup", "description": "", "parameters": {}},
            }
        ]

    async def call_tool(self, tool_name, arguments):
        self.calls.append((tool_name, arguments))
        return {"success": True, "output": f"looked up {arguments.get('key')}"}


class TestParseArguments:
    def test_empty_is_empty_dict(self):
        assert parse_arguments("") == {}
        assert parse_arguments(None) == {}
        assert parse_arguments("null") == {}

    def test_object(self):
        assert parse_arguments('{"a": 1}') == {"a": 1}

    def test_invalid_json(self):
        with pytest.raises(ValueError, match="not valid JSON"):
            parse_arguments('{"a": ')

    def test_non_object(self):
        with pytest.raises(ValueError, match="JSON object"):
            parse_arguments("[1, 2]")


class TestToolDispatcher:
    @pytest.mark.asyncio
    async def test_executes_registered_tool(self, dispatcher):
        result = await dispatcher.execute(ToolCall("c1", "echo", '{"value": "hi"}'))
        assert result.success is True
        assert result.output == "echo: hi"
        assert result.tool_name == "echo"
        assert result.duration_ms is not None

    @pytest.mark.asyncio
    async def test_unknown_tool_never_raises(self, dispatcher):
        result = await dispatcher.execute(ToolCall("c1", "does_not_exist", "{}"))
        assert result.success is False
        assert result.error == "Unknown tool: does_not_exist"

    @pytest.mark.asyncio
    async def test_malformed_arguments(self, dispatcher):
        result = await dispatcher.execute(ToolCall("c1", "echo", "{not json"))
        assert result.success is False
        assert "Invalid arguments for tool 'echo'" in result.error

    @pytest.mark.asyncio
    async def test_missing_required_argument(self, dispatcher):
        result = await dispatcher.execute(ToolCall("c1", "echo", "{}"))
        assert result.success is False
        assert "Invalid arguments" in result.error

    @pytest.mark.asyncio
    async def test_unexpected_argument(self, dispatcher):
        result = await dispatcher.execute(ToolCall("c1", "echo", '{"value": "x", "extra": 1}'))
        assert result.success is False
        assert "Invalid arguments" in result.error

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failure(self):
        dispatcher = ToolDispatcher()

        async def explode() -> dict:
            raise RuntimeError("kaboom")

        dispatcher.register("explode", explode, {"type": "object", "properties": {}})
        result = await dispatcher.execute(ToolCall("c1", "explode", ""))
        assert result.success is False
        assert "kaboom" in result.error

    @pytest.mark.asyncio
    async def test_handler_reported_failure(self, dispatcher):
        result = await dispatcher.execute(ToolCall("c1", "fail", '{"reason": "disk full"}'))
        assert result.success is False
        assert result.error == "Error: disk full"
        assert result.text == "Error: disk full"

    @pytest.mark.asyncio
    async def test_provider_resolution(self, dispatcher):
        provider = FakeProvider()
        dispatcher.add_provider(provider)
        result = await dispatcher.execute(ToolCall("c1", "mcp__fake__lookup", '{"key": "k"}'))
        assert result.success is True
        assert result.output == "looked up k"
        assert provider.calls == [("mcp__fake__lookup", {"key": "k"})]

    def test_tool_definitions_format(self, dispatcher):
        definitions = dispatcher.tool_definitions()
        echo = next(d for d in definitions if d["function"]["name"] == "echo")
        assert echo["type"] == "function"
        assert echo["function"]["description"] == "Echo a value back"
        assert echo["function"]["parameters"]["required"] == ["value"]
        assert "description" not in echo["function"]["parameters"]

    def test_tool_names_include_providers(self, dispatcher):
        dispatcher.add_provider(FakeProvider())
        assert dispatcher.tool_names() == ["echo", "fail", "mcp__fake__lookup"]


class TestToToolResult:
    def test_invalid_outcome(self):
        result = to_tool_result("t", "not a dict")
        assert result.success is False
        assert "invalid result" in result.error

    def test_success_text_defaults(self):
        assert to_tool_result("t", {"success": True}).text == "Success"
        assert to_tool_result("t", {"success": False}).text == "Tool reported failure"

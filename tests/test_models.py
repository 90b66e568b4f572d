"""Tests for wire shapes: Message, StreamChunk, ContextSummary, ChatEntry."""

import json

from conductor.api.models import ContextSummary, Message, StreamChunk, ToolCall
from conductor.api.schemas import ChatEntry, ToolResult


class TestMessage:
    def test_assistant_with_tool_calls(self):
        msg = Message(role="assistant", tool_calls=(ToolCall("c1", "bash", '{"command": "ls"}'),))
        assert msg.to_api() == {
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "bash", "arguments": '{"command": "ls"}'}}
            ],
        }

    def test_tool_message(self):
        msg = Message(role="tool", content="ok", tool_call_id="c1")
        assert msg.to_api() == {"role": "tool", "content": "ok", "tool_call_id": "c1"}


class TestStreamChunk:
    def test_only_relevant_fields(self):
        assert StreamChunk(type="content", content="hi").to_dict() == {"type": "content", "content": "hi"}
        assert StreamChunk(type="token_count", token_count=12).to_dict() == {"type": "token_count", "token_count": 12}
        assert StreamChunk(type="done").to_dict() == {"type": "done"}

    def test_done_with_error(self):
        assert StreamChunk(type="done", error="Model API error: x").to_dict() == {
            "type": "done",
            "error": "Model API error: x",
        }

    def test_tool_result_json(self):
        chunk = StreamChunk(
            type="tool_result",
            tool_call=ToolCall("c1", "echo", "{}"),
            tool_result=ToolResult(tool_name="echo", success=True, output="x", duration_ms=3),
        )
        data = json.loads(chunk.to_json())
        assert data["tool_call"]["id"] == "c1"
        assert data["tool_result"] == {
            "tool_name": "echo",
            "success": True,
            "output": "x",
            "error": None,
            "duration_ms": 3,
        }


class TestContextSummary:
    def test_render_sections(self):
        summary = ContextSummary(critical_info=["ERROR: boom"], narrative="did things")
        rendered = summary.render()
        assert rendered.startswith("[Previous conversation summary]")
        assert "## Critical Information (verbatim)\n- ERROR: boom" in rendered
        assert rendered.endswith("## Narrative\ndid things")


class TestChatEntry:
    def test_serializes_tool_calls(self):
        entry = ChatEntry(type="tool_call", tool_calls=[ToolCall("c1", "bash", "{}")])
        data = entry.model_dump(mode="json")
        assert data["tool_calls"] == [{"id": "c1", "name": "bash", "arguments": "{}"}]
        assert data["is_streaming"] is False

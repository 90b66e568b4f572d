"""Shared fixtures: settings, scripted model client, tool dispatcher."""

from __future__ import annotations

from typing import Any

import pytest

from conductor.api.models import ModelStreamEvent, ToolCall
from conductor.api.tools import ToolDispatcher
from conductor.config import Settings

# ---------------------------------------------------------------------------
# Scripted model stream
# ---------------------------------------------------------------------------


def text(value: str) -> ModelStreamEvent:
    return ModelStreamEvent(type="content_delta", text=value)


def thinking(value: str) -> ModelStreamEvent:
    return ModelStreamEvent(type="thinking_delta", text=value)


def calls(*tool_calls: ToolCall) -> ModelStreamEvent:
    return ModelStreamEvent(type="tool_calls", tool_calls=list(tool_calls))


def end(finish_reason: str = "stop") -> ModelStreamEvent:
    return ModelStreamEvent(type="stream_end", finish_reason=finish_reason)


class FakeChatClient:
    """Replays one scripted list of events per stream() call.

    A script entry may be an Exception, raised when the round starts.
    Once the scripts run out, every round answers with plain text.
    """

    def __init__(self, rounds: list[Any] | None = None, default: list[ModelStreamEvent] | None = None):
        self.model = "fake-model"
        self.rounds = list(rounds or [])
        self.default = default
        self.requests: list[dict[str, Any]] = []

    async def stream(self, messages, tools=None, cancel=None):
        self.requests.append({"messages": messages, "tools": tools})
        if self.rounds:
            script = self.rounds.pop(0)
        else:
            script = self.default or [text("ok"), end()]
        if isinstance(script, Exception):
            raise script
        for event in script:
            if cancel is not None and cancel.cancelled:
                return
            if isinstance(event, Exception):
                raise event
            yield event

    def set_model(self, model: str) -> None:
        self.model = model

    async def complete(self, messages, tools=None, model_override=None):
        return {"role": "assistant", "content": "summary"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values: dict[str, Any] = {
        "summarization_enabled": False,
        "mcp_enabled": False,
        "system_prompt": "You are a test agent.",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(workspace_dir=str(tmp_path))


@pytest.fixture
def dispatcher() -> ToolDispatcher:
    d = ToolDispatcher()

    async def echo(value: str) -> dict:
        return {"success": True, "output": f"echo: {value}"}

    async def fail(reason: str = "boom") -> dict:
        return {"success": False, "error": f"Error: {reason}"}

    d.register(
        "echo",
        echo,
        {
            "type": "object",
            "description": "Echo a value back",
            "properties": {"value": {"type": "string"}},
            "required": ["value"],
        },
    )
    d.register(
        "fail",
        fail,
        {"type": "object", "description": "Always fails", "properties": {"reason": {"type": "string"}}},
    )
    return d

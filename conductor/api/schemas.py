"""Pydantic DTOs shared by the dispatcher, the runner and the HTTP layer.

ToolResult is the uniform tool outcome; ChatEntry is the UI-facing
projection of a turn.  Neither is the system of record -- the Message
sequence owned by ContextManager is.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

from conductor.api.models import ToolCall

ActivityStatus = Literal["starting", "running", "completed", "failed"]
EntryType = Literal["user", "assistant", "tool_call", "tool_result", "agent_activity"]


class ToolResult(BaseModel):
    """Outcome of a single tool call."""

    tool_name: str
    success: bool
    output: str | None = None
    error: str | None = None
    duration_ms: int | None = None

    @property
    def text(self) -> str:
        """Text fed back to the model as the tool message content."""
        if self.success:
            return self.output or "Success"
        return self.error or "Error"

    @classmethod
    def failure(cls, tool_name: str, error: str) -> ToolResult:
        return cls(tool_name=tool_name, success=False, error=error)


class AgentActivity(BaseModel):
    """Status notification posted by a collaborator (e.g. a delegated sub-task)."""

    agent_type: str
    agent_name: str
    status: ActivityStatus
    task_id: str | None = None
    duration_ms: int | None = None
    error: str | None = None

    def describe(self) -> str:
        if self.status == "starting":
            return f"Launching {self.agent_name} agent..."
        if self.status == "running":
            return f"{self.agent_name} is working on the task..."
        if self.status == "completed":
            if self.duration_ms:
                return f"{self.agent_name} completed the task in {self.duration_ms / 1000:.1f}s"
            return f"{self.agent_name} completed the task"
        return f"{self.agent_name} failed to complete the task"


class ChatEntry(BaseModel):
    """One visible entry of a conversation's history."""

    type: EntryType
    content: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    agent_info: AgentActivity | None = None
    is_streaming: bool = False
    is_error: bool = False

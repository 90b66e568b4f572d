"""Shared data models for the API layer.

Kept separate from runner.py so compaction.py and tools.py can import
them without circular imports.  Messages use the OpenAI chat-completions
wire shape because that is what the model endpoint consumes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation emitted by the model.

    ``arguments`` is the raw JSON payload exactly as streamed; it is only
    parsed by the ToolDispatcher.
    """

    id: str
    name: str
    arguments: str = ""

    def to_api(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class Message:
    """A single message in the model-facing sequence. Immutable once appended."""

    role: Role
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None

    def to_api(self) -> dict[str, Any]:
        """Render the OpenAI chat-completions dict for this message."""
        data: dict[str, Any] = {"role": self.role, "content": self.content or ""}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_api() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data

    def text_fields(self) -> list[str]:
        """All textual payload carried by this message (for estimation)."""
        parts = [self.content or ""]
        for tc in self.tool_calls:
            parts.append(tc.name)
            parts.append(tc.arguments)
        return parts


@dataclass
class ContextSummary:
    """Synthesized block that replaces a span of older history."""

    critical_info: list[str] = field(default_factory=list)
    narrative: str = ""
    compressions: int = 0

    def render(self) -> str:
        parts = ["[Previous conversation summary]"]
        if self.critical_info:
            parts.append("## Critical Information (verbatim)\n" + "\n".join(
                f"- {line}" for line in self.critical_info
            ))
        if self.narrative:
            parts.append("## Narrative\n" + self.narrative)
        return "\n\n".join(parts)


@dataclass
class ModelStreamEvent:
    """A single logical event from the model stream.

    type is one of: content_delta, thinking_delta, tool_calls, stream_end.
    tool_calls carries the terminal list for the round.
    """

    type: str
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    usage: dict[str, int] | None = None


@dataclass
class StreamChunk:
    """A chunk of the stream produced for the caller.

    type is one of: content, thinking, tool_calls, tool_result,
    token_count, done.  Only the fields relevant to the type are emitted
    by to_dict().
    """

    type: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call: ToolCall | None = None
    tool_result: Any | None = None  # ToolResult
    token_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.type in ("content", "thinking"):
            data["content"] = self.content
        elif self.type == "tool_calls":
            data["tool_calls"] = [tc.to_api() for tc in self.tool_calls]
        elif self.type == "tool_result":
            data["tool_call"] = self.tool_call.to_api() if self.tool_call else None
            data["tool_result"] = (
                self.tool_result.model_dump() if self.tool_result is not None else None
            )
        elif self.type == "token_count":
            data["token_count"] = self.token_count
        elif self.type == "done" and self.error:
            data["error"] = self.error
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

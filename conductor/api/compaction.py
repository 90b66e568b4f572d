"""Conversation compaction -- token estimation and history management.

Three pieces live here:
  - Token estimation: chars/4 heuristic, pure functions
  - Critical-info extraction: regex heuristics for facts that must
    survive summarization verbatim (errors, file changes, findings)
  - ContextManager: owns the message sequence and replaces the middle
    of history with a single summary message when over budget

This module is independent of AgentRunner to avoid circular imports
and keep runner.py focused on orchestration.
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections.abc import Iterable, Sequence
from typing import Protocol

from conductor.api.models import ContextSummary, Message

logger = logging.getLogger(__name__)

# Deterministic narrative limits (used when no summarizer is configured
# or the summarizer fails)
_NARRATIVE_LINE_CHARS = 200
_NARRATIVE_MAX_CHARS = 2000

# ------------------------------------------------------------------
# Summarization prompts (co-located with compaction logic)
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Create concise, factual summaries "
    "focusing on actions taken and key information."
)

SUMMARY_USER_PROMPT = """\
Summarize this conversation history concisely, focusing on:
- Key decisions made
- Files created or modified
- Important findings or results
- Current project state
- Any pending tasks or issues

Keep the summary under 500 tokens.
PRESERVE exact file paths, function names and error messages.
"""


# ------------------------------------------------------------------
# Token estimation
# ------------------------------------------------------------------


def estimate_text_tokens(text: str | None) -> int:
    """Estimate tokens for a text as ceil(chars / 4). Empty text costs 0."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_tokens(messages: Message | Iterable[Message]) -> int:
    """Estimate tokens for one message or a sequence of messages.

    Counts content, tool-call names and serialized arguments.  Tool
    output is the content of tool-role messages, so it is covered too.
    """
    if isinstance(messages, Message):
        messages = [messages]
    total_chars = 0
    for msg in messages:
        total_chars += sum(len(part) for part in msg.text_fields())
    return math.ceil(total_chars / 4)


# ------------------------------------------------------------------
# Critical-info extraction
# ------------------------------------------------------------------

_ERROR_PATTERN = re.compile(
    r"(?:error|failed|failure|exception)[\s:\-]+[^\n]{0,100}",
    re.IGNORECASE,
)

_FILE_CHANGE_PATTERN = re.compile(
    r"(?:created|modified|edited|updated|deleted|wrote|writing)\s+(?:file\s+)?"
    r"['\"`]?[^\s'\"`]*(?:\.[a-zA-Z0-9]+|Makefile|Dockerfile|README|LICENSE|CHANGELOG)['\"`]?",
    re.IGNORECASE,
)

_SEARCH_PATTERN = re.compile(
    r"(?:found|located|match(?:es)?)\s+(?:in|at)\s+['\"`]?[^\s'\"`]+\.[a-zA-Z0-9]+['\"`]?"
    r"(?:\s*[:(]\s*(?:line\s*)?\d+)?",
    re.IGNORECASE,
)

_FINDING_PATTERN = re.compile(
    r"^\s*(?:found|discovered|key finding|note)\s*:\s*\S[^\n]*$",
    re.IGNORECASE | re.MULTILINE,
)


def _dedup_key(item: str) -> str:
    return " ".join(item.split()).casefold()


def _unique(items: Iterable[str]) -> list[str]:
    """Order-preserving de-duplication, ignoring case and whitespace runs."""
    seen: set[str] = set()
    result = []
    for item in items:
        key = _dedup_key(item)
        if key not in seen:
            seen.add(key)
            result.append(item)
    return result


def extract_critical_info(contents: Sequence[str]) -> list[str]:
    """Extract lines that must be preserved verbatim through summarization.

    Best-effort heuristics: error messages, modified file paths, search
    hits with file locations and explicitly marked findings.  Misses are
    acceptable; anything returned is kept by ContextManager no matter what.
    """
    critical: list[str] = []

    for content in contents:
        if not content:
            continue

        errors = _unique(m.group(0).strip()[:150] for m in _ERROR_PATTERN.finditer(content))
        critical.extend(f"ERROR: {err}" for err in errors[:3])

        file_changes = [m.group(0) for m in _FILE_CHANGE_PATTERN.finditer(content)]
        if file_changes:
            critical.append(f"FILE CHANGE: {', '.join(file_changes[:5])}")

        locations = [m.group(0) for m in _SEARCH_PATTERN.finditer(content)]
        if locations:
            critical.append(f"FOUND: {', '.join(locations[:5])}")

        for m in _FINDING_PATTERN.finditer(content):
            critical.append(f"FINDING: {m.group(0).strip()}")

    return _unique(critical)


# ------------------------------------------------------------------
# Summarizer protocol (LLM injection)
# ------------------------------------------------------------------


class Summarizer(Protocol):
    """Produces a narrative for a transcript, optionally folding a previous one."""

    async def __call__(self, transcript: str, previous: str | None = None) -> str: ...


def serialize_for_summary(messages: Sequence[Message]) -> str:
    """Serialize messages as readable text for summarization."""
    lines = []
    for msg in messages:
        if msg.role == "tool":
            lines.append(f"**Tool result ({msg.tool_call_id}):** {msg.content or ''}")
            continue
        label = msg.role.capitalize()
        text = msg.content or ""
        if msg.tool_calls:
            calls = ", ".join(f"{tc.name}({tc.arguments})" for tc in msg.tool_calls)
            text = f"{text}\n[called: {calls}]" if text else f"[called: {calls}]"
        lines.append(f"**{label}:** {text}")
    return "\n\n".join(lines)


def condense_messages(messages: Sequence[Message]) -> str:
    """Deterministic narrative: first line of every message, truncated."""
    lines = []
    for msg in messages:
        first_line = (msg.content or "").strip().split("\n", 1)[0]
        if msg.role == "tool":
            line = f"- tool -> {first_line}"
        elif msg.tool_calls:
            names = ", ".join(tc.name for tc in msg.tool_calls)
            line = f"- {msg.role}: {first_line} [called {names}]" if first_line else (
                f"- {msg.role}: [called {names}]"
            )
        else:
            line = f"- {msg.role}: {first_line}"
        lines.append(line[:_NARRATIVE_LINE_CHARS])
    return "\n".join(lines)


def _fit_text(text: str, max_chars: int) -> str:
    """Keep the tail of text within max_chars (recent history matters most)."""
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    marker = "[earlier history condensed]\n"
    keep = max_chars - len(marker)
    if keep <= 0:
        return text[-max_chars:]
    return marker + text[-keep:]


# ------------------------------------------------------------------
# Context Manager
# ------------------------------------------------------------------


class ContextManager:
    """Owns the model-facing message sequence and keeps it within budget.

    The leading system message is never evicted.  Compression replaces the
    span between the system message and the recent window with one summary
    message (role "user") carrying the verbatim critical-info block plus a
    condensed narrative.  A previous summary is folded into the next one.

    Critical info accumulates across compressions and is only
    de-duplicated, never dropped.  A long session that keeps producing new
    errors or file changes can therefore grow the block past max_tokens on
    its own; compression then logs a warning and keeps going over budget.
    """

    def __init__(
        self,
        system_prompt: str | None = None,
        *,
        max_tokens: int = 60000,
        max_messages: int = 50,
        keep_recent: int = 20,
        summarizer: Summarizer | None = None,
    ) -> None:
        self._system = Message(role="system", content=system_prompt) if system_prompt else None
        self._messages: list[Message] = [self._system] if self._system else []
        self._max_tokens = max_tokens
        self._max_messages = max_messages
        self._keep_recent = max(1, keep_recent)
        self._summarizer = summarizer
        self._summary: ContextSummary | None = None
        self._summary_message: Message | None = None

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def summary(self) -> ContextSummary | None:
        return self._summary

    @property
    def token_count(self) -> int:
        return estimate_tokens(self._messages)

    def api_messages(self) -> list[dict]:
        return [m.to_api() for m in self._messages]

    def record_message(self, message: Message) -> None:
        """Append a message. No other side effects."""
        self._messages.append(message)

    def record_messages(self, messages: Sequence[Message]) -> None:
        """Append a committed round as one step."""
        self._messages.extend(messages)

    def reset(self) -> None:
        """Drop all history except the system message, and the summary."""
        self._messages = [self._system] if self._system else []
        self._summary = None
        self._summary_message = None

    def _over_budget(self, messages: Sequence[Message]) -> bool:
        return (
            estimate_tokens(messages) > self._max_tokens
            or len(messages) > self._max_messages
        )

    async def manage_context(self) -> bool:
        """Compress history if over budget. Returns True if compressed.

        Never raises: on any unexpected failure the sequence is left as is.
        """
        if not self._over_budget(self._messages):
            return False
        try:
            return await self._compress()
        except Exception:
            logger.exception("Context management failed -- continuing without compression")
            return False

    def _split(self, keep: int) -> tuple[list[Message], list[Message], list[Message]]:
        """Split into (head, middle, recent) keeping up to `keep` recent messages.

        The cut moves forward past tool messages so the recent window never
        starts with a tool result whose tool call was summarized away.
        """
        head = self._messages[:1] if self._system else []
        body = self._messages[len(head):]
        cut = max(0, len(body) - keep)
        while cut < len(body) and body[cut].role == "tool":
            cut += 1
        return head, body[:cut], body[cut:]

    def _build_summary(self, new_messages: Sequence[Message], narrative: str) -> ContextSummary:
        previous = self._summary
        critical = extract_critical_info([m.content for m in new_messages if m.content])
        if previous:
            critical = _unique([*previous.critical_info, *critical])
        return ContextSummary(
            critical_info=critical,
            narrative=narrative,
            compressions=(previous.compressions if previous else 0) + 1,
        )

    def _fallback_narrative(self, new_messages: Sequence[Message]) -> str:
        condensed = condense_messages(new_messages)
        if self._summary and self._summary.narrative:
            condensed = f"{self._summary.narrative}\n{condensed}"
        return _fit_text(condensed, _NARRATIVE_MAX_CHARS)

    async def _compress(self) -> bool:
        start_time = time.monotonic()
        original_count = len(self._messages)

        chosen: tuple[list[Message], list[Message], list[Message], ContextSummary] | None = None
        start_keep = min(self._keep_recent, len(self._messages))
        for keep in range(start_keep, 0, -1):
            head, middle, recent = self._split(keep)
            new_messages = [m for m in middle if m is not self._summary_message]
            if not new_messages:
                continue
            summary = self._build_summary(new_messages, self._fallback_narrative(new_messages))
            candidate = [*head, Message(role="user", content=summary.render()), *recent]
            chosen = (head, new_messages, recent, summary)
            if estimate_tokens(candidate) <= self._max_tokens:
                break

        if chosen is None:
            # Nothing new between the system message and the recent window
            return False

        head, new_messages, recent, summary = chosen

        if self._summarizer is not None:
            try:
                previous = self._summary.narrative if self._summary else None
                narrative = await self._summarizer(serialize_for_summary(new_messages), previous)
                if narrative and narrative.strip():
                    summary.narrative = narrative.strip()
            except Exception as e:
                logger.warning("Summarization failed: %s - keeping condensed transcript", e)

        # Trim the narrative (never the critical info) to fit the budget
        summary.narrative = self._fit_narrative(head, recent, summary)

        summary_message = Message(role="user", content=summary.render())
        self._messages = [*head, summary_message, *recent]
        self._summary = summary
        self._summary_message = summary_message

        tokens = estimate_tokens(self._messages)
        if tokens > self._max_tokens:
            logger.warning(
                "Context still over budget after compression (%d > %d tokens); "
                "critical info and the latest message are kept",
                tokens,
                self._max_tokens,
            )

        logger.info(
            "Context compressed: %d messages summarized, %d recent kept "
            "(%d -> %d messages, %d tokens, %d critical items, %d ms, compression #%d)",
            len(new_messages),
            len(recent),
            original_count,
            len(self._messages),
            tokens,
            len(summary.critical_info),
            int((time.monotonic() - start_time) * 1000),
            summary.compressions,
        )
        return True

    def _fit_narrative(
        self,
        head: Sequence[Message],
        recent: Sequence[Message],
        summary: ContextSummary,
    ) -> str:
        narrative = summary.narrative
        summary.narrative = ""
        skeleton = [*head, Message(role="user", content=summary.render()), *recent]
        # Room left in tokens, converted back to chars; small slack for the header
        available_chars = (self._max_tokens - estimate_tokens(skeleton)) * 4 - 32
        return _fit_text(narrative, available_chars)

"""Stuck detection -- spotting unproductive tool loops within a turn.

detect_stuck_pattern() is a pure function over the recent tool results.
StuckDetectionState holds the rolling window and the per-turn reflection
counter; only the runner mutates it.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

from conductor.api.schemas import ToolResult

logger = logging.getLogger(__name__)

StuckReason = Literal["consecutive_failures", "loop_detected"]


@dataclass(frozen=True)
class StuckDetectionConfig:
    max_consecutive_failures: int
    stuck_detection_window: int
    current_reflection_count: int
    max_reflections_per_turn: int
    loop_threshold: int | None = None  # None = window - 1

    @property
    def effective_loop_threshold(self) -> int:
        if self.loop_threshold is not None:
            return self.loop_threshold
        return self.stuck_detection_window - 1


@dataclass
class StuckDetectionResult:
    is_stuck: bool
    reason: StuckReason | None = None
    reflection: str | None = None
    failed_tools: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    looping_tool: str | None = None


def find_most_common_tool(results: Sequence[ToolResult]) -> tuple[str, int]:
    """Return (tool_name, count) of the most frequent tool. Ties go to the first seen."""
    counts: dict[str, int] = {}
    for r in results:
        counts[r.tool_name] = counts.get(r.tool_name, 0) + 1
    best_tool, best_count = "", 0
    for tool, count in counts.items():  # dicts keep first-seen order
        if count > best_count:
            best_tool, best_count = tool, count
    return best_tool, best_count


def _consecutive_failure_reflection(count: int, tools: list[str], errors: list[str]) -> str:
    return (
        f"REFLECTION NEEDED: The last {count} tool calls have failed.\n\n"
        f"Failed tools: {', '.join(tools)}\n"
        f"Error patterns: {'; '.join(errors[:3])}\n\n"
        "Before continuing, please:\n"
        "1. Analyze why these tools are failing\n"
        "2. Consider if you're using the right tool for the task\n"
        "3. Check if you need to gather more information first (e.g. read_file)\n"
        "4. Try a completely different approach if the current one isn't working\n\n"
        "Do NOT repeat the same failed operation. Adapt your strategy."
    )


def _loop_reflection(tool: str, count: int, window: int) -> str:
    return (
        f"REFLECTION NEEDED: You appear to be stuck in a loop, calling '{tool}' "
        f"{count} times in the last {window} tool calls.\n\n"
        "Please:\n"
        "1. Stop and reconsider the approach\n"
        "2. Try a different tool or method\n"
        "3. If the file doesn't exist, it may need to be created\n"
        "4. If a search isn't finding results, try different search terms\n"
        "5. Ask the user for clarification if the task is unclear\n\n"
        "Do NOT continue with the same approach."
    )


def detect_stuck_pattern(
    recent_results: Sequence[ToolResult],
    config: StuckDetectionConfig,
) -> StuckDetectionResult:
    """Classify the recent tool results as stuck or not.

    Checks, in order: reflection budget, a trailing run of failures of at
    least max_consecutive_failures, then one tool dominating the last
    stuck_detection_window results.  Never mutates its inputs; the caller
    increments the reflection counter when it acts on a stuck result.
    """
    if config.current_reflection_count >= config.max_reflections_per_turn:
        return StuckDetectionResult(is_stuck=False)

    run: list[ToolResult] = []
    for result in reversed(recent_results):
        if result.success:
            break
        run.append(result)

    if run and len(run) >= config.max_consecutive_failures:
        run.reverse()  # chronological order for reporting
        tools = list(dict.fromkeys(r.tool_name for r in run))
        errors = list(dict.fromkeys(r.error for r in run if r.error))
        return StuckDetectionResult(
            is_stuck=True,
            reason="consecutive_failures",
            reflection=_consecutive_failure_reflection(len(run), tools, errors),
            failed_tools=tools,
            errors=errors,
        )

    window_size = config.stuck_detection_window
    if len(recent_results) >= window_size:
        window = recent_results[-window_size:]
        tool, count = find_most_common_tool(window)
        if count >= config.effective_loop_threshold:
            return StuckDetectionResult(
                is_stuck=True,
                reason="loop_detected",
                reflection=_loop_reflection(tool, count, window_size),
                looping_tool=tool,
            )

    return StuckDetectionResult(is_stuck=False)


class StuckDetectionState:
    """Rolling window of recent ToolResults plus the per-turn reflection counter."""

    def __init__(
        self,
        *,
        max_consecutive_failures: int = 3,
        stuck_detection_window: int = 5,
        max_reflections_per_turn: int = 2,
        loop_threshold: int | None = None,
    ) -> None:
        self._max_consecutive_failures = max_consecutive_failures
        self._window_size = stuck_detection_window
        self._max_reflections = max_reflections_per_turn
        self._loop_threshold = loop_threshold
        # Must hold a full failure run even if it is longer than the loop window
        self._window: deque[ToolResult] = deque(
            maxlen=max(stuck_detection_window, max_consecutive_failures)
        )
        self._reflection_count = 0

    @property
    def reflection_count(self) -> int:
        return self._reflection_count

    @property
    def recent_results(self) -> list[ToolResult]:
        return list(self._window)

    def record(self, result: ToolResult) -> None:
        self._window.append(result)

    def check(self) -> StuckDetectionResult:
        config = StuckDetectionConfig(
            max_consecutive_failures=self._max_consecutive_failures,
            stuck_detection_window=self._window_size,
            current_reflection_count=self._reflection_count,
            max_reflections_per_turn=self._max_reflections,
            loop_threshold=self._loop_threshold,
        )
        return detect_stuck_pattern(list(self._window), config)

    def note_reflection(self) -> None:
        """Count an injected reflection and forget the evidence that caused it."""
        self._reflection_count += 1
        self._window.clear()

    def reset(self) -> None:
        """Start of a new user turn."""
        self._window.clear()
        self._reflection_count = 0

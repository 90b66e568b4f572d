"""Agent runner -- streams conversational turns with a bounded tool loop.

A turn is driven by an explicit TurnState machine:

    idle -> awaiting_model_stream -> (emitting_content | emitting_thinking)
         -> done
         -> executing_tools -> feeding_results_back -> awaiting_model_stream

with terminal ``aborted`` (reachable from any non-idle state) and
``failed`` (model transport error).

Each round's assistant tool-call message, tool messages and optional
reflection are committed to the ContextManager as one step after every
call in the round has completed, so an abort never leaves a tool call
without its result in the model-facing sequence.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from conductor.api.cancellation import CancellationToken
from conductor.api.client import ChatClient, ModelApiError
from conductor.api.compaction import (
    SUMMARY_SYSTEM_PROMPT,
    SUMMARY_USER_PROMPT,
    ContextManager,
    Summarizer,
)
from conductor.api.models import Message, StreamChunk, ToolCall
from conductor.api.schemas import AgentActivity, ChatEntry
from conductor.api.stuck import StuckDetectionResult, StuckDetectionState
from conductor.api.tools import ToolDispatcher
from conductor.config import Settings
from conductor.events import ActivityChannel

logger = logging.getLogger(__name__)

MAX_CONVERSATIONS = 100

MAX_ROUNDS_NOTICE = "\n\nMaximum tool execution rounds reached. Stopping to prevent infinite loops."
ERROR_PREFIX = "Sorry, I encountered an error:\n\n"


class TurnState(StrEnum):
    IDLE = "idle"
    AWAITING_MODEL_STREAM = "awaiting_model_stream"
    EMITTING_CONTENT = "emitting_content"
    EMITTING_THINKING = "emitting_thinking"
    EXECUTING_TOOLS = "executing_tools"
    FEEDING_RESULTS_BACK = "feeding_results_back"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({TurnState.DONE, TurnState.ABORTED, TurnState.FAILED})

_STREAMING = {
    TurnState.EMITTING_CONTENT,
    TurnState.EMITTING_THINKING,
    TurnState.EXECUTING_TOOLS,
    TurnState.DONE,
    TurnState.ABORTED,
    TurnState.FAILED,
}

_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.AWAITING_MODEL_STREAM}),
    TurnState.AWAITING_MODEL_STREAM: frozenset(_STREAMING),
    TurnState.EMITTING_CONTENT: frozenset(_STREAMING),
    TurnState.EMITTING_THINKING: frozenset(_STREAMING),
    TurnState.EXECUTING_TOOLS: frozenset(
        {TurnState.FEEDING_RESULTS_BACK, TurnState.ABORTED, TurnState.FAILED}
    ),
    TurnState.FEEDING_RESULTS_BACK: frozenset(
        {TurnState.AWAITING_MODEL_STREAM, TurnState.DONE, TurnState.ABORTED, TurnState.FAILED}
    ),
    TurnState.DONE: frozenset({TurnState.IDLE}),
    TurnState.ABORTED: frozenset({TurnState.IDLE}),
    TurnState.FAILED: frozenset({TurnState.IDLE}),
}


class InvalidTransitionError(RuntimeError):
    """A TurnState change not allowed by the transition table."""


class TurnInProgressError(RuntimeError):
    """A second turn was started on a session whose turn is still running."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"A turn is already in progress for session '{session_id}'")
        self.session_id = session_id


@dataclass
class Conversation:
    """Per-session state. Only the runner mutates it."""

    session_id: str
    context: ContextManager
    stuck: StuckDetectionState
    history: list[ChatEntry] = field(default_factory=list)
    activity: ActivityChannel = field(default_factory=ActivityChannel)
    cancel: CancellationToken = field(default_factory=CancellationToken)
    state: TurnState = TurnState.IDLE
    in_progress: bool = False

    def transition(self, target: TurnState) -> None:
        if target == self.state and target in (
            TurnState.EMITTING_CONTENT,
            TurnState.EMITTING_THINKING,
        ):
            return
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.state} -> {target}")
        logger.debug("Session %s: %s -> %s", self.session_id, self.state, target)
        self.state = target


@dataclass
class _TurnBuffer:
    """Uncommitted output of the round currently being streamed."""

    content_parts: list[str] = field(default_factory=list)
    assistant_entry: ChatEntry | None = None

    @property
    def content(self) -> str:
        return "".join(self.content_parts)

    def start_round(self) -> None:
        self.content_parts = []
        self.assistant_entry = None

    def append_content(self, text: str, history: list[ChatEntry]) -> None:
        self.content_parts.append(text)
        if self.assistant_entry is None:
            self.assistant_entry = ChatEntry(type="assistant", is_streaming=True)
            history.append(self.assistant_entry)
        self.assistant_entry.content += text

    def finalize_entry(self) -> None:
        if self.assistant_entry is not None:
            self.assistant_entry.is_streaming = False


def make_summarizer(client: ChatClient, model: str | None = None) -> Summarizer:
    """Build a Summarizer backed by a non-streaming completion call."""

    async def summarize(transcript: str, previous: str | None = None) -> str:
        prompt = SUMMARY_USER_PROMPT
        if previous:
            prompt += f"\nFold in this earlier summary:\n{previous}\n"
        prompt += f"\nConversation:\n{transcript}"
        reply = await client.complete(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            model_override=model,
        )
        return reply.get("content") or ""

    return summarize


class AgentRunner:
    """Runs streaming turns against the model with tool dispatch.

    Collaborators are injected: the model client, the tool dispatcher and
    settings.  Conversations are kept in an LRU map keyed by session id.
    """

    def __init__(
        self,
        client: ChatClient,
        dispatcher: ToolDispatcher,
        settings: Settings,
        summarizer: Summarizer | None = None,
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._settings = settings
        if summarizer is None and settings.summarization_enabled:
            summarizer = make_summarizer(client, settings.summary_model)
        self._summarizer = summarizer
        self._conversations: OrderedDict[str, Conversation] = OrderedDict()

    # ------------------------------------------------------------------
    # Conversation management
    # ------------------------------------------------------------------

    def _new_conversation(self, session_id: str) -> Conversation:
        s = self._settings
        return Conversation(
            session_id=session_id,
            context=ContextManager(
                s.system_prompt,
                max_tokens=s.context_max_tokens,
                max_messages=s.context_max_messages,
                keep_recent=s.context_keep_recent,
                summarizer=self._summarizer,
            ),
            stuck=StuckDetectionState(
                max_consecutive_failures=s.max_consecutive_failures,
                stuck_detection_window=s.stuck_detection_window,
                max_reflections_per_turn=s.max_reflections_per_turn,
                loop_threshold=s.loop_threshold,
            ),
        )

    def _get_or_create_conversation(self, session_id: str) -> Conversation:
        """Get existing conversation or create new one (LRU eviction)."""
        if session_id in self._conversations:
            self._conversations.move_to_end(session_id)
            return self._conversations[session_id]

        while len(self._conversations) >= MAX_CONVERSATIONS:
            evicted_id, evicted = next(iter(self._conversations.items()))
            if evicted.in_progress:
                # Never evict a running turn; move it to the back instead
                self._conversations.move_to_end(evicted_id)
                if all(c.in_progress for c in self._conversations.values()):
                    break
                continue
            self._conversations.popitem(last=False)
            logger.debug("Evicted conversation %s", evicted_id)

        conversation = self._new_conversation(session_id)
        self._conversations[session_id] = conversation
        return conversation

    def tool_names(self) -> list[str]:
        return self._dispatcher.tool_names()

    @property
    def current_model(self) -> str:
        return self._client.model

    def set_model(self, model: str) -> None:
        """Switch the model used for subsequent rounds of every session."""
        previous = self._client.model
        self._client.set_model(model)
        logger.info("Model switched: %s -> %s", previous, model)

    def get_conversation(self, session_id: str) -> Conversation | None:
        return self._conversations.get(session_id)

    def is_turn_in_progress(self, session_id: str) -> bool:
        conversation = self._conversations.get(session_id)
        return conversation is not None and conversation.in_progress

    def get_chat_history(self, session_id: str) -> list[ChatEntry]:
        """Visible history for a session (activities drained first)."""
        conversation = self._conversations.get(session_id)
        if conversation is None:
            return []
        if not conversation.in_progress:
            self._drain_activity(conversation)
        return list(conversation.history)

    def get_context_summary(self, session_id: str) -> dict[str, Any] | None:
        conversation = self._conversations.get(session_id)
        if conversation is None:
            return None
        context = conversation.context
        summary = context.summary
        return {
            "session_id": session_id,
            "state": str(conversation.state),
            "message_count": len(context.messages),
            "token_count": context.token_count,
            "compressions": summary.compressions if summary else 0,
            "critical_info": list(summary.critical_info) if summary else [],
        }

    def add_agent_activity(self, session_id: str, activity: AgentActivity) -> bool:
        """Post a collaborator activity. Applied to history at the next suspension point."""
        conversation = self._get_or_create_conversation(session_id)
        accepted = conversation.activity.post(activity)
        if accepted and not conversation.in_progress:
            self._drain_activity(conversation)
        return accepted

    def abort(self, session_id: str) -> bool:
        """Request cancellation of the running turn. Returns False if none is running."""
        conversation = self._conversations.get(session_id)
        if conversation is None or not conversation.in_progress:
            return False
        conversation.cancel.cancel()
        return True

    def reset_conversation(self, session_id: str) -> None:
        """Clear history and context, keeping the system prompt."""
        conversation = self._conversations.get(session_id)
        if conversation is None:
            return
        if conversation.in_progress:
            raise TurnInProgressError(session_id)
        conversation.context.reset()
        conversation.stuck.reset()
        conversation.history.clear()
        conversation.activity.drain()
        logger.info("Reset conversation %s", session_id)

    async def end_conversation(self, session_id: str) -> bool:
        """Cancel any running turn and drop the conversation."""
        conversation = self._conversations.pop(session_id, None)
        if conversation is None:
            return False
        if conversation.in_progress:
            conversation.cancel.cancel("conversation ended")
        logger.info("Ended conversation %s", session_id)
        return True

    def _drain_activity(self, conversation: Conversation) -> None:
        for activity in conversation.activity.drain():
            conversation.history.append(
                ChatEntry(
                    type="agent_activity",
                    content=activity.describe(),
                    agent_info=activity,
                    is_error=activity.status == "failed",
                )
            )

    # ------------------------------------------------------------------
    # Streaming turn
    # ------------------------------------------------------------------

    async def stream_chat(self, session_id: str, message: str) -> AsyncGenerator[StreamChunk, None]:
        """Run one user turn, yielding StreamChunks.

        Raises TurnInProgressError (on first iteration) if the session
        already has a running turn.
        """
        conversation = self._get_or_create_conversation(session_id)
        if conversation.in_progress:
            raise TurnInProgressError(session_id)

        conversation.in_progress = True
        if conversation.state != TurnState.IDLE:
            conversation.transition(TurnState.IDLE)
        conversation.cancel = CancellationToken()
        conversation.stuck.reset()
        turn = _TurnBuffer()
        chunks = self._run_turn(conversation, message, turn)

        try:
            async for chunk in chunks:
                yield chunk
        finally:
            await chunks.aclose()
            if conversation.state not in TERMINAL_STATES:
                # Consumer went away or the turn was cancelled mid-flight
                self._finish_aborted(conversation, turn)
            conversation.in_progress = False
            self._drain_activity(conversation)

    async def process_user_message(self, session_id: str, message: str) -> list[ChatEntry]:
        """Run one turn to completion and return the history entries it added."""
        conversation = self._get_or_create_conversation(session_id)
        start = len(conversation.history)
        async for _ in self.stream_chat(session_id, message):
            pass
        return conversation.history[start:]

    async def _run_turn(
        self,
        conversation: Conversation,
        message: str,
        turn: _TurnBuffer,
    ) -> AsyncGenerator[StreamChunk, None]:
        context = conversation.context
        cancel = conversation.cancel
        max_rounds = self._settings.max_tool_rounds

        conversation.history.append(ChatEntry(type="user", content=message))
        context.record_message(Message(role="user", content=message))
        await context.manage_context()
        yield StreamChunk(type="token_count", token_count=context.token_count)

        tools = self._dispatcher.tool_definitions() or None

        for round_index in range(max_rounds):
            if round_index > 0:
                await context.manage_context()
            self._drain_activity(conversation)
            if cancel.cancelled:
                return

            conversation.transition(TurnState.AWAITING_MODEL_STREAM)
            turn.start_round()
            tool_calls: list[ToolCall] = []

            try:
                async for event in self._client.stream(context.api_messages(), tools, cancel=cancel):
                    if cancel.cancelled:
                        break
                    if event.type == "content_delta":
                        conversation.transition(TurnState.EMITTING_CONTENT)
                        turn.append_content(event.text, conversation.history)
                        yield StreamChunk(type="content", content=event.text)
                    elif event.type == "thinking_delta":
                        conversation.transition(TurnState.EMITTING_THINKING)
                        yield StreamChunk(type="thinking", content=event.text)
                    elif event.type == "tool_calls":
                        tool_calls = list(event.tool_calls)
            except ModelApiError as e:
                async for chunk in self._fail_turn(conversation, turn, e):
                    yield chunk
                return

            if cancel.cancelled:
                return

            if not tool_calls:
                content = turn.content
                if content:
                    context.record_message(Message(role="assistant", content=content))
                turn.finalize_entry()
                conversation.transition(TurnState.DONE)
                yield StreamChunk(type="token_count", token_count=context.token_count)
                yield StreamChunk(type="done")
                return

            # Tool round
            conversation.transition(TurnState.EXECUTING_TOOLS)
            turn.finalize_entry()
            conversation.history.append(
                ChatEntry(type="tool_call", content=turn.content, tool_calls=tool_calls)
            )
            yield StreamChunk(type="tool_calls", tool_calls=tool_calls)

            round_messages = [
                Message(role="assistant", content=turn.content or None, tool_calls=tuple(tool_calls))
            ]
            stuck: StuckDetectionResult | None = None
            for tool_call in tool_calls:
                self._drain_activity(conversation)
                if cancel.cancelled:
                    return
                result = await self._dispatcher.execute(tool_call)
                if cancel.cancelled:
                    logger.info("Discarding result of %s after abort", tool_call.name)
                    return
                conversation.stuck.record(result)
                if stuck is None:
                    check = conversation.stuck.check()
                    if check.is_stuck:
                        stuck = check
                round_messages.append(
                    Message(role="tool", content=result.text, tool_call_id=tool_call.id)
                )
                conversation.history.append(
                    ChatEntry(
                        type="tool_result",
                        content=result.text,
                        tool_call=tool_call,
                        tool_result=result,
                        is_error=not result.success,
                    )
                )
                yield StreamChunk(type="tool_result", tool_call=tool_call, tool_result=result)

            if cancel.cancelled:
                return

            conversation.transition(TurnState.FEEDING_RESULTS_BACK)
            if stuck is not None:
                logger.warning(
                    "Session %s stuck (%s), injecting reflection %d/%d",
                    conversation.session_id,
                    stuck.reason,
                    conversation.stuck.reflection_count + 1,
                    self._settings.max_reflections_per_turn,
                )
                round_messages.append(Message(role="user", content=stuck.reflection))
                conversation.stuck.note_reflection()

            context.record_messages(round_messages)
            turn.start_round()
            yield StreamChunk(type="token_count", token_count=context.token_count)

        # Round budget exhausted: no further model call
        logger.warning(
            "Session %s reached max_tool_rounds=%d", conversation.session_id, max_rounds
        )
        conversation.transition(TurnState.DONE)
        conversation.history.append(ChatEntry(type="assistant", content=MAX_ROUNDS_NOTICE.strip()))
        yield StreamChunk(type="content", content=MAX_ROUNDS_NOTICE)
        yield StreamChunk(type="done")

    async def _fail_turn(
        self,
        conversation: Conversation,
        turn: _TurnBuffer,
        error: ModelApiError,
    ) -> AsyncGenerator[StreamChunk, None]:
        logger.error("Turn failed for session %s: %s", conversation.session_id, error)
        conversation.transition(TurnState.FAILED)
        turn.finalize_entry()
        if turn.content:
            conversation.context.record_message(Message(role="assistant", content=turn.content))
        text = f"{ERROR_PREFIX}{error}"
        conversation.history.append(ChatEntry(type="assistant", content=text, is_error=True))
        yield StreamChunk(type="content", content=text)
        yield StreamChunk(type="done", error=str(error))

    def _finish_aborted(self, conversation: Conversation, turn: _TurnBuffer) -> None:
        """Finalize a cancelled turn: partial text is kept, the open round is not."""
        if conversation.state != TurnState.IDLE:
            conversation.transition(TurnState.ABORTED)
        turn.finalize_entry()
        # The open round's tool calls are dropped; its text survives on its own
        if turn.content:
            conversation.context.record_message(Message(role="assistant", content=turn.content))
        logger.info(
            "Turn aborted for session %s (%s)",
            conversation.session_id,
            conversation.cancel.reason or "consumer closed",
        )

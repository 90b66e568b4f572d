"""In-process activity channel for Conductor.

Collaborators (delegated sub-tasks, external tools) post AgentActivity
notifications here instead of calling back into the runner.  The runner
drains the channel at its own suspension points, so entries land in the
chat history in a well-defined order and never touch the model-facing
message sequence.
"""

from __future__ import annotations

import asyncio
import logging

from conductor.api.schemas import AgentActivity

logger = logging.getLogger(__name__)


class ActivityChannel:
    """Bounded FIFO of AgentActivity notifications for one conversation.

    post() never blocks the caller: if the queue is full the activity is
    dropped with a warning.
    """

    def __init__(self, max_queue: int = 256):
        self._queue: asyncio.Queue[AgentActivity] = asyncio.Queue(maxsize=max_queue)

    def post(self, activity: AgentActivity) -> bool:
        """Queue an activity. Returns False if it had to be dropped."""
        try:
            self._queue.put_nowait(activity)
        except asyncio.QueueFull:
            logger.warning(
                "Activity channel full, dropping %s/%s",
                activity.agent_name,
                activity.status,
            )
            return False
        logger.debug("Queued activity %s: %s", activity.agent_name, activity.status)
        return True

    def drain(self) -> list[AgentActivity]:
        """Take every pending activity, oldest first."""
        activities = []
        while True:
            try:
                activities.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return activities

    async def get(self) -> AgentActivity:
        """Wait for the next activity (for consumers outside the runner)."""
        return await self._queue.get()

    @property
    def pending(self) -> int:
        """Number of activities waiting in queue."""
        return self._queue.qsize()

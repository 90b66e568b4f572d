"""Cooperative cancellation for a single turn.

The runner polls the token before every network read and every tool
dispatch.  Nothing is interrupted preemptively: a tool that ignores the
token runs to completion and its result is simply discarded.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class CancellationToken:
    """Shared abort flag for one user turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "user abort") -> None:
        """Signal cancellation. Idempotent; the first reason wins."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info("Turn cancellation requested (%s)", reason)

    async def wait(self) -> None:
        """Block until cancelled (for collaborators that want to observe it)."""
        await self._event.wait()

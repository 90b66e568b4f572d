"""Tests for ActivityChannel and CancellationToken."""

import asyncio

import pytest

from conductor.api.cancellation import CancellationToken
from conductor.api.schemas import AgentActivity
from conductor.events import ActivityChannel


def _activity(name: str, status: str = "running") -> AgentActivity:
    return AgentActivity(agent_type="general", agent_name=name, status=status)


class TestActivityChannel:
    def test_drain_is_fifo(self):
        channel = ActivityChannel()
        channel.post(_activity("a"))
        channel.post(_activity("b"))
        assert channel.pending == 2
        assert [a.agent_name for a in channel.drain()] == ["a", "b"]
        assert channel.pending == 0
        assert channel.drain() == []

    def test_full_channel_drops(self):
        channel = ActivityChannel(max_queue=1)
        assert channel.post(_activity("a")) is True
        assert channel.post(_activity("b")) is False
        assert [a.agent_name for a in channel.drain()] == ["a"]

    @pytest.mark.asyncio
    async def test_get_waits(self):
        channel = ActivityChannel()
        waiter = asyncio.create_task(channel.get())
        await asyncio.sleep(0)
        channel.post(_activity("late"))
        activity = await asyncio.wait_for(waiter, timeout=1)
        assert activity.agent_name == "late"

    def test_describe_messages(self):
        assert _activity("x", "starting").describe() == "Launching x agent..."
        assert _activity("x", "running").describe() == "x is working on the task..."
        assert _activity("x", "completed").describe() == "x completed the task"
        assert _activity("x", "failed").describe() == "x failed to complete the task"


class TestCancellationToken:
    def test_first_reason_wins(self):
        token = CancellationToken()
        assert token.cancelled is False
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled is True
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_wait(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)

"""Tests for agent/cancellation.py and agent/steering.py."""

import asyncio

import pytest

from agent.cancellation import (
    CANCELLED_MESSAGE,
    CancelToken,
    InferenceCancelled,
    raise_if_cancelled,
    run_cancellable,
)
from agent.chat_types import ChatMessage
from agent.steering import SteeringQueue


class TestCancelToken:
    def test_initial_state(self):
        token = CancelToken()
        assert token.cancelled is False
        assert token.reason is None
        token.raise_if_cancelled()

    def test_cancel_is_idempotent(self):
        token = CancelToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled is True
        assert token.reason == "first"

    def test_raise_uses_reason_or_default(self):
        token = CancelToken()
        token.cancel()
        with pytest.raises(InferenceCancelled, match=CANCELLED_MESSAGE):
            token.raise_if_cancelled()

        token = CancelToken()
        token.cancel("user hit ctrl+c")
        with pytest.raises(InferenceCancelled, match="user hit ctrl"):
            raise_if_cancelled(token)

    def test_none_token_is_noop(self):
        raise_if_cancelled(None)

    @pytest.mark.asyncio
    async def test_sleep_completes(self):
        await CancelToken().sleep(0.01)

    @pytest.mark.asyncio
    async def test_sleep_interrupted(self):
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        with pytest.raises(InferenceCancelled):
            await asyncio.wait_for(token.sleep(30), timeout=5)


class TestRunCancellable:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            return 7

        assert await run_cancellable(work(), CancelToken()) == 7
        assert await run_cancellable(work(), None) == 7

    @pytest.mark.asyncio
    async def test_abandons_inflight_work(self):
        token = CancelToken()
        finished = []

        async def slow():
            await asyncio.sleep(30)
            finished.append(True)

        asyncio.get_running_loop().call_later(0.05, token.cancel)
        with pytest.raises(InferenceCancelled):
            await asyncio.wait_for(run_cancellable(slow(), token), timeout=5)
        assert finished == []

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        async def broken():
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await run_cancellable(broken(), CancelToken())


class TestSteeringQueue:
    def test_fifo_drain(self):
        queue = SteeringQueue()
        queue.push("first")
        queue.push(ChatMessage(role="user", text="second"))
        assert len(queue) == 2
        assert [m.text for m in queue.drain()] == ["first", "second"]
        assert queue.drain() == []

    def test_blank_text_ignored(self):
        queue = SteeringQueue()
        queue.push("   ")
        assert len(queue) == 0

    def test_text_is_stripped(self):
        queue = SteeringQueue()
        queue.push("  go left  ")
        assert queue.drain()[0].text == "go left"

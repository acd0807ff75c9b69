"""Tests for run_agent.py - LoafAgent and the console renderer.

Tests cover:
- History on success, failure and interrupt (applied steering, partial answers)
- interrupt() cancels the in-flight request; no-op when idle
- Steering messages reach the inference request; late ones are discarded
- Concurrent turns are rejected
- Console renderer output for answers, thoughts, tool previews, retries
"""

import asyncio
import io
import json

import pytest

from agent.cancellation import InferenceCancelled
from agent.chat_types import DebugEvent, ModelResult, StreamChunk, StreamSegment
from agent.config import LoafConfig
from run_agent import LoafAgent, _ConsoleRenderer
from tools import ToolRegistry
from tools.process_registry import ProcessSessionManager


class FakeInference:
    """Stands in for an InferenceLoop; records requests and replays answers.

    Like the real loop it drains steering at the top of the run.  *during*
    is called with the request afterwards, before the answer is produced.
    """

    def __init__(self, answers=None, block=False, partial=None, during=None):
        self.answers = list(answers or ["ok"])
        self.block = block
        self.partial = partial
        self.during = during
        self.requests = []
        self.drained = []
        self.started = asyncio.Event()

    async def run(self, request, on_chunk=None, on_debug=None):
        self.requests.append(request)
        self.drained.append([m.text for m in request.drain_steering_messages()])
        if self.during is not None:
            self.during(request)
        if self.partial and on_chunk is not None:
            on_chunk(StreamChunk(answer_text=self.partial, segments=[StreamSegment("answer", self.partial)]))
        self.started.set()
        if self.block:
            while True:
                request.cancel_token.raise_if_cancelled()
                await asyncio.sleep(0.01)
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        if on_chunk is not None:
            on_chunk(StreamChunk(answer_text=answer, segments=[StreamSegment("answer", answer)]))
        return ModelResult(answer=answer)


@pytest.fixture
def agent_factory(tmp_path):
    def make(inference):
        config = LoafConfig(home=tmp_path, provider="openrouter", openrouter_api_key="k")
        return LoafAgent(
            config,
            registry=ToolRegistry(),
            sessions=ProcessSessionManager(data_dir=tmp_path),
            inference=inference,
            load_custom_tools=False,
        )
    return make


# ---------------------------------------------------------------------------
# LoafAgent
# ---------------------------------------------------------------------------

class TestLoafAgent:
    @pytest.mark.asyncio
    async def test_successful_turn_extends_history(self, agent_factory):
        inference = FakeInference(["four", "five"])
        agent = agent_factory(inference)

        result = await agent.run_conversation("2+2?")
        assert result.answer == "four"
        assert [(m.role, m.text) for m in agent.history] == [("user", "2+2?"), ("assistant", "four")]

        await agent.run_conversation("and +1?")
        assert [m.text for m in inference.requests[1].messages] == ["2+2?", "four", "and +1?"]
        assert agent.busy is False

    @pytest.mark.asyncio
    async def test_failed_turn_leaves_history_untouched(self, agent_factory):
        agent = agent_factory(FakeInference([RuntimeError("provider down")]))
        with pytest.raises(RuntimeError, match="provider down"):
            await agent.run_conversation("hello")
        assert agent.history == []
        assert agent.busy is False

    @pytest.mark.asyncio
    async def test_request_carries_config(self, agent_factory):
        inference = FakeInference()
        agent = agent_factory(inference)
        await agent.run_conversation("hi")
        request = inference.requests[0]
        assert request.model == agent.config.model
        assert request.thinking_level == agent.config.thinking_level
        assert request.cancel_token is not None

    @pytest.mark.asyncio
    async def test_interrupt(self, agent_factory):
        inference = FakeInference(block=True)
        agent = agent_factory(inference)
        assert agent.interrupt() is False

        task = asyncio.ensure_future(agent.run_conversation("long job"))
        await asyncio.wait_for(inference.started.wait(), timeout=5)
        assert agent.busy is True
        assert agent.interrupt("stop") is True

        with pytest.raises(InferenceCancelled):
            await asyncio.wait_for(task, timeout=5)
        assert [(m.role, m.text) for m in agent.history] == [("user", "long job")]
        assert agent.busy is False

    @pytest.mark.asyncio
    async def test_interrupt_keeps_steering_and_partial_answer(self, agent_factory):
        inference = FakeInference(block=True, partial="Working on it ")
        agent = agent_factory(inference)
        agent.steer("only the src directory")

        task = asyncio.ensure_future(agent.run_conversation("count lines"))
        await asyncio.wait_for(inference.started.wait(), timeout=5)
        agent.interrupt()
        with pytest.raises(InferenceCancelled):
            await asyncio.wait_for(task, timeout=5)

        assert [(m.role, m.text) for m in agent.history] == [
            ("user", "count lines"),
            ("user", "only the src directory"),
            ("assistant", "Working on it"),
        ]

    @pytest.mark.asyncio
    async def test_concurrent_turn_rejected(self, agent_factory):
        inference = FakeInference(block=True)
        agent = agent_factory(inference)
        task = asyncio.ensure_future(agent.run_conversation("first"))
        await asyncio.wait_for(inference.started.wait(), timeout=5)

        with pytest.raises(RuntimeError, match="already in flight"):
            await agent.run_conversation("second")

        agent.interrupt()
        with pytest.raises(InferenceCancelled):
            await asyncio.wait_for(task, timeout=5)

    @pytest.mark.asyncio
    async def test_steering_drained_by_request(self, agent_factory):
        inference = FakeInference()
        agent = agent_factory(inference)
        agent.steer("prefer metric units")
        await agent.run_conversation("how far?")

        assert inference.drained == [["prefer metric units"]]
        assert len(agent.steering) == 0

    @pytest.mark.asyncio
    async def test_applied_steering_saved_in_history(self, agent_factory):
        agent = None

        def steer_mid_turn(request):
            agent.steer("use metric units")
            applied = request.drain_steering_messages()
            inference.answers = [f"applied={len(applied)}"]

        inference = FakeInference(during=steer_mid_turn)
        agent = agent_factory(inference)
        await agent.run_conversation("how far?")

        assert [(m.role, m.text) for m in agent.history] == [
            ("user", "how far?"),
            ("user", "use metric units"),
            ("assistant", "applied=1"),
        ]

    @pytest.mark.asyncio
    async def test_late_steering_does_not_leak_into_next_turn(self, agent_factory):
        agent = None

        def steer_after_last_round(request):
            if len(inference.requests) == 1:
                agent.steer("too late")

        inference = FakeInference(["first", "second"], during=steer_after_last_round)
        agent = agent_factory(inference)

        await agent.run_conversation("turn one")
        assert agent.unapplied_steering == 1
        assert len(agent.steering) == 0
        assert "too late" not in [m.text for m in agent.history]

        await agent.run_conversation("turn two")
        assert inference.drained == [[], []]
        assert agent.unapplied_steering == 0

    def test_default_wiring_shares_one_probe(self, tmp_path):
        config = LoafConfig(home=tmp_path, provider="openrouter", openrouter_api_key="k")
        agent = LoafAgent(config, inference=FakeInference(), load_custom_tools=False)

        assert agent.sessions._resolve_runtime.__self__ is agent.probe
        assert agent.registry.get("run_js").run.__self__.probe is agent.probe
        assert agent.registry.has("create_persistent_tool")

    def test_reset(self, agent_factory):
        agent = agent_factory(FakeInference())
        agent.steer("x")
        agent.reset()
        assert agent.history == []
        assert len(agent.steering) == 0


# ---------------------------------------------------------------------------
# Console renderer
# ---------------------------------------------------------------------------

class TestConsoleRenderer:
    def _renderer(self, **kwargs):
        out, err = io.StringIO(), io.StringIO()
        return _ConsoleRenderer(out=out, err=err, **kwargs), out, err

    def test_answer_and_thought_streams(self):
        renderer, out, err = self._renderer()
        renderer.on_chunk(StreamChunk(thoughts=["hmm"], segments=[StreamSegment("thought", "hmm")]))
        renderer.on_chunk(StreamChunk(answer_text="Hello", segments=[StreamSegment("answer", "Hello")]))
        renderer.finish()
        assert out.getvalue() == "Hello\n"
        assert err.getvalue() == "💭 hmm\n"

    def test_tool_preview(self):
        renderer, _, err = self._renderer()
        renderer.on_debug(DebugEvent("tool_call_started", {"call": {"name": "run_js", "input": {"code": "1"}}}))
        assert err.getvalue() == '  ⚙ run_js({"code":"1"})\n'

    def test_retry_line(self):
        renderer, _, err = self._renderer()
        renderer.on_debug(DebugEvent("retry_429", {"delayMs": 1250, "attempt": 1, "maxAttempts": 8}))
        assert "retrying in 1250 ms (attempt 1/8)" in err.getvalue()

    def test_debug_events_as_json_lines(self):
        renderer, _, err = self._renderer(debug_events=True)
        renderer.on_debug(DebugEvent("request", {"toolRound": 1}))
        assert json.loads(err.getvalue().splitlines()[0]) == {"stage": "request", "data": {"toolRound": 1}}

#!/usr/bin/env python3
"""
Loaf Agent Runner

A command-line agent that chats with a model, lets the model call tools,
and executes those tools locally.

Features:
- Multi-round tool calling across OpenRouter, OpenAI (Responses) and Gemini
- Rate-limit retry with exponential backoff
- Ctrl+C interrupts an in-flight request without killing background sessions
- Steering messages injected between tool rounds
- Background javascript sessions that outlive a single turn

Usage:
    from run_agent import LoafAgent

    agent = LoafAgent()
    result = asyncio.run(agent.run_conversation("What is 2 + 2? Check with run_js."))

    python run_agent.py --query="list the files in this directory"
    python run_agent.py --provider=gemini --thinking=high
"""

import asyncio
import json
import logging
logger = logging.getLogger(__name__)
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional

import fire

from agent.config import load_environment

# Load ~/.loaf/.env first, then the project .env, then bridge config.yaml
load_environment(Path(__file__).parent)

from agent.cancellation import CANCELLED_MESSAGE, CancelToken, InferenceCancelled
from agent.chat_types import ChatMessage, DebugEvent, ModelResult, StreamChunk
from agent.config import LoafConfig, ProviderConfigError
from agent.inference_loop import InferenceLoop, InferenceRequest
from agent.interleaving import format_tool_preview, parse_tool_call_preview
from agent.providers import create_inference_loop
from agent.steering import SteeringQueue
from tools import CommandProbe, ProcessSessionManager, ToolRegistry, ToolRuntime, build_default_registry


class LoafAgent:
    """
    Owns one conversation: history, tools, background sessions and the
    cancel token of the request currently in flight.
    """

    def __init__(
        self,
        config: Optional[LoafConfig] = None,
        registry: Optional[ToolRegistry] = None,
        sessions: Optional[ProcessSessionManager] = None,
        inference: Optional[InferenceLoop] = None,
        load_custom_tools: bool = True,
    ):
        self.config = config or LoafConfig.from_env()
        # Shared by the javascript tools and the session manager
        self.probe = CommandProbe()
        self.sessions = sessions or ProcessSessionManager(
            data_dir=self.config.home,
            runtime_resolver=self.probe.resolve_script_runtime,
        )
        if registry is None:
            registry = build_default_registry(
                self.sessions,
                probe=self.probe,
                custom_tools_home=self.config.home if load_custom_tools else None,
            )
        self.registry = registry
        self.tool_runtime = ToolRuntime(self.registry)
        self._inference = inference
        self.history: List[ChatMessage] = []
        self.steering = SteeringQueue()
        self.unapplied_steering = 0
        self._cancel_token: Optional[CancelToken] = None

    @property
    def inference(self) -> InferenceLoop:
        # Built lazily so --list_tools works without an API key
        if self._inference is None:
            self._inference = create_inference_loop(self.config, self.registry, self.tool_runtime)
        return self._inference

    @property
    def busy(self) -> bool:
        return self._cancel_token is not None

    def interrupt(self, reason: Optional[str] = None) -> bool:
        """Cancel the request in flight.  Returns False when nothing is running."""
        token = self._cancel_token
        if token is None:
            return False
        token.cancel(reason)
        return True

    def steer(self, text: str) -> None:
        self.steering.push(text)

    def reset(self) -> None:
        self.history.clear()
        self.steering.drain()

    async def run_conversation(
        self,
        user_message,
        on_chunk: Optional[Callable[[StreamChunk], None]] = None,
        on_debug: Optional[Callable[[DebugEvent], None]] = None,
    ) -> ModelResult:
        """
        Run one user turn to completion.

        On success the user turn, any steering messages the loop applied and
        the answer are appended to history.  An interrupted turn keeps the
        user turn, applied steering and any partial answer; a failed turn
        leaves history untouched so it can simply be retried.  Steering that
        arrives after the last round is discarded and counted in
        ``unapplied_steering``.

        Raises:
            InferenceCancelled: ``interrupt()`` was called while the turn ran.
        """
        if isinstance(user_message, str):
            user_message = ChatMessage(role="user", text=user_message)
        if self._cancel_token is not None:
            raise RuntimeError("a request is already in flight")

        token = CancelToken()
        self._cancel_token = token
        self.unapplied_steering = 0
        applied_steering: List[ChatMessage] = []
        draft: List[str] = []

        def drain_steering() -> List[ChatMessage]:
            messages = self.steering.drain()
            applied_steering.extend(messages)
            return messages

        def record_chunk(chunk: StreamChunk) -> None:
            draft.append(chunk.answer_delta())
            if on_chunk is not None:
                on_chunk(chunk)

        request = InferenceRequest(
            model=self.config.model,
            messages=[*self.history, user_message],
            thinking_level=self.config.thinking_level,
            include_thoughts=self.config.include_thoughts,
            system_instruction=self.config.system_instruction,
            cancel_token=token,
            drain_steering_messages=drain_steering,
            forced_provider=self.config.forced_provider,
        )
        try:
            result = await self.inference.run(request, on_chunk=record_chunk, on_debug=on_debug)
        except InferenceCancelled:
            # Keep what the model already saw, plus any partial answer
            self.history.append(user_message)
            self.history.extend(applied_steering)
            partial = "".join(draft).strip()
            if partial:
                self.history.append(ChatMessage(role="assistant", text=partial))
            raise
        finally:
            self._cancel_token = None
            late = self.steering.drain()
            if late:
                self.unapplied_steering = len(late)
                logger.warning("%d steering message(s) were queued too late and not applied", len(late))

        self.history.append(user_message)
        self.history.extend(applied_steering)
        self.history.append(ChatMessage(role="assistant", text=result.answer))
        return result

    async def shutdown(self) -> None:
        await self.sessions.shutdown()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        # Keep third-party libraries at WARNING level to reduce noise
        for name in ('openai', 'openai._base_client', 'httpx', 'httpcore', 'asyncio'):
            logging.getLogger(name).setLevel(logging.WARNING)
        logger.info("Verbose logging enabled (third-party library logs suppressed)")
    else:
        logging.basicConfig(
            level=logging.WARNING,
            format='%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        for name in ('openai', 'openai._base_client', 'httpx', 'httpcore'):
            logging.getLogger(name).setLevel(logging.ERROR)


class _ConsoleRenderer:
    """Prints stream chunks and tool previews as they arrive."""

    def __init__(self, debug_events: bool = False, out=None, err=None):
        self.debug_events = debug_events
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self._mid_line = False
        self._in_thought = False

    def on_chunk(self, chunk: StreamChunk) -> None:
        for segment in chunk.segments:
            if segment.kind != "thought" or not segment.text:
                continue
            if not self._in_thought:
                self._break_line()
                self.err.write("💭 ")
                self._in_thought = True
            self.err.write(segment.text)
            self.err.flush()
        delta = chunk.answer_delta()
        if delta:
            self._end_thought()
            self.out.write(delta)
            self.out.flush()
            self._mid_line = not delta.endswith("\n")

    def on_debug(self, event: DebugEvent) -> None:
        if self.debug_events:
            self.err.write(json.dumps({"stage": event.stage, "data": event.data}, default=str) + "\n")
        if event.stage == "tool_call_started":
            preview = parse_tool_call_preview(event.data)
            if preview is not None:
                self._end_thought()
                self._break_line()
                self.err.write(f"  ⚙ {format_tool_preview(preview.name, preview.input)}\n")
        elif event.stage == "retry_429":
            self._break_line()
            self.err.write(
                f"  ⏳ rate limited, retrying in {event.data['delayMs']} ms "
                f"(attempt {event.data['attempt']}/{event.data['maxAttempts']})\n"
            )

    def finish(self) -> None:
        self._end_thought()
        self._break_line()

    def _end_thought(self) -> None:
        if self._in_thought:
            self.err.write("\n")
            self._in_thought = False

    def _break_line(self) -> None:
        if self._mid_line:
            self.out.write("\n")
            self.out.flush()
            self._mid_line = False


async def _run_turn(agent: LoafAgent, text: str, renderer: _ConsoleRenderer) -> ModelResult:
    loop = asyncio.get_running_loop()
    installed = False
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, agent.interrupt)
        installed = True
    try:
        return await agent.run_conversation(text, on_chunk=renderer.on_chunk, on_debug=renderer.on_debug)
    finally:
        renderer.finish()
        if agent.unapplied_steering:
            renderer.err.write(
                f"{agent.unapplied_steering} steer message(s) were queued too late and not applied.\n"
            )
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _repl(agent: LoafAgent, renderer: _ConsoleRenderer) -> None:
    loop = asyncio.get_running_loop()
    print(f"loaf ({agent.config.provider} / {agent.config.model}). Type 'exit' to quit.")
    while True:
        try:
            line = await loop.run_in_executor(None, input, "\n> ")
        except (EOFError, KeyboardInterrupt):
            print()
            return
        text = line.strip()
        if not text:
            continue
        if text.lower() in ("exit", "quit"):
            return
        if text == "/reset":
            agent.reset()
            print("History cleared.")
            continue
        try:
            await _run_turn(agent, text, renderer)
        except InferenceCancelled:
            print(CANCELLED_MESSAGE)
        except Exception as e:
            logger.debug("Turn failed", exc_info=True)
            print(f"Error: {e}")


async def _main_async(agent: LoafAgent, query: Optional[str], renderer: _ConsoleRenderer) -> int:
    try:
        if query is None:
            await _repl(agent, renderer)
            return 0
        try:
            await _run_turn(agent, query, renderer)
        except InferenceCancelled:
            print(CANCELLED_MESSAGE)
            return 130
        except Exception as e:
            logger.debug("Query failed", exc_info=True)
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0
    finally:
        await agent.shutdown()


def main(
    query: str = None,
    provider: str = None,
    model: str = None,
    thinking: str = None,
    include_thoughts: bool = None,
    list_tools: bool = False,
    verbose: bool = False,
    debug_events: bool = False,
):
    """
    Main function for running the agent directly.

    Args:
        query (str): Run a single query and exit. Without it an interactive session starts.
        provider (str): openrouter, openai or gemini. Defaults to LOAF_PROVIDER or openrouter.
        model (str): Model id for the provider. Defaults to LOAF_MODEL or the provider default.
        thinking (str): OFF, MINIMAL, LOW, MEDIUM, HIGH or XHIGH.
        include_thoughts (bool): Surface model reasoning while it streams.
        list_tools (bool): Just list available tools and exit.
        verbose (bool): Enable verbose logging for debugging.
        debug_events (bool): Print inference debug events as JSON lines to stderr.
    """
    _configure_logging(verbose)

    try:
        config = LoafConfig.from_env(
            provider=provider,
            model=model,
            thinking_level=thinking,
            include_thoughts=include_thoughts,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    agent = LoafAgent(config)

    if list_tools:
        print(f"Available tools ({len(agent.registry)}):")
        for tool in agent.registry.list():
            print(f"  {tool.name:22} {tool.description}")
        return

    try:
        agent.inference
    except ProviderConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    renderer = _ConsoleRenderer(debug_events=debug_events)
    exit_code = asyncio.run(_main_async(agent, query, renderer))
    if exit_code:
        sys.exit(exit_code)


def run_cli():
    fire.Fire(main)


if __name__ == "__main__":
    fire.Fire(main)

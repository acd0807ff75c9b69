"""
Provider-agnostic multi-round tool-calling loop.

``InferenceLoop.run()`` drives one user turn to completion:

1. check the cancel token
2. drain steering messages into the conversation
3. send the conversation + tool manifest (retrying rate limits)
4. parse the response into thoughts, answer text and tool calls
5. no tool calls -> emit the final answer and return
6. tool calls -> surface any pre-tool text, execute each call in order
   via ToolRuntime, append the assistant + tool-result turns, loop

Provider adapters (``agent/providers``) subclass ``InferenceLoop`` and
supply the request builder, the transport call and the response parser.
Everything else -- retry, cancellation, steering, name mapping, debug
events, tool execution -- lives here so adapters stay small.

Debug stages emitted through ``on_debug``:
    steer_injected, request, retry_429, response_raw, tool_calls,
    tool_call_started, tool_call_completed, tool_results,
    response_continue, response_final
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from agent.cancellation import CancelToken, raise_if_cancelled, run_cancellable
from agent.chat_types import (
    ChatMessage,
    DebugEvent,
    ModelResult,
    StreamChunk,
    StreamSegment,
    preview_messages,
)
from agent.config import ThinkingLevel
from agent.retry import RetryPolicy, summarize_error
from agent.tool_declarations import ToolDeclarations
from loaf_constants import DEFAULT_SYSTEM_INSTRUCTION, NO_RESPONSE_PLACEHOLDER
from tools.registry import ToolCall, ToolContext, ToolDefinition, ToolRegistry, ToolResult
from tools.runtime import ToolRuntime

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamChunk], None]
DebugCallback = Callable[[DebugEvent], None]


@dataclass
class InferenceRequest:
    model: str
    messages: List[ChatMessage]
    thinking_level: ThinkingLevel = ThinkingLevel.MEDIUM
    include_thoughts: bool = False
    system_instruction: str = ""
    cancel_token: Optional[CancelToken] = None
    drain_steering_messages: Optional[Callable[[], List[ChatMessage]]] = None
    forced_provider: Optional[str] = None

    @property
    def effective_system_instruction(self) -> str:
        return (self.system_instruction or "").strip() or DEFAULT_SYSTEM_INSTRUCTION


@dataclass
class ParsedToolCall:
    id: str
    provider_name: str
    input: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = "{}"


@dataclass
class ParsedResponse:
    """Canonical shape every adapter parses its provider response into."""

    thoughts: List[str] = field(default_factory=list)
    answer: str = ""
    tool_calls: List[ParsedToolCall] = field(default_factory=list)
    status: str = ""
    # Provider-specific assistant record replayed into history on tool rounds
    assistant_record: Any = None


@dataclass
class ExecutedToolCall:
    call: ParsedToolCall
    runtime_name: str
    result: ToolResult

    def payload_json(self) -> str:
        return json.dumps(self.result.to_model_payload(), ensure_ascii=False, default=str)

    def debug_row(self) -> Dict[str, Any]:
        return {
            "name": self.runtime_name,
            "ok": self.result.ok,
            "input": self.call.input,
            "result": self.result.output,
            "error": self.result.error,
        }


def safe_parse_object(raw: Any) -> Dict[str, Any]:
    """Parse tool-call arguments; anything but a JSON object becomes ``{}``."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def compute_unstreamed_delta(expected: str, streamed: str) -> str:
    """The part of *expected* the caller has not already seen through streaming."""
    if not expected:
        return ""
    if not streamed:
        return expected
    if expected == streamed or expected in streamed:
        return ""
    if expected.startswith(streamed):
        return expected[len(streamed):]
    return ""


class _RoundStream:
    """Forwards streamed chunks for one round and remembers what was shown."""

    def __init__(self, on_chunk: Optional[ChunkCallback], include_thoughts: bool):
        self.on_chunk = on_chunk
        self.include_thoughts = include_thoughts
        self.answer_text = ""
        self.streamed_thoughts = False

    def emit(self, chunk: StreamChunk) -> None:
        if not self.include_thoughts and (chunk.thoughts or any(s.kind == "thought" for s in chunk.segments)):
            chunk = StreamChunk(
                thoughts=[],
                answer_text=chunk.answer_text,
                segments=[s for s in chunk.segments if s.kind != "thought"],
            )
            if not chunk.answer_text and not chunk.segments:
                return
        if chunk.thoughts:
            self.streamed_thoughts = True
        delta = chunk.answer_delta()
        if delta:
            self.answer_text += delta
        if self.on_chunk is not None:
            self.on_chunk(chunk)


class InferenceLoop(ABC):
    """Shared round driver; subclasses implement the provider hooks."""

    provider = "base"

    def __init__(
        self,
        registry: ToolRegistry,
        tool_runtime: Optional[ToolRuntime] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.registry = registry
        self.tool_runtime = tool_runtime or ToolRuntime(registry)
        self.retry_policy = retry_policy or RetryPolicy()

    # ------------------------------------------------------------------
    # Provider hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def build_conversation(self, request: InferenceRequest) -> List[Dict[str, Any]]:
        """Fresh provider-shaped history from the request's ChatMessages."""

    @abstractmethod
    def render_tool(self, provider_name: str, tool: ToolDefinition) -> Dict[str, Any]:
        """One tool declaration in the provider's format."""

    @abstractmethod
    def build_request(
        self,
        conversation: List[Dict[str, Any]],
        declarations: ToolDeclarations,
        request: InferenceRequest,
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def send(self, payload: Dict[str, Any], request: InferenceRequest, on_chunk: ChunkCallback) -> Any:
        """Issue one provider request.  Streaming adapters push chunks through *on_chunk*."""

    @abstractmethod
    def parse_response(self, response: Any, tool_round: int) -> ParsedResponse:
        ...

    @abstractmethod
    def append_messages(self, conversation: List[Dict[str, Any]], messages: List[ChatMessage]) -> None:
        ...

    @abstractmethod
    def append_tool_round(
        self,
        conversation: List[Dict[str, Any]],
        parsed: ParsedResponse,
        executed: List[ExecutedToolCall],
    ) -> None:
        ...

    def needs_continue(self, parsed: ParsedResponse) -> bool:
        return False

    def append_continue(self, conversation: List[Dict[str, Any]]) -> None:
        self.append_messages(conversation, [ChatMessage(role="user", text="continue")])

    def response_for_debug(self, response: Any) -> Any:
        if hasattr(response, "model_dump"):
            return response.model_dump()
        return response

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def build_tool_declarations(self) -> ToolDeclarations:
        return ToolDeclarations.build(self.registry, self.render_tool)

    def _emit(self, on_debug: Optional[DebugCallback], stage: str, data: Dict[str, Any]) -> None:
        if on_debug is None:
            return
        data = {"provider": self.provider, **data}
        on_debug(DebugEvent(stage=stage, data=data))

    async def run(
        self,
        request: InferenceRequest,
        on_chunk: Optional[ChunkCallback] = None,
        on_debug: Optional[DebugCallback] = None,
    ) -> ModelResult:
        token = request.cancel_token
        conversation = self.build_conversation(request)
        started = time.monotonic()
        tool_round = 0

        while True:
            raise_if_cancelled(token)

            steering = request.drain_steering_messages() if request.drain_steering_messages else []
            if steering:
                self.append_messages(conversation, steering)
                logger.debug("Injected %d steering message(s)", len(steering))
                self._emit(on_debug, "steer_injected", {
                    "count": len(steering),
                    "messages": preview_messages(steering),
                })

            tool_round += 1
            declarations = self.build_tool_declarations()
            payload = self.build_request(conversation, declarations, request)
            self._emit(on_debug, "request", {"toolRound": tool_round, "payload": payload})

            stream = _RoundStream(on_chunk, request.include_thoughts)

            def _on_retry(attempt: int, delay_ms: int, error: Exception, _round=tool_round) -> None:
                self._emit(on_debug, "retry_429", {
                    "toolRound": _round,
                    "attempt": attempt,
                    "maxAttempts": self.retry_policy.max_attempts,
                    "delayMs": delay_ms,
                    "error": summarize_error(error),
                })

            response = await self.retry_policy.run(
                lambda: run_cancellable(self.send(payload, request, stream.emit), token),
                cancel_token=token,
                on_retry=_on_retry,
                context=f"{self.provider} request",
            )
            self._emit(on_debug, "response_raw", {
                "toolRound": tool_round,
                "response": self.response_for_debug(response),
            })

            parsed = self.parse_response(response, tool_round)
            thoughts = [t for t in parsed.thoughts if t.strip()] if request.include_thoughts else []
            if thoughts and not stream.streamed_thoughts:
                stream.emit(StreamChunk(
                    thoughts=thoughts,
                    segments=[StreamSegment("thought", t) for t in thoughts],
                ))

            if parsed.tool_calls:
                pre_tool = compute_unstreamed_delta(parsed.answer.strip(), stream.answer_text)
                if pre_tool:
                    stream.emit(StreamChunk(answer_text=pre_tool, segments=[StreamSegment("answer", pre_tool)]))

                self._emit(on_debug, "tool_calls", {
                    "toolRound": tool_round,
                    "functionCalls": [
                        {"id": c.id, "name": c.provider_name, "arguments": c.input} for c in parsed.tool_calls
                    ],
                })
                executed = await self._execute_tool_calls(parsed, declarations, tool_round, token, on_debug)
                self.append_tool_round(conversation, parsed, executed)
                self._emit(on_debug, "tool_results", {
                    "toolRound": tool_round,
                    "executed": [e.debug_row() for e in executed],
                })
                continue

            if not parsed.answer.strip() and self.needs_continue(parsed):
                self._emit(on_debug, "response_continue", {
                    "toolRound": tool_round,
                    "responseStatus": parsed.status,
                    "reason": "empty assistant text",
                })
                self.append_continue(conversation)
                continue

            answer = parsed.answer.strip() or NO_RESPONSE_PLACEHOLDER
            final_delta = compute_unstreamed_delta(answer, stream.answer_text)
            if final_delta:
                stream.emit(StreamChunk(answer_text=final_delta, segments=[StreamSegment("answer", final_delta)]))

            duration_ms = int((time.monotonic() - started) * 1000)
            self._emit(on_debug, "response_final", {
                "toolRound": tool_round,
                "thoughtCount": len(thoughts),
                "answerLength": len(answer),
                "durationMs": duration_ms,
                "answerPreview": answer[:400],
            })
            logger.debug("%s run finished after %d round(s) in %d ms", self.provider, tool_round, duration_ms)
            return ModelResult(thoughts=thoughts, answer=answer)

    async def _execute_tool_calls(
        self,
        parsed: ParsedResponse,
        declarations: ToolDeclarations,
        tool_round: int,
        token: Optional[CancelToken],
        on_debug: Optional[DebugCallback],
    ) -> List[ExecutedToolCall]:
        executed: List[ExecutedToolCall] = []
        for index, call in enumerate(parsed.tool_calls):
            raise_if_cancelled(token)
            if not call.id:
                call.id = f"{call.provider_name or 'tool'}-{tool_round}-{index}"
            runtime_name = declarations.runtime_name(call.provider_name)
            self._emit(on_debug, "tool_call_started", {
                "toolRound": tool_round,
                "call": {
                    "name": runtime_name,
                    "input": call.input,
                    "providerToolName": call.provider_name,
                    "callId": call.id,
                },
            })

            result = await self.tool_runtime.execute(
                ToolCall(id=call.id, name=runtime_name, input=call.input),
                ToolContext(now=datetime.now(timezone.utc), cancel_token=token),
            )
            done = ExecutedToolCall(call=call, runtime_name=runtime_name, result=result)
            executed.append(done)
            self._emit(on_debug, "tool_call_completed", {"toolRound": tool_round, "executed": done.debug_row()})
        return executed

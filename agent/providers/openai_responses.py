"""
OpenAI Responses API adapter (streaming).

Each round opens a streamed ``responses.create`` call.  Output text deltas
are forwarded as answer chunks, reasoning deltas as thought chunks, and the
``response.completed`` / ``response.incomplete`` event supplies the final
response object that the loop parses.

Tool rounds are replayed as ``function_call`` items followed by their
``function_call_output`` items; nothing is stored server side
(``store: false``).
"""

import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from agent.chat_types import ChatMessage, StreamChunk, StreamSegment
from agent.config import ThinkingLevel
from agent.inference_loop import (
    ExecutedToolCall,
    InferenceLoop,
    InferenceRequest,
    ParsedResponse,
    ParsedToolCall,
    safe_parse_object,
)
from agent.tool_declarations import ToolDeclarations, strict_parameters
from loaf_constants import OPENAI_BASE_URL
from tools.registry import ToolDefinition

logger = logging.getLogger(__name__)

_EFFORT_BY_LEVEL = {
    ThinkingLevel.OFF: "none",
    ThinkingLevel.MINIMAL: "minimal",
    ThinkingLevel.LOW: "low",
    ThinkingLevel.MEDIUM: "medium",
    ThinkingLevel.HIGH: "high",
    ThinkingLevel.XHIGH: "xhigh",
}

_FINAL_EVENT_TYPES = ("response.completed", "response.incomplete")


class OpenAIStreamError(RuntimeError):
    """A stream-level ``error`` or ``response.failed`` event."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def map_thinking_to_effort(level: ThinkingLevel) -> str:
    return _EFFORT_BY_LEVEL.get(level, "medium")


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _as_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return {}


def message_content(message: ChatMessage) -> Any:
    if message.role != "user" or not message.images:
        return message.text
    parts: List[Dict[str, Any]] = []
    if message.text.strip():
        parts.append({"type": "input_text", "text": message.text.strip()})
    for image in message.images:
        if image.data_url.startswith("data:"):
            parts.append({"type": "input_image", "image_url": image.data_url})
    return parts or message.text


def to_input_items(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    return [
        {"type": "message", "role": m.role, "content": message_content(m)}
        for m in messages
    ]


def extract_response_text(response: Dict[str, Any]) -> str:
    output_text = response.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()

    parts = []
    for item in response.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if not isinstance(content, dict) or content.get("type") not in ("output_text", "text"):
                continue
            text = content.get("text")
            if isinstance(text, dict):
                text = text.get("value")
            if not isinstance(text, str):
                text = content.get("value") if isinstance(content.get("value"), str) else ""
            if text.strip():
                parts.append(text.strip())
    return "\n\n".join(parts).strip()


def extract_reasoning(response: Dict[str, Any]) -> List[str]:
    thoughts = []
    for item in response.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "reasoning":
            continue
        for key in ("summary", "content"):
            for part in item.get(key) or []:
                text = part.get("text") if isinstance(part, dict) else None
                if isinstance(text, str) and text.strip():
                    thoughts.append(text.strip())
    return thoughts


def select_actionable_calls(output: List[Any]) -> List[Dict[str, Any]]:
    """Completed ``function_call`` items, deduped by call id (or name + arguments)."""
    seen = set()
    calls = []
    for item in output or []:
        if not isinstance(item, dict) or item.get("type") != "function_call":
            continue
        status = str(item.get("status") or "").strip().lower()
        if status and status != "completed":
            continue
        call_id = str(item.get("call_id") or "").strip()
        name = str(item.get("name") or "").strip()
        args = str(item.get("arguments") or "").strip()
        signature = call_id or f"{name}:{args}"
        if signature in seen:
            continue
        seen.add(signature)
        calls.append(item)
    return calls


class _ReasoningSnapshots:
    """Accumulates reasoning deltas per (item, index) so each chunk carries the full thought so far."""

    def __init__(self):
        self._snapshots: Dict[str, str] = {}

    def append(self, event: Any, index_kind: str) -> Optional[str]:
        delta = _field(event, "delta") or ""
        if not delta:
            return None
        item_id = str(_field(event, "item_id") or "").strip() or "unknown"
        index = _field(event, index_kind)
        key = f"{item_id}:{index_kind}:{index if isinstance(index, int) else 0}"
        self._snapshots[key] = self._snapshots.get(key, "") + delta
        return self._snapshots[key].strip() or None


class OpenAIResponsesInferenceLoop(InferenceLoop):
    provider = "openai"

    def __init__(self, api_key: str, registry, tool_runtime=None, retry_policy=None,
                 base_url: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        super().__init__(registry, tool_runtime, retry_policy)
        if client is None:
            client = AsyncOpenAI(api_key=api_key, base_url=base_url or OPENAI_BASE_URL, max_retries=0)
        self.client = client
        self.last_stream_summary: Dict[str, Any] = {}

    def build_conversation(self, request: InferenceRequest) -> List[Dict[str, Any]]:
        if not request.messages:
            return [{"type": "message", "role": "user", "content": "Hello."}]
        return to_input_items(request.messages)

    def append_messages(self, conversation, messages) -> None:
        conversation.extend(to_input_items(messages))

    def render_tool(self, provider_name: str, tool: ToolDefinition) -> Dict[str, Any]:
        return {
            "type": "function",
            "name": provider_name,
            "description": tool.description,
            "parameters": strict_parameters(tool.input_schema),
            "strict": False,
        }

    def build_request(self, conversation, declarations: ToolDeclarations, request: InferenceRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "instructions": request.effective_system_instruction,
            "input": list(conversation),
            "tools": declarations.declarations,
            "tool_choice": "auto",
            "parallel_tool_calls": False,
            "store": False,
            "stream": True,
            "reasoning": {"effort": map_thinking_to_effort(request.thinking_level)},
        }
        if request.include_thoughts and request.thinking_level != ThinkingLevel.OFF:
            payload["reasoning"]["summary"] = "auto"
        return payload

    async def send(self, payload, request, on_chunk):
        stream = await self.client.responses.create(**payload)
        snapshots = _ReasoningSnapshots()
        final = None
        event_count = output_chars = reasoning_chars = 0

        async for event in stream:
            event_count += 1
            kind = _field(event, "type")

            if kind == "response.output_text.delta":
                delta = _field(event, "delta") or ""
                if delta:
                    output_chars += len(delta)
                    on_chunk(StreamChunk(answer_text=delta, segments=[StreamSegment("answer", delta)]))
            elif kind in ("response.reasoning_text.delta", "response.reasoning_summary_text.delta"):
                index_kind = "content_index" if kind == "response.reasoning_text.delta" else "summary_index"
                snapshot = snapshots.append(event, index_kind)
                delta = _field(event, "delta") or ""
                if snapshot and delta:
                    reasoning_chars += len(delta)
                    on_chunk(StreamChunk(thoughts=[snapshot], segments=[StreamSegment("thought", delta)]))
            elif kind == "error":
                message = str(_field(event, "message") or "").strip() or "unknown stream error"
                raise OpenAIStreamError(f"OpenAI stream failed: {message}", _status_from_code(_field(event, "code")))
            elif kind == "response.failed":
                error = _field(_field(event, "response"), "error")
                message = str(_field(error, "message") or "").strip() or "response failed"
                raise OpenAIStreamError(f"OpenAI response failed: {message}", _status_from_code(_field(error, "code")))
            elif kind in _FINAL_EVENT_TYPES:
                final = _field(event, "response")

        if final is None:
            raise OpenAIStreamError("OpenAI stream ended without a final response")
        final = _as_dict(final)
        error = final.get("error")
        if isinstance(error, dict) and str(error.get("message") or "").strip():
            raise OpenAIStreamError(f"OpenAI response failed: {error['message'].strip()}")

        self.last_stream_summary = {
            "eventCount": event_count,
            "outputDeltaChars": output_chars,
            "reasoningDeltaChars": reasoning_chars,
            "responseId": final.get("id"),
        }
        logger.debug("OpenAI stream summary: %s", self.last_stream_summary)
        return final

    def parse_response(self, response: Any, tool_round: int) -> ParsedResponse:
        data = _as_dict(response)
        calls = []
        for item in select_actionable_calls(data.get("output") or []):
            raw_arguments = item.get("arguments")
            if not isinstance(raw_arguments, str) or not raw_arguments.strip():
                raw_arguments = "{}"
            calls.append(ParsedToolCall(
                id=str(item.get("call_id") or "").strip(),
                provider_name=str(item.get("name") or "").strip(),
                input=safe_parse_object(raw_arguments),
                raw_arguments=raw_arguments,
            ))
        return ParsedResponse(
            thoughts=extract_reasoning(data),
            answer=extract_response_text(data),
            tool_calls=calls,
            status=str(data.get("status") or "").strip().lower(),
        )

    def needs_continue(self, parsed: ParsedResponse) -> bool:
        return bool(parsed.status) and parsed.status != "completed"

    def append_tool_round(self, conversation, parsed: ParsedResponse, executed: List[ExecutedToolCall]) -> None:
        for item in executed:
            conversation.append({
                "type": "function_call",
                "call_id": item.call.id,
                "name": item.call.provider_name,
                "arguments": item.call.raw_arguments,
            })
        for item in executed:
            conversation.append({
                "type": "function_call_output",
                "call_id": item.call.id,
                "output": item.payload_json(),
            })


def _status_from_code(code: Any) -> Optional[int]:
    if isinstance(code, int):
        return code
    if isinstance(code, str) and "rate_limit" in code:
        return 429
    return None

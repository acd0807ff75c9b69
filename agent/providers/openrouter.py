"""
OpenRouter (and any OpenAI-compatible chat-completions endpoint) adapter.

Uses the ``openai`` SDK's ``AsyncOpenAI`` client pointed at OpenRouter.
Requests are non-streaming; reasoning comes back on the message as
``reasoning`` or ``reasoning_details[].summary``.  OpenRouter-only fields
(``reasoning``, ``include_reasoning``, ``provider``) travel in
``extra_body`` since the SDK does not know about them.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from agent.config import ThinkingLevel
from agent.inference_loop import (
    ExecutedToolCall,
    InferenceLoop,
    InferenceRequest,
    ParsedResponse,
    ParsedToolCall,
    safe_parse_object,
)
from agent.chat_types import ChatMessage
from agent.tool_declarations import ToolDeclarations, strict_parameters
from loaf_constants import OPENROUTER_BASE_URL, OPENROUTER_HTTP_REFERER, OPENROUTER_X_TITLE
from tools.registry import ToolDefinition

logger = logging.getLogger(__name__)

# Keys the SDK does not accept as keyword arguments
_EXTRA_BODY_KEYS = ("reasoning", "include_reasoning", "provider")

_EFFORT_BY_LEVEL = {
    ThinkingLevel.MINIMAL: "low",
    ThinkingLevel.LOW: "low",
    ThinkingLevel.MEDIUM: "medium",
    ThinkingLevel.HIGH: "high",
    ThinkingLevel.XHIGH: "high",
}


def build_reasoning(thinking_level: ThinkingLevel, include_thoughts: bool) -> Optional[Dict[str, Any]]:
    if thinking_level == ThinkingLevel.OFF:
        return None
    return {
        "effort": _EFFORT_BY_LEVEL.get(thinking_level, "medium"),
        "exclude": not include_thoughts,
    }


def normalize_forced_provider(value: Optional[str]) -> Optional[str]:
    trimmed = (value or "").strip().lower()
    if not trimmed or trimmed == "any":
        return None
    return trimmed


def read_reasoning(message: Dict[str, Any]) -> str:
    direct = message.get("reasoning")
    if isinstance(direct, str) and direct.strip():
        return direct.strip()
    chunks = []
    for detail in message.get("reasoning_details") or []:
        if isinstance(detail, dict):
            summary = detail.get("summary")
            if isinstance(summary, str) and summary.strip():
                chunks.append(summary.strip())
    return "\n".join(chunks).strip()


def normalize_content(content: Any) -> str:
    """Flatten string-or-parts message content into text."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    chunks = []
    for part in content:
        if isinstance(part, str):
            chunks.append(part)
        elif isinstance(part, dict):
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())
    return "\n".join(chunks).strip()


def message_content(message: ChatMessage) -> Any:
    if message.role != "user" or not message.images:
        return message.text
    parts: List[Dict[str, Any]] = []
    if message.text.strip():
        parts.append({"type": "text", "text": message.text.strip()})
    for image in message.images:
        if image.data_url.startswith("data:"):
            parts.append({"type": "image_url", "image_url": {"url": image.data_url}})
    return parts or message.text


class OpenRouterInferenceLoop(InferenceLoop):
    provider = "openrouter"

    def __init__(self, api_key: str, registry, tool_runtime=None, retry_policy=None,
                 base_url: str = OPENROUTER_BASE_URL, client: Optional[AsyncOpenAI] = None):
        super().__init__(registry, tool_runtime, retry_policy)
        if client is None:
            client_kwargs: Dict[str, Any] = {"api_key": api_key, "base_url": base_url}
            if "openrouter" in base_url.lower():
                client_kwargs["default_headers"] = {
                    "HTTP-Referer": OPENROUTER_HTTP_REFERER,
                    "X-Title": OPENROUTER_X_TITLE,
                }
            # Retries are owned by RetryPolicy
            client = AsyncOpenAI(max_retries=0, **client_kwargs)
        self.client = client

    def build_conversation(self, request: InferenceRequest) -> List[Dict[str, Any]]:
        conversation = [{"role": "system", "content": request.effective_system_instruction}]
        self.append_messages(conversation, request.messages)
        return conversation

    def append_messages(self, conversation, messages) -> None:
        for message in messages:
            conversation.append({"role": message.role, "content": message_content(message)})

    def render_tool(self, provider_name: str, tool: ToolDefinition) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": provider_name,
                "description": tool.description,
                "parameters": strict_parameters(tool.input_schema),
            },
        }

    def build_request(self, conversation, declarations: ToolDeclarations, request: InferenceRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": list(conversation),
            "stream": False,
        }
        if declarations.declarations:
            payload["tools"] = declarations.declarations
            payload["tool_choice"] = "auto"
            payload["parallel_tool_calls"] = False

        reasoning = build_reasoning(request.thinking_level, request.include_thoughts)
        if reasoning:
            payload["reasoning"] = reasoning
            payload["include_reasoning"] = request.include_thoughts
        else:
            payload["include_reasoning"] = False

        forced = normalize_forced_provider(request.forced_provider)
        if forced:
            payload["provider"] = {"order": [forced], "allow_fallbacks": False}
        return payload

    async def send(self, payload, request, on_chunk):
        api_kwargs = {k: v for k, v in payload.items() if k not in _EXTRA_BODY_KEYS}
        extra_body = {k: payload[k] for k in _EXTRA_BODY_KEYS if k in payload}
        if extra_body:
            api_kwargs["extra_body"] = extra_body
        return await self.client.chat.completions.create(**api_kwargs)

    def response_for_debug(self, response: Any) -> Any:
        return _as_dict(response)

    def parse_response(self, response: Any, tool_round: int) -> ParsedResponse:
        data = _as_dict(response)
        choices = data.get("choices") or []
        choice = (choices[0] if choices else None) or {}
        message = choice.get("message") or {}
        thought = read_reasoning(message)

        raw_calls = [c for c in (message.get("tool_calls") or []) if isinstance(c, dict)]
        calls = []
        for call in raw_calls:
            function = call.get("function") or {}
            raw_arguments = (function.get("arguments") or "").strip() or "{}"
            calls.append(ParsedToolCall(
                id=(call.get("id") or "").strip(),
                provider_name=(function.get("name") or "").strip(),
                input=safe_parse_object(raw_arguments),
                raw_arguments=raw_arguments,
            ))

        return ParsedResponse(
            thoughts=[thought] if thought else [],
            answer=normalize_content(message.get("content")),
            tool_calls=calls,
            status=choice.get("finish_reason") or "",
            assistant_record={
                "role": "assistant",
                "content": normalize_content(message.get("content")),
                "tool_calls": raw_calls,
            },
        )

    def append_tool_round(self, conversation, parsed: ParsedResponse, executed: List[ExecutedToolCall]) -> None:
        record = dict(parsed.assistant_record or {"role": "assistant", "content": ""})
        # Backfill synthesized ids so tool turns always pair with a call
        record["tool_calls"] = [
            {**raw, "id": call.id} for raw, call in zip(record.get("tool_calls") or [], parsed.tool_calls)
        ]
        conversation.append(record)
        for item in executed:
            conversation.append({
                "role": "tool",
                "tool_call_id": item.call.id,
                "content": item.payload_json(),
            })


def _as_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return {}

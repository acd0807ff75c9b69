"""
Gemini ``generateContent`` adapter over plain httpx.

History is kept as Gemini ``contents`` (roles ``user`` / ``model``).  Tool
calls arrive as ``functionCall`` parts; results go back as
``functionResponse`` parts in a user turn, after the model turn that asked
for them is replayed verbatim (it may carry thought signatures).
"""

import copy
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from agent.chat_types import ChatMessage, parse_data_url
from agent.config import ThinkingLevel
from agent.inference_loop import (
    ExecutedToolCall,
    InferenceLoop,
    InferenceRequest,
    ParsedResponse,
    ParsedToolCall,
)
from agent.tool_declarations import ToolDeclarations
from loaf_constants import GEMINI_BASE_URL
from tools.registry import ToolDefinition

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 600.0

_THINKING_LEVELS = {
    ThinkingLevel.MINIMAL: "low",
    ThinkingLevel.LOW: "low",
    ThinkingLevel.MEDIUM: "medium",
    ThinkingLevel.HIGH: "high",
    ThinkingLevel.XHIGH: "high",
}


class GeminiAPIError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"Gemini request failed ({status_code}): {message}")
        self.status_code = status_code


def build_thinking_config(level: ThinkingLevel, include_thoughts: bool) -> Dict[str, Any]:
    if level == ThinkingLevel.OFF:
        return {"thinkingBudget": 0, "includeThoughts": False}
    return {"includeThoughts": include_thoughts, "thinkingLevel": _THINKING_LEVELS.get(level, "medium")}


def normalize_tool_schema(schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    base = copy.deepcopy(schema) if isinstance(schema, dict) else {}
    if not isinstance(base.get("type"), str) or not base["type"].strip():
        base["type"] = "object"
    if not isinstance(base.get("properties"), dict):
        base["properties"] = {}
    if not isinstance(base.get("required"), list):
        base["required"] = []
    base.setdefault("additionalProperties", False)
    return base


def to_contents(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    contents = []
    for message in messages:
        parts: List[Dict[str, Any]] = []
        if message.text.strip():
            parts.append({"text": message.text.strip()})
        for image in message.images:
            parsed = parse_data_url(image.data_url)
            if parsed:
                mime_type, data = parsed
                parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
        if parts:
            contents.append({"role": "model" if message.role == "assistant" else "user", "parts": parts})
    return contents


def _summarize_http_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()[:400] or response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return json.dumps(body)[:400]


class GeminiInferenceLoop(InferenceLoop):
    provider = "gemini"

    def __init__(self, api_key: str, registry, tool_runtime=None, retry_policy=None,
                 base_url: str = GEMINI_BASE_URL, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(registry, tool_runtime, retry_policy)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client

    def build_conversation(self, request: InferenceRequest) -> List[Dict[str, Any]]:
        contents = to_contents(request.messages)
        return contents or [{"role": "user", "parts": [{"text": ""}]}]

    def append_messages(self, conversation, messages) -> None:
        conversation.extend(to_contents(messages))

    def render_tool(self, provider_name: str, tool: ToolDefinition) -> Dict[str, Any]:
        return {
            "name": provider_name,
            "description": tool.description,
            "parametersJsonSchema": normalize_tool_schema(tool.input_schema),
        }

    def build_request(self, conversation, declarations: ToolDeclarations, request: InferenceRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "contents": list(conversation),
            "systemInstruction": {"parts": [{"text": request.effective_system_instruction}]},
            "generationConfig": {
                "thinkingConfig": build_thinking_config(request.thinking_level, request.include_thoughts),
            },
        }
        if declarations.declarations:
            payload["tools"] = [{"functionDeclarations": declarations.declarations}]
            payload["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}
        return payload

    async def send(self, payload, request, on_chunk):
        body = {k: v for k, v in payload.items() if k != "model"}
        url = f"{self.base_url}/models/{payload['model']}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

        if self.http_client is not None:
            response = await self.http_client.post(url, json=body, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS)
        else:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
                response = await client.post(url, json=body, headers=headers)

        if response.status_code >= 400:
            raise GeminiAPIError(response.status_code, _summarize_http_error(response))
        return response.json()

    def parse_response(self, response: Any, tool_round: int) -> ParsedResponse:
        candidates = (response.get("candidates") if isinstance(response, dict) else None) or []
        candidate = (candidates[0] if candidates else None) or {}
        content = candidate.get("content") or {}
        parts = content.get("parts") or []

        thoughts: List[str] = []
        answer_parts: List[str] = []
        calls: List[ParsedToolCall] = []
        for part in parts:
            if not isinstance(part, dict):
                continue
            call = part.get("functionCall")
            if isinstance(call, dict):
                args = call.get("args") if isinstance(call.get("args"), dict) else {}
                calls.append(ParsedToolCall(
                    id=str(call.get("id") or ""),
                    provider_name=str(call.get("name") or "").strip(),
                    input=args,
                    raw_arguments=json.dumps(args),
                ))
                continue
            text = (part.get("text") or "").strip() if isinstance(part.get("text"), str) else ""
            if text:
                (thoughts if part.get("thought") else answer_parts).append(text)
                continue
            inline = part.get("inlineData") or {}
            data = (inline.get("data") or "").strip()
            if data:
                mime_type = (inline.get("mimeType") or "").strip() or "image/png"
                answer_parts.append(f"![image](data:{mime_type};base64,{data})")

        return ParsedResponse(
            thoughts=normalize_thoughts(thoughts),
            answer="\n".join(answer_parts),
            tool_calls=calls,
            status=str(candidate.get("finishReason") or ""),
            assistant_record=content or None,
        )

    def append_tool_round(self, conversation, parsed: ParsedResponse, executed: List[ExecutedToolCall]) -> None:
        model_turn = parsed.assistant_record or {
            "role": "model",
            "parts": [
                {"functionCall": {"name": c.provider_name, "args": c.input, "id": c.id}}
                for c in parsed.tool_calls
            ],
        }
        conversation.append(model_turn)
        conversation.append({
            "role": "user",
            "parts": [
                {
                    "functionResponse": {
                        "name": item.call.provider_name,
                        "response": {"result": json.loads(item.payload_json())},
                        "id": item.call.id,
                    }
                }
                for item in executed
            ],
        })


def normalize_thoughts(thoughts: List[str]) -> List[str]:
    """Collapse cumulative thought snapshots, keeping the longest of each run."""
    normalized: List[str] = []
    for item in thoughts:
        text = item.strip()
        if not text:
            continue
        if normalized and text.startswith(normalized[-1]):
            normalized[-1] = text
            continue
        if normalized and normalized[-1].startswith(text):
            continue
        normalized.append(text)
    return normalized

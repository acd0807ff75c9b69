"""Conversation data model shared by the inference loop and the CLI."""

from dataclasses import dataclass, field
from typing import Any, List, Optional


@dataclass(frozen=True)
class ImageAttachment:
    """An inline image carried as a ``data:`` URL."""

    data_url: str
    mime_type: str = ""


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "user" | "assistant"
    text: str
    images: tuple = ()

    def __post_init__(self):
        if self.role not in ("user", "assistant"):
            raise ValueError(f"unsupported chat role: {self.role!r}")


@dataclass
class ModelResult:
    thoughts: List[str] = field(default_factory=list)
    answer: str = ""


@dataclass(frozen=True)
class StreamSegment:
    kind: str  # "thought" | "answer"
    text: str


@dataclass
class StreamChunk:
    """Incremental output surfaced to the caller while a request is in flight."""

    thoughts: List[str] = field(default_factory=list)
    answer_text: str = ""
    segments: List[StreamSegment] = field(default_factory=list)

    def answer_delta(self) -> str:
        pieces = [s.text for s in self.segments if s.kind == "answer" and s.text]
        if pieces:
            return "".join(pieces)
        return self.answer_text or ""


@dataclass
class DebugEvent:
    stage: str
    data: Any = None


def preview_messages(messages: List[ChatMessage], limit: int = 160) -> List[dict]:
    return [{"role": m.role, "preview": m.text[:limit]} for m in messages]


def parse_data_url(data_url: Optional[str]):
    """Split a base64 ``data:`` URL into ``(mime_type, payload)`` or return None."""
    if not data_url or not data_url.startswith("data:"):
        return None
    header, sep, payload = data_url[5:].partition(",")
    if not sep or not header.lower().endswith(";base64"):
        return None
    mime_type = header[: -len(";base64")].strip() or "image/png"
    payload = payload.strip()
    if not payload:
        return None
    return mime_type, payload

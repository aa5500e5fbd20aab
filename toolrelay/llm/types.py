"""Canonical message model shared by every provider and the orchestrator."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from toolrelay.types import ToolResult

ROLES = ("system", "user", "assistant", "tool")

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_CONTENT_FILTER = "content_filter"
FINISH_REASONS = (FINISH_STOP, FINISH_LENGTH, FINISH_TOOL_CALLS, FINISH_CONTENT_FILTER)


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ToolCall:
    """A complete tool call.  *arguments* is JSON text."""

    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict:
        """Decode *arguments*; anything but a JSON object yields ``{}``."""
        try:
            value = json.loads(self.arguments or "{}")
        except (json.JSONDecodeError, ValueError):
            return {}
        return value if isinstance(value, dict) else {}

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    def to_openai(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: dict) -> ToolCall:
        """Accept both the flat form and the OpenAI ``function`` envelope."""
        func = data.get("function") or {}
        name = data.get("name") or func.get("name") or ""
        args = data.get("arguments")
        if args is None:
            args = func.get("arguments")
        if args is None:
            args = "{}"
        if not isinstance(args, str):
            args = json.dumps(args, separators=(",", ":"))
        return cls(id=str(data.get("id") or ""), name=str(name), arguments=args)


@dataclass(frozen=True)
class ImageAttachment:
    url: str
    file_name: str | None = None
    mime_type: str | None = None

    def to_dict(self) -> dict:
        return {"url": self.url, "file_name": self.file_name, "mime_type": self.mime_type}


@dataclass(frozen=True)
class Message:
    """
    A single message in a conversation thread.

    A ``tool`` message always carries *tool_call_id* and *name*.  An
    ``assistant`` message with *tool_calls* is either resolved in place
    (*tool_results* set) or must be followed by one ``tool`` message per
    call id before it is replayed to a provider.
    """

    role: str  # "system", "user", "assistant", "tool"
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_results: list[ToolResult] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    reasoning: str | None = None
    images: list[ImageAttachment] | None = None
    id: str = field(default_factory=new_message_id)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_results:
            d["tool_results"] = [tr.to_dict() for tr in self.tool_results]
        if self.tool_call_id:
            d["tool_call_id"] = self.tool_call_id
        if self.name:
            d["name"] = self.name
        if self.reasoning:
            d["reasoning"] = self.reasoning
        if self.images:
            d["images"] = [img.to_dict() for img in self.images]
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        """Rebuild a message from ``to_dict`` output.  No validation."""
        content = data.get("content")
        if content is not None and not isinstance(content, str):
            content = json.dumps(content, default=str)
        tool_calls = data.get("tool_calls")
        tool_results = data.get("tool_results")
        images = data.get("images")
        return cls(
            role=data["role"],
            content=content,
            tool_calls=[ToolCall.from_dict(tc) for tc in tool_calls] if tool_calls else None,
            tool_results=[ToolResult.from_dict(tr) for tr in tool_results] if tool_results else None,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
            reasoning=data.get("reasoning"),
            images=[
                ImageAttachment(
                    url=img["url"],
                    file_name=img.get("file_name"),
                    mime_type=img.get("mime_type"),
                )
                for img in images
                if isinstance(img, dict) and img.get("url")
            ] if images else None,
            id=data.get("id") or new_message_id(),
            timestamp=data.get("timestamp") or utc_now(),
        )


@dataclass
class ToolCallDelta:
    """
    One streamed tool-call fragment.

    *id* and *name* may be empty on continuation fragments; *index* lets the
    accumulator correlate fragments that omit their id.
    """

    index: int | None = None
    id: str | None = None
    name: str = ""
    arguments: str = ""


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_dict(cls, data: dict | None) -> Usage | None:
        if not isinstance(data, dict):
            return None
        prompt = int(data.get("prompt_tokens") or data.get("input_tokens") or 0)
        completion = int(data.get("completion_tokens") or data.get("output_tokens") or 0)
        total = int(data.get("total_tokens") or prompt + completion)
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class StreamChunk:
    """
    Canonical delta event yielded by every provider.

    *type* is ``"delta"``, ``"done"`` or ``"error"``.  *finish_reason* is one
    of ``FINISH_REASONS`` or ``None``.  *tool_calls* holds raw fragments, to
    be merged by ``ToolCallAccumulator``.
    """

    type: str = "delta"
    content: str = ""
    tool_calls: list[ToolCallDelta] | None = None
    reasoning: str = ""
    finish_reason: str | None = None
    usage: Usage | None = None
    error: str | None = None


@dataclass
class LLMResponse:
    """A complete, non-streamed model reply."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    reasoning: str = ""
    model: str | None = None
    usage: Usage | None = None
    finish_reason: str | None = None

"""
Liminality (Synesia ``/llm-exec``) provider.

The Liminality dialect differs from OpenAI's in several ways:

  - tool results use the ``tool_response`` role and travel inside a
    ``tool_calls`` array (``tool_call_id``, ``content``, ``tool_name``);
  - tool-call arguments are sent as JSON objects, not strings;
  - images travel out-of-band in a ``metadata`` object;
  - the stream is a sequence of typed events (``text.delta``, ``done``,
    ``error``...) instead of completion deltas, and tool calls only appear
    in the final ``done`` event.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from toolrelay.config import LiminalityConfig
from toolrelay.llm.dialect import LIMINALITY, IMAGE_METADATA, apply_dialect
from toolrelay.llm.providers.base import HTTPProvider
from toolrelay.llm.tool_call_accumulator import fabricate_call_id
from toolrelay.llm.types import (
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    LLMResponse,
    Message,
    StreamChunk,
    ToolCall,
    ToolCallDelta,
    Usage,
)

logger = logging.getLogger(__name__)

_ROLE_MAP = {
    "system": "system",
    "user": "user",
    "assistant": "assistant",
    "tool": LIMINALITY.tool_role,
}

_SILENT_EVENTS = frozenset(
    {"start", "text.done", "tool_block.start", "tool_block.done", "tool_call", "tool_result"}
)
_KNOWN_EVENTS = _SILENT_EVENTS | {"text.delta", "chunk", "done", "end", "error"}


def _arguments_object(raw: str, call_id: str) -> dict:
    try:
        value = json.loads(raw or "{}")
    except (json.JSONDecodeError, ValueError):
        logger.warning("Liminality: invalid arguments for tool call %s, sending {}", call_id)
        return {}
    return value if isinstance(value, dict) else {}


def _arguments_text(raw: Any) -> str:
    if isinstance(raw, str):
        try:
            json.loads(raw or "{}")
        except (json.JSONDecodeError, ValueError):
            return "{}"
        return raw or "{}"
    try:
        return json.dumps(raw if raw is not None else {}, separators=(",", ":"))
    except (TypeError, ValueError):
        return "{}"


def _is_valid_tool_call(tc: Any) -> bool:
    return (
        isinstance(tc, dict)
        and isinstance(tc.get("id"), str)
        and isinstance(tc.get("name"), str)
        and (isinstance(tc.get("arguments"), (str, dict)))
    )


class LiminalityProvider(HTTPProvider):
    """
    Provider for the Liminality round-execution API.

    Parameters
    ----------
    config:
        ``LiminalityConfig`` with model, base URL and key.
    name:
        Registry name.  Defaults to ``"liminality"``.
    transport:
        Optional ``httpx`` transport (tests).
    retry_base_delay:
        First retry backoff in seconds.
    """

    dialect = LIMINALITY

    def __init__(
        self,
        config: LiminalityConfig,
        *,
        name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_base_delay: float = 0.5,
    ) -> None:
        super().__init__(
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            retry_base_delay=retry_base_delay,
            transport=transport,
        )
        self.config = config
        self._name = name or config.vendor
        self._url = config.base_url.rstrip("/")
        self._api_key = config.resolve_api_key()

    @property
    def name(self) -> str:
        return self._name

    @property
    def model(self) -> str | None:
        return self.config.model

    def is_available(self) -> bool:
        return bool(self._api_key and self.config.model and self._url)

    async def call_with_messages(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
    ) -> LLMResponse:
        self._require_available()
        payload = self._build_payload(messages, tools)
        data = await self._post_json(
            f"{self._url}/llm-exec/round", payload, self._build_headers(stream=False)
        )
        return self._parse_response(data)

    async def call_with_messages_stream(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        self._require_available()
        payload = self._build_payload(messages, tools)
        async for event in self._stream_payloads(
            f"{self._url}/llm-exec/round/stream", payload, self._build_headers(stream=True)
        ):
            chunk = self.convert_stream_event(event)
            if chunk is None:
                continue
            yield chunk
            if chunk.type == "error":
                return
        yield StreamChunk(type="done")

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_headers(self, stream: bool) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            "x-api-key": self._api_key,
        }

    def convert_messages(self, messages: list[Message]) -> list[dict]:
        """Canonical messages -> Liminality wire messages."""
        out: list[dict] = []
        for msg in apply_dialect(messages, self.dialect):
            wire: dict = {"role": _ROLE_MAP[msg.role], "content": msg.content or ""}

            if msg.role == "assistant":
                if msg.tool_calls:
                    wire["tool_calls"] = [
                        {
                            "id": tc.id,
                            "name": tc.name,
                            "arguments": _arguments_object(tc.arguments, tc.id),
                        }
                        for tc in msg.tool_calls
                    ]
                if msg.reasoning:
                    wire["reasoning"] = msg.reasoning

            elif msg.role == "tool":
                wire["tool_calls"] = [
                    {
                        "tool_call_id": msg.tool_call_id,
                        "content": msg.content or "",
                        "tool_name": msg.name,
                    }
                ]
                del wire["content"]

            if msg.images and self.dialect.image_mode == IMAGE_METADATA:
                wire["metadata"] = {"images": [img.to_dict() for img in msg.images]}

            out.append(wire)
        return out

    @staticmethod
    def convert_tools(tools: list[dict] | None) -> list[dict]:
        """OpenAI function tools -> Liminality ``custom`` tools."""
        converted: list[dict] = []
        for tool in tools or []:
            func = tool.get("function") or {}
            if not func.get("name"):
                logger.warning("Liminality: skipping tool without a function name")
                continue
            converted.append(
                {
                    "type": "custom",
                    "name": func["name"],
                    "description": func.get("description", ""),
                    "parameters": func.get("parameters")
                    or {"type": "object", "properties": {}, "required": []},
                }
            )
        return converted

    def _build_payload(self, messages: list[Message], tools: list[dict] | None) -> dict:
        wire_messages = self.convert_messages(messages)
        wire_tools = self.convert_tools(tools)
        payload: dict = {
            "model": self.config.model,
            "messages": wire_messages,
            "llmConfig": {
                "temperature": self.config.temperature,
                "max_completion_tokens": self.config.max_tokens,
                "top_p": self.config.top_p,
                "tool_choice": "auto",
                "parallel_tool_calls": False,
            },
            "config": {"max_loops": self.config.max_loops},
        }
        if wire_tools:
            payload["tools"] = wire_tools
        logger.info(
            "REQUEST: provider=%s model=%s tools=%d messages=%d/%d api_key=%s...",
            self.name,
            self.config.model,
            len(wire_tools),
            len(wire_messages),
            len(messages),
            self._api_key[:12] if self._api_key else "(none)",
        )
        return payload

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _parse_response(self, data: dict) -> LLMResponse:
        message = data.get("message") or {}
        tool_calls: list[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            # tool_response entries (tool_call_id/content) are not requests.
            if not (isinstance(tc, dict) and tc.get("id") and tc.get("name")):
                continue
            tool_calls.append(
                ToolCall(id=tc["id"], name=tc["name"], arguments=_arguments_text(tc.get("arguments")))
            )
        reasoning = message.get("reasoning")
        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            reasoning=reasoning if isinstance(reasoning, str) else "",
            model=self.config.model,
            usage=Usage.from_dict(data.get("usage")),
            finish_reason=FINISH_TOOL_CALLS if tool_calls else FINISH_STOP,
        )

    def convert_stream_event(self, event: Any) -> StreamChunk | None:
        """
        Map one typed Liminality stream event onto a canonical chunk.

        Unknown or malformed events are logged and skipped.
        """
        if not isinstance(event, dict) or event.get("type") not in _KNOWN_EVENTS:
            logger.warning("Liminality: skipping invalid stream event %s", str(event)[:200])
            return None

        kind = event["type"]
        if kind in _SILENT_EVENTS:
            logger.debug("Liminality: %s event", kind)
            return None

        if kind == "text.delta":
            return StreamChunk(content=event.get("delta") or "")
        if kind == "chunk":
            return StreamChunk(content=event.get("content") or "")
        if kind == "end":
            return StreamChunk(finish_reason=FINISH_STOP, usage=Usage.from_dict(event.get("usage")))
        if kind == "error":
            err = event.get("error")
            message = err.get("message") if isinstance(err, dict) else err
            logger.error("Liminality: stream error: %s", message)
            return StreamChunk(type="error", error=str(message or "stream error"))

        # done
        usage = Usage.from_dict(event.get("usage"))
        messages = event.get("messages") or []
        last = messages[-1] if messages and isinstance(messages[-1], dict) else {}
        raw_calls = last.get("tool_calls") if last.get("role") == "tool_request" else None
        if not raw_calls:
            return StreamChunk(finish_reason=FINISH_STOP, usage=usage)

        valid = [tc for tc in raw_calls if _is_valid_tool_call(tc)]
        if len(valid) != len(raw_calls):
            logger.warning(
                "Liminality: filtered %d invalid tool call(s)", len(raw_calls) - len(valid)
            )
        deltas = [
            ToolCallDelta(
                index=i,
                id=tc["id"] or fabricate_call_id(),
                name=tc["name"],
                arguments=_arguments_text(tc["arguments"]),
            )
            for i, tc in enumerate(valid)
        ]
        return StreamChunk(
            tool_calls=deltas or None,
            finish_reason=FINISH_STOP if event.get("complete") is True or not deltas else FINISH_TOOL_CALLS,
            usage=usage,
        )

"""
Responses-API (``/responses``) provider.

xAI exposes its native endpoint in this shape.  It differs from the
chat-completions dialect in several ways:

  - the history travels in an ``input`` array instead of ``messages``, and
    ``content`` is never null (tool and system content must be strings);
  - ``name`` may only appear on ``user`` messages;
  - function tools are flat (``name``/``parameters`` at the top level);
  - the stream is a sequence of typed events (``response.output_text.delta``,
    ``response.output_item.added``/``.done``, ``response.completed``...)
    and function calls are output items rather than completion deltas;
  - the non-streaming reply is an ``output`` array of typed items.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from toolrelay.config import ResponsesConfig
from toolrelay.llm.dialect import RESPONSES, apply_dialect
from toolrelay.llm.providers.base import HTTPProvider
from toolrelay.llm.tool_call_accumulator import fabricate_call_id
from toolrelay.llm.types import (
    FINISH_CONTENT_FILTER,
    FINISH_LENGTH,
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

_TEXT_DELTA = "response.output_text.delta"
_REASONING_DELTAS = frozenset(
    {"response.reasoning_text.delta", "response.reasoning_summary_text.delta"}
)
_ITEM_ADDED = "response.output_item.added"
_ITEM_DONE = "response.output_item.done"
_ARGS_DELTA = "response.function_call_arguments.delta"
_COMPLETED = "response.completed"
_INCOMPLETE = "response.incomplete"
_FAILED = frozenset({"response.failed", "error"})

_INCOMPLETE_REASONS = {
    "max_output_tokens": FINISH_LENGTH,
    "max_tokens": FINISH_LENGTH,
    "content_filter": FINISH_CONTENT_FILTER,
}


def _compact_arguments(raw: Any) -> str:
    if raw is None or raw == "":
        return "{}"
    if isinstance(raw, str):
        return raw
    try:
        return json.dumps(raw, separators=(",", ":"))
    except (TypeError, ValueError):
        return "{}"


def _finish_of_incomplete(response: dict) -> str:
    details = response.get("incomplete_details") or {}
    reason = details.get("reason") if isinstance(details, dict) else None
    return _INCOMPLETE_REASONS.get(str(reason or ""), FINISH_LENGTH)


def _error_text(event: dict) -> str:
    err = event.get("error")
    if err is None and isinstance(event.get("response"), dict):
        err = event["response"].get("error")
    if isinstance(err, dict):
        err = err.get("message") or err.get("code")
    return str(err or event.get("message") or "stream error")


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

class ResponsesEventMapper:
    """
    Maps one stream's typed events onto canonical chunks.

    Holds per-stream state: which output slots are function calls, and
    whether their arguments already arrived as deltas.  Create one mapper
    per stream.
    """

    def __init__(self) -> None:
        self._calls: dict[int, str] = {}
        self._streamed_args: set[int] = set()

    def convert(self, event: Any) -> StreamChunk | None:
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            logger.warning("Responses: skipping invalid stream event %s", str(event)[:200])
            return None

        kind = event["type"]
        if kind == _TEXT_DELTA:
            delta = event.get("delta")
            return StreamChunk(content=delta) if isinstance(delta, str) and delta else None
        if kind in _REASONING_DELTAS:
            delta = event.get("delta")
            return StreamChunk(reasoning=delta) if isinstance(delta, str) and delta else None
        if kind == _ITEM_ADDED:
            return self._item_added(event)
        if kind == _ARGS_DELTA:
            return self._arguments_delta(event)
        if kind == _ITEM_DONE:
            return self._item_done(event)
        if kind in (_COMPLETED, _INCOMPLETE):
            response = event.get("response") or {}
            usage = Usage.from_dict(response.get("usage"))
            if kind == _INCOMPLETE or response.get("status") == "incomplete":
                finish = _finish_of_incomplete(response)
            else:
                finish = FINISH_TOOL_CALLS if self._calls else FINISH_STOP
            return StreamChunk(finish_reason=finish, usage=usage)
        if kind in _FAILED:
            message = _error_text(event)
            logger.error("Responses: stream error: %s", message)
            return StreamChunk(type="error", error=message)

        logger.debug("Responses: %s event", kind)
        return None

    def _item_added(self, event: dict) -> StreamChunk | None:
        item = event.get("item") or {}
        if item.get("type") != "function_call":
            if item.get("type") not in (None, "message", "reasoning"):
                logger.debug("Responses: ignoring %s output item", item.get("type"))
            return None
        index = self._slot(event)
        deltas = [self._announce(index, item)]
        if item.get("arguments"):
            self._streamed_args.add(index)
            deltas.append(ToolCallDelta(index=index, arguments=_compact_arguments(item["arguments"])))
        return StreamChunk(tool_calls=deltas)

    def _arguments_delta(self, event: dict) -> StreamChunk | None:
        index = self._slot(event)
        delta = event.get("delta")
        if index not in self._calls or not isinstance(delta, str) or not delta:
            return None
        self._streamed_args.add(index)
        return StreamChunk(tool_calls=[ToolCallDelta(index=index, arguments=delta)])

    def _item_done(self, event: dict) -> StreamChunk | None:
        item = event.get("item") or {}
        if item.get("type") != "function_call":
            return None
        index = self._slot(event)
        deltas: list[ToolCallDelta] = []
        if index not in self._calls:
            deltas.append(self._announce(index, item))
        if index not in self._streamed_args:
            # Arguments only arrive with the completed item.
            self._streamed_args.add(index)
            deltas.append(ToolCallDelta(index=index, arguments=_compact_arguments(item.get("arguments"))))
        return StreamChunk(tool_calls=deltas) if deltas else None

    def _announce(self, index: int, item: dict) -> ToolCallDelta:
        call_id = str(item.get("call_id") or item.get("id") or fabricate_call_id())
        self._calls[index] = call_id
        return ToolCallDelta(index=index, id=call_id, name=str(item.get("name") or ""))

    @staticmethod
    def _slot(event: dict) -> int:
        index = event.get("output_index")
        return index if isinstance(index, int) and not isinstance(index, bool) else 0


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class ResponsesProvider(HTTPProvider):
    """
    Provider for endpoints that speak the ``/responses`` wire format.

    Parameters
    ----------
    config:
        ``ResponsesConfig`` with model, base URL and key.
    name:
        Registry name.  Defaults to ``"xai-responses"``.
    transport:
        Optional ``httpx`` transport (tests).
    retry_base_delay:
        First retry backoff in seconds.
    """

    dialect = RESPONSES

    def __init__(
        self,
        config: ResponsesConfig,
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
        body = self._build_body(messages, tools, stream=False)
        data = await self._post_json(
            f"{self._url}/responses", body, self._build_headers(stream=False)
        )
        return self._parse_response(data)

    async def call_with_messages_stream(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        self._require_available()
        body = self._build_body(messages, tools, stream=True)
        mapper = ResponsesEventMapper()
        async for event in self._stream_payloads(
            f"{self._url}/responses", body, self._build_headers(stream=True)
        ):
            chunk = mapper.convert(event)
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
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def convert_messages(self, messages: list[Message]) -> list[dict]:
        """Canonical messages -> ``input`` items."""
        out: list[dict] = []
        for msg in apply_dialect(messages, self.dialect):
            item: dict = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                item["tool_calls"] = [tc.to_openai() for tc in msg.tool_calls]
            elif msg.role == "tool":
                item["tool_call_id"] = msg.tool_call_id
            if msg.name and msg.role == "user":
                item["name"] = msg.name
            out.append(item)
        return out

    @staticmethod
    def convert_tools(tools: list[dict] | None) -> list[dict]:
        """OpenAI function tools -> flat ``/responses`` function tools."""
        converted: list[dict] = []
        for tool in tools or []:
            func = tool.get("function") or {}
            if not func.get("name"):
                logger.warning("Responses: skipping tool without a function name")
                continue
            converted.append(
                {
                    "type": "function",
                    "name": func["name"],
                    "description": func.get("description", ""),
                    "parameters": func.get("parameters")
                    or {"type": "object", "properties": {}, "required": []},
                }
            )
        return converted

    def _build_body(
        self,
        messages: list[Message],
        tools: list[dict] | None,
        stream: bool,
    ) -> dict:
        wire_input = self.convert_messages(messages)
        wire_tools = self.convert_tools(tools)
        body: dict = {
            "model": self.config.model,
            "input": wire_input,
            "stream": stream,
            "temperature": self.config.temperature,
            "top_p": self.config.top_p,
            "max_output_tokens": self.config.max_tokens,
        }
        if wire_tools:
            body["tools"] = wire_tools
            body["tool_choice"] = "auto"
            body["parallel_tool_calls"] = self.config.parallel_tool_calls
        logger.info(
            "REQUEST: provider=%s model=%s tools=%d input=%d/%d stream=%s api_key=%s...",
            self.name,
            self.config.model,
            len(wire_tools),
            len(wire_input),
            len(messages),
            stream,
            self._api_key[:12] if self._api_key else "(none)",
        )
        return body

    # ------------------------------------------------------------------
    # Non-streaming response
    # ------------------------------------------------------------------

    def _parse_response(self, data: dict) -> LLMResponse:
        """Convert an ``output`` array into an ``LLMResponse``."""
        text: list[str] = []
        reasoning: list[str] = []
        tool_calls: list[ToolCall] = []

        for item in data.get("output") or []:
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if kind == "function_call":
                if not item.get("name"):
                    logger.warning("%s: dropping function call without name", self.name)
                    continue
                tool_calls.append(self._tool_call(item))
            elif kind == "reasoning":
                for part in item.get("summary") or item.get("content") or []:
                    if isinstance(part, dict) and isinstance(part.get("text"), str):
                        reasoning.append(part["text"])
            elif kind == "message" or item.get("role") == "assistant":
                content = item.get("content")
                if isinstance(content, str):
                    text.append(content)
                    continue
                for part in content or []:
                    if isinstance(part, dict) and part.get("type") in ("output_text", "text"):
                        text.append(part.get("text") or "")

        if not text and isinstance(data.get("output_text"), str):
            text.append(data["output_text"])

        if data.get("status") == "incomplete":
            finish = _finish_of_incomplete(data)
        else:
            finish = FINISH_TOOL_CALLS if tool_calls else FINISH_STOP

        return LLMResponse(
            content="".join(text),
            tool_calls=tool_calls,
            reasoning="".join(reasoning),
            model=data.get("model") or self.config.model,
            usage=Usage.from_dict(data.get("usage")),
            finish_reason=finish,
        )

    def _tool_call(self, item: dict) -> ToolCall:
        call_id = str(item.get("call_id") or item.get("id") or fabricate_call_id())
        arguments = _compact_arguments(item.get("arguments"))
        try:
            json.loads(arguments)
        except (json.JSONDecodeError, ValueError):
            logger.warning(
                "%s: invalid arguments for %s, using {}: %s",
                self.name, item.get("name"), arguments[:200],
            )
            arguments = "{}"
        return ToolCall(id=call_id, name=str(item["name"]), arguments=arguments)

"""
OpenAI-compatible chat-completion provider.

Works with any endpoint that speaks the OpenAI ``/chat/completions`` wire
protocol.  Vendor adapters for Groq, xAI, DeepSeek and Cerebras subclass it
and only override the dialect rules and the vendor-specific body fields.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from toolrelay.config import (
    BaseProviderConfig,
    CerebrasConfig,
    DeepSeekConfig,
    GroqConfig,
    XAIConfig,
)
from toolrelay.llm.dialect import (
    CEREBRAS,
    DEEPSEEK,
    GROQ,
    IMAGE_INLINE,
    OPENAI,
    XAI,
    apply_dialect,
)
from toolrelay.llm.providers.base import HTTPProvider
from toolrelay.llm.sse import normalize_finish_reason, normalize_openai_chunk
from toolrelay.llm.tool_call_accumulator import fabricate_call_id
from toolrelay.llm.types import LLMResponse, Message, StreamChunk, ToolCall, Usage

logger = logging.getLogger(__name__)


class OpenAICompatProvider(HTTPProvider):
    """
    Stream-capable provider for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    config:
        Vendor config; supplies model, base URL, key and sampling settings.
    name:
        Registry name.  Defaults to the config's vendor.
    transport:
        Optional ``httpx`` transport (tests).
    retry_base_delay:
        First retry backoff in seconds.
    """

    dialect = OPENAI

    def __init__(
        self,
        config: BaseProviderConfig,
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

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

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
            f"{self._url}/chat/completions", body, self._build_headers(stream=False)
        )
        return self._parse_response(data)

    async def call_with_messages_stream(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        self._require_available()
        body = self._build_body(messages, tools, stream=True)
        async for payload in self._stream_payloads(
            f"{self._url}/chat/completions", body, self._build_headers(stream=True)
        ):
            chunk = normalize_openai_chunk(payload)
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

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        return [self._wire_message(m) for m in apply_dialect(messages, self.dialect)]

    def _wire_message(self, msg: Message) -> dict:
        m: dict = {"role": msg.role, "content": msg.content if msg.content is not None else ""}

        if msg.role == "user" and msg.images and self.dialect.image_mode == IMAGE_INLINE:
            parts: list[dict] = [
                {"type": "image_url", "image_url": {"url": img.url, "detail": "auto"}}
                for img in msg.images
            ]
            if msg.content:
                parts.append({"type": "text", "text": msg.content})
            m["content"] = parts

        if msg.role == "assistant":
            if msg.tool_calls:
                m["tool_calls"] = [tc.to_openai() for tc in msg.tool_calls]
                if not msg.content:
                    m["content"] = None
            if self.dialect.reasoning_field and msg.reasoning:
                m[self.dialect.reasoning_field] = msg.reasoning

        if msg.role == "tool":
            m["tool_call_id"] = msg.tool_call_id
            if msg.name and not self.dialect.forbid_tool_name:
                m["name"] = msg.name

        return m

    def _convert_tools(self, tools: list[dict]) -> list[dict]:
        return tools

    def _extra_body(self, tools: list[dict] | None) -> dict:
        """Vendor-specific request fields."""
        return {"max_tokens": self.config.max_tokens}

    def _build_body(
        self,
        messages: list[Message],
        tools: list[dict] | None,
        stream: bool,
    ) -> dict:
        wire_messages = self._convert_messages(messages)
        body: dict = {
            "model": self.config.model,
            "messages": wire_messages,
            "stream": stream,
            "temperature": self.config.temperature,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
            body["tool_choice"] = "auto"
        body.update(self._extra_body(tools))
        logger.info(
            "REQUEST: provider=%s model=%s tools=%d messages=%d/%d stream=%s api_key=%s...",
            self.name,
            self.config.model,
            len(tools) if tools else 0,
            len(wire_messages),
            len(messages),
            stream,
            self._api_key[:12] if self._api_key else "(none)",
        )
        return body

    # ------------------------------------------------------------------
    # Non-streaming response
    # ------------------------------------------------------------------

    def _parse_response(self, data: dict) -> LLMResponse:
        """Convert a non-streaming response into an ``LLMResponse``."""
        choices = data.get("choices") or []
        usage = Usage.from_dict(data.get("usage"))
        if not choices:
            return LLMResponse(model=data.get("model") or self.config.model, usage=usage)

        choice = choices[0]
        message = choice.get("message") or {}
        tool_calls: list[ToolCall] = []
        for raw_tc in message.get("tool_calls") or []:
            tc = ToolCall.from_dict(raw_tc)
            if not tc.name:
                logger.warning("%s: dropping tool call without name", self.name)
                continue
            arguments = tc.arguments
            try:
                json.loads(arguments or "{}")
            except (json.JSONDecodeError, ValueError):
                logger.warning(
                    "%s: invalid arguments for %s, using {}: %s",
                    self.name, tc.name, arguments[:200],
                )
                arguments = "{}"
            tool_calls.append(
                ToolCall(id=tc.id or fabricate_call_id(), name=tc.name, arguments=arguments or "{}")
            )

        reasoning = message.get("reasoning") or message.get("reasoning_content") or ""
        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            reasoning=reasoning if isinstance(reasoning, str) else "",
            model=data.get("model") or self.config.model,
            usage=usage,
            finish_reason=normalize_finish_reason(choice.get("finish_reason")),
        )


# ---------------------------------------------------------------------------
# Vendor adapters
# ---------------------------------------------------------------------------

class GroqProvider(OpenAICompatProvider):
    """Groq: service tier, reasoning effort and parallel tool calls."""

    dialect = GROQ
    config: GroqConfig

    def _extra_body(self, tools: list[dict] | None) -> dict:
        extra: dict = {
            "max_completion_tokens": self.config.max_tokens,
            "service_tier": self.config.service_tier,
        }
        if self.config.reasoning_effort:
            extra["reasoning_effort"] = self.config.reasoning_effort
        if tools:
            extra["parallel_tool_calls"] = self.config.parallel_tool_calls
        return extra


class XAIProvider(OpenAICompatProvider):
    """xAI Grok: images travel inline as multi-part content."""

    dialect = XAI
    config: XAIConfig

    def _extra_body(self, tools: list[dict] | None) -> dict:
        extra = super()._extra_body(tools)
        if tools:
            extra["parallel_tool_calls"] = self.config.parallel_tool_calls
        return extra


class DeepSeekProvider(OpenAICompatProvider):
    """DeepSeek: assistant tool-call messages carry ``reasoning_content``."""

    dialect = DEEPSEEK
    config: DeepSeekConfig


class CerebrasProvider(OpenAICompatProvider):
    """Cerebras: no ``name`` on tool messages; optional strict schemas."""

    dialect = CEREBRAS
    config: CerebrasConfig

    def _convert_tools(self, tools: list[dict]) -> list[dict]:
        if not self.config.strict_tools:
            return tools
        converted = []
        for tool in tools:
            func = dict(tool.get("function") or {})
            func["strict"] = True
            converted.append({**tool, "function": func})
        return converted

    def _extra_body(self, tools: list[dict] | None) -> dict:
        extra: dict = {"max_completion_tokens": self.config.max_tokens}
        if tools:
            extra["parallel_tool_calls"] = self.config.parallel_tool_calls
        return extra

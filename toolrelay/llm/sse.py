"""
Server-Sent Events decoding and canonical chunk normalisation.

``SSEDecoder`` turns an arbitrarily-split text stream into parsed ``data:``
payloads.  ``normalize_openai_chunk`` maps one OpenAI-style payload (in any
of the vendor variants) onto a canonical ``StreamChunk``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from toolrelay.llm.types import (
    FINISH_CONTENT_FILTER,
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    StreamChunk,
    ToolCallDelta,
    Usage,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
MAX_EVENT_BYTES = 10 * 1024 * 1024


class SSEDecoder:
    """
    Incremental SSE parser.

    Feed it text as it arrives; it returns every JSON payload that became
    complete.  A line cut by a network read stays buffered until its newline
    arrives.  A ``data:`` payload that does not parse is kept and retried
    with the next ``data:`` line of the same event; only when the event
    closes (blank line or end of stream) is an unparseable payload logged
    and discarded.

    Parameters
    ----------
    max_event_bytes:
        Pending payloads above this size are discarded.
    """

    def __init__(self, max_event_bytes: int = MAX_EVENT_BYTES) -> None:
        self._buffer = ""
        self._pending = ""
        self._max_event_bytes = max_event_bytes
        self.done = False
        self.skipped = 0

    def feed(self, text: str) -> list[Any]:
        """Consume *text* and return the payloads completed by it."""
        if self.done:
            return []
        self._buffer += text
        payloads: list[Any] = []

        while "\n" in self._buffer and not self.done:
            line, self._buffer = self._buffer.split("\n", 1)
            self._handle_line(line.rstrip("\r"), payloads)

        return payloads

    def flush(self) -> list[Any]:
        """Finish the stream: process any trailing line and close the event."""
        payloads: list[Any] = []
        if not self.done and self._buffer:
            line, self._buffer = self._buffer, ""
            self._handle_line(line.rstrip("\r"), payloads)
        self._close_event()
        return payloads

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _handle_line(self, line: str, payloads: list[Any]) -> None:
        if not line:
            self._close_event()
            return
        if line.startswith(":"):
            return
        if not line.startswith("data:"):
            # event:, id:, retry: carry nothing we consume.
            return

        data = line[len("data:"):]
        if data.startswith(" "):
            data = data[1:]

        if data.strip() == DONE_SENTINEL:
            self._close_event()
            self.done = True
            return

        candidate = self._pending + data
        try:
            payloads.append(json.loads(candidate))
        except json.JSONDecodeError:
            if len(candidate) > self._max_event_bytes:
                logger.warning(
                    "Discarding SSE event larger than %d bytes", self._max_event_bytes
                )
                self._pending = ""
                self.skipped += 1
                return
            self._pending = candidate
            return
        self._pending = ""

    def _close_event(self) -> None:
        if not self._pending:
            return
        pending, self._pending = self._pending, ""
        logger.warning("Skipping malformed SSE data: %s", pending[:200])
        self.skipped += 1


async def iter_sse_payloads(response: httpx.Response) -> AsyncIterator[Any]:
    """Yield parsed ``data:`` payloads from a streaming ``httpx`` response."""
    decoder = SSEDecoder()
    async for text in response.aiter_text():
        for payload in decoder.feed(text):
            yield payload
        if decoder.done:
            return
    for payload in decoder.flush():
        yield payload


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

_FINISH_REASON_MAP: dict[str, str] = {
    "stop": FINISH_STOP,
    "end_turn": FINISH_STOP,
    "eos": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "complete": FINISH_STOP,
    "completed": FINISH_STOP,
    "length": FINISH_LENGTH,
    "max_tokens": FINISH_LENGTH,
    "model_length": FINISH_LENGTH,
    "tool_calls": FINISH_TOOL_CALLS,
    "tool_call": FINISH_TOOL_CALLS,
    "tool_use": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
    "content_filter": FINISH_CONTENT_FILTER,
    "safety": FINISH_CONTENT_FILTER,
    "recitation": FINISH_CONTENT_FILTER,
}


def normalize_finish_reason(value: Any) -> str | None:
    """Map a vendor finish reason onto the canonical four, else ``None``."""
    if not value or not isinstance(value, str):
        return None
    mapped = _FINISH_REASON_MAP.get(value.strip().lower())
    if mapped is None:
        logger.debug("Unknown finish reason %r", value)
    return mapped


def _text_of(delta: dict, choice: dict) -> str:
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    nested = delta.get("message")
    if isinstance(nested, dict) and isinstance(nested.get("content"), str):
        return nested["content"]
    for source in (delta, choice):
        text = source.get("text")
        if isinstance(text, str) and text:
            return text
    return ""


def _tool_deltas_of(delta: dict) -> list[ToolCallDelta] | None:
    raw_tcs = delta.get("tool_calls")
    if not raw_tcs or not isinstance(raw_tcs, list):
        return None
    out: list[ToolCallDelta] = []
    for position, raw_tc in enumerate(raw_tcs):
        if not isinstance(raw_tc, dict):
            continue
        func = raw_tc.get("function") or {}
        args = func.get("arguments", raw_tc.get("arguments", ""))
        if args is None:
            args = ""
        elif not isinstance(args, str):
            args = json.dumps(args, separators=(",", ":"))
        index = raw_tc.get("index")
        out.append(
            ToolCallDelta(
                index=index if isinstance(index, int) else position,
                id=raw_tc.get("id") or None,
                name=func.get("name") or raw_tc.get("name") or "",
                arguments=args,
            )
        )
    return out or None


def normalize_openai_chunk(payload: Any) -> StreamChunk | None:
    """
    Convert one OpenAI-style streaming payload into a ``StreamChunk``.

    Text may sit in ``delta.content``, ``delta.message.content`` or
    ``delta.text``; reasoning in ``delta.reasoning`` or
    ``delta.reasoning_content``.  Returns ``None`` for payloads that carry
    nothing (keep-alives, role-only deltas).
    """
    if not isinstance(payload, dict):
        return None

    err = payload.get("error")
    if err:
        message = err.get("message") if isinstance(err, dict) else str(err)
        return StreamChunk(type="error", error=message or "stream error")

    usage = Usage.from_dict(payload.get("usage"))
    if usage is None and isinstance(payload.get("x_groq"), dict):
        usage = Usage.from_dict(payload["x_groq"].get("usage"))

    choices = payload.get("choices") or []
    if not choices:
        return StreamChunk(usage=usage) if usage else None

    choice = choices[0] if isinstance(choices[0], dict) else {}
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        delta = choice.get("message") if isinstance(choice.get("message"), dict) else {}

    reasoning = delta.get("reasoning") or delta.get("reasoning_content") or ""
    chunk = StreamChunk(
        content=_text_of(delta, choice),
        tool_calls=_tool_deltas_of(delta),
        reasoning=reasoning if isinstance(reasoning, str) else "",
        finish_reason=normalize_finish_reason(choice.get("finish_reason")),
        usage=usage,
    )
    if not (chunk.content or chunk.tool_calls or chunk.reasoning or chunk.finish_reason or chunk.usage):
        return None
    return chunk

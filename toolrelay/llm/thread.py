"""
Thread validation and normalisation.

Two entry points:

  - ``validate_and_normalize_thread`` turns loosely-typed history (persisted
    rows, client payloads, ``Message`` objects) into a clean, ordered list
    of ``Message`` objects.
  - ``validate_thread_coherence`` checks the tool-call pairing invariant
    that every provider converter must uphold before transmission.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from toolrelay.llm.types import (
    ROLES,
    ImageAttachment,
    Message,
    ToolCall,
    new_message_id,
)
from toolrelay.types import ToolResult

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class CoherenceReport:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

def validate_and_normalize_thread(raw_messages: Iterable[Any]) -> list[Message]:
    """
    Validate, repair and order a raw message history.

    - Entries that are not mappings / ``Message`` objects, have an unknown
      role, or are ``tool`` messages without ``tool_call_id`` or ``name``
      are dropped.
    - Tool calls without an id or name are removed from assistant messages.
    - Non-string ``content`` is serialised to JSON text.
    - Missing ``id`` values are assigned.
    - Entries are stably sorted by timestamp.  An entry without a usable
      timestamp keeps its position after its predecessor; a missing
      timestamp is filled with the key it was sorted under (the
      predecessor's timestamp, or the epoch), so normalising the output
      again yields the same order.

    Every drop is logged with its reason.
    """
    keyed: list[tuple[datetime, int, Message]] = []
    last_key = _EPOCH

    for position, raw in enumerate(raw_messages or []):
        data = raw.to_dict() if isinstance(raw, Message) else raw
        if not isinstance(data, dict):
            logger.warning("Dropping thread entry %d: not a mapping (%s)", position, type(raw).__name__)
            continue

        reason = _structural_problem(data)
        if reason:
            logger.warning("Dropping thread entry %d: %s", position, reason)
            continue

        ts = _parse_timestamp(data.get("timestamp"))
        if ts is not None:
            last_key = ts
        keyed.append((last_key, position, _build_message(data, position, last_key)))

    keyed.sort(key=lambda item: (item[0], item[1]))
    return [msg for _, _, msg in keyed]


def _structural_problem(data: dict) -> str | None:
    role = data.get("role")
    if role not in ROLES:
        return f"unknown role {role!r}"
    if role == "tool":
        if not data.get("tool_call_id"):
            return "tool message without tool_call_id"
        if not data.get("name"):
            return "tool message without name"
    return None


def _build_message(data: dict, position: int, sort_key: datetime) -> Message:
    role = data["role"]
    content = _coerce_content(data.get("content"))

    tool_calls: list[ToolCall] | None = None
    if role == "assistant" and data.get("tool_calls"):
        tool_calls = []
        for raw_tc in data["tool_calls"]:
            if not isinstance(raw_tc, dict):
                logger.warning("Entry %d: dropping non-mapping tool call", position)
                continue
            tc = ToolCall.from_dict(raw_tc)
            if not tc.id or not tc.name:
                logger.warning(
                    "Entry %d: dropping tool call without id/name (id=%r name=%r)",
                    position, tc.id, tc.name,
                )
                continue
            tool_calls.append(tc)
        tool_calls = tool_calls or None

    tool_results: list[ToolResult] | None = None
    if role == "assistant" and data.get("tool_results"):
        tool_results = [
            ToolResult.from_dict(tr)
            for tr in data["tool_results"]
            if isinstance(tr, dict) and tr.get("tool_call_id")
        ] or None

    images: list[ImageAttachment] | None = None
    if data.get("images"):
        images = [
            ImageAttachment(
                url=img["url"],
                file_name=img.get("file_name"),
                mime_type=img.get("mime_type"),
            )
            for img in data["images"]
            if isinstance(img, dict) and img.get("url")
        ] or None

    timestamp = data.get("timestamp")
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()
    elif isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        parsed = _parse_timestamp(timestamp)
        timestamp = parsed.isoformat() if parsed else None
    elif not isinstance(timestamp, str) or not timestamp:
        timestamp = None

    reasoning = data.get("reasoning")
    return Message(
        role=role,
        content=content,
        tool_calls=tool_calls,
        tool_results=tool_results,
        tool_call_id=data.get("tool_call_id") if role == "tool" else None,
        name=data.get("name") or None,
        reasoning=reasoning if isinstance(reasoning, str) and reasoning else None,
        images=images,
        id=str(data.get("id") or new_message_id()),
        timestamp=timestamp or sort_key.isoformat(),
    )


def _coerce_content(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


# ---------------------------------------------------------------------------
# Coherence
# ---------------------------------------------------------------------------

def validate_thread_coherence(thread: list[Message]) -> CoherenceReport:
    """
    Check the tool-call pairing invariant.

    For every assistant message whose ``tool_calls`` are not resolved in
    place by ``tool_results``, a ``tool`` message with a matching
    ``tool_call_id`` must exist.  One error is produced per missing pairing.
    Tool messages that answer no known call are reported as orphans.
    """
    errors: list[str] = []
    answered = {m.tool_call_id for m in thread if m.role == "tool" and m.tool_call_id}
    requested: set[str] = set()

    for msg in thread:
        if msg.role != "assistant" or not msg.tool_calls:
            continue
        resolved = {tr.tool_call_id for tr in msg.tool_results or []}
        for tc in msg.tool_calls:
            requested.add(tc.id)
            if tc.id in resolved:
                continue
            if tc.id not in answered:
                errors.append(
                    f"assistant message {msg.id}: tool call {tc.id} ({tc.name}) "
                    f"has no matching tool message"
                )

    for msg in thread:
        if msg.role == "tool" and msg.tool_call_id not in requested:
            errors.append(
                f"tool message {msg.id}: orphan result for tool call {msg.tool_call_id}"
            )

    return CoherenceReport(is_valid=not errors, errors=errors)

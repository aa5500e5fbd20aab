"""
Merges streamed tool-call fragments into complete ``ToolCall`` objects.

Design goals:
  - Entries are keyed by call id.  A fragment without an id is correlated
    through its ``index`` (OpenAI style), or continues the latest entry.
    An id is fabricated when none has been seen yet.
  - Argument fragments are appended; a later non-empty ``name`` overwrites
    the stored one.
  - ``finish()`` drops entries that never received a name and repairs
    argument text that is not valid JSON to ``"{}"``.  Calls come out in
    first-seen order so multi-call rounds stay deterministic.
"""

from __future__ import annotations

import json
import logging
import time
import uuid

from toolrelay.llm.types import ToolCall, ToolCallDelta

logger = logging.getLogger(__name__)


def fabricate_call_id() -> str:
    return f"call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


class ToolCallAccumulator:
    """Buffers tool-call fragments for one model turn."""

    def __init__(self) -> None:
        self._entries: dict[str, dict] = {}
        self._order: list[str] = []
        self._index_to_id: dict[int, str] = {}
        self._fabricated: set[str] = set()
        self.errors: list[str] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def order(self) -> list[str]:
        """Call ids in first-seen order."""
        return list(self._order)

    def partial(self) -> dict[str, ToolCall]:
        """Snapshot of the in-progress entries, unvalidated."""
        return {
            call_id: ToolCall(id=call_id, name=e["name"], arguments=e["arguments"])
            for call_id, e in self._entries.items()
        }

    def __len__(self) -> int:
        return len(self._order)

    def feed(self, delta: ToolCallDelta) -> None:
        """Merge one fragment."""
        key = self._resolve_key(delta)
        entry = self._entries.get(key)
        if entry is None:
            entry = {"name": "", "arguments": ""}
            self._entries[key] = entry
            self._order.append(key)

        if delta.name:
            entry["name"] = delta.name
        if delta.arguments:
            entry["arguments"] += delta.arguments

    def finish(self) -> list[ToolCall]:
        """Return the complete calls in first-seen order."""
        calls: list[ToolCall] = []
        for call_id in self._order:
            entry = self._entries[call_id]
            name = entry["name"].strip()
            if not name:
                logger.warning("Discarding incomplete tool call %s: no name", call_id)
                self.errors.append(f"tool_call_missing_name id={call_id}")
                continue

            arguments = entry["arguments"].strip() or "{}"
            try:
                json.loads(arguments)
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning(
                    "Tool call %s (%s): invalid arguments JSON, using {}: %s",
                    call_id, name, arguments[:200],
                )
                self.errors.append(f"tool_call_json_parse_failed id={call_id} err={exc}")
                arguments = "{}"

            calls.append(ToolCall(id=call_id, name=name, arguments=arguments))
        return calls

    def reset(self) -> None:
        """Discard all accumulated state."""
        self._entries.clear()
        self._order.clear()
        self._index_to_id.clear()
        self._fabricated.clear()
        self.errors.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_key(self, delta: ToolCallDelta) -> str:
        if delta.id:
            if delta.index is not None:
                known = self._index_to_id.get(delta.index)
                if known is not None and known in self._fabricated and delta.id not in self._entries:
                    self._rename(known, delta.id)
                self._index_to_id[delta.index] = delta.id
            return delta.id

        if delta.index is not None:
            known = self._index_to_id.get(delta.index)
            if known is not None:
                return known
            new_id = self._fabricate()
            self._index_to_id[delta.index] = new_id
            return new_id

        if self._order:
            return self._order[-1]
        return self._fabricate()

    def _fabricate(self) -> str:
        call_id = fabricate_call_id()
        self._fabricated.add(call_id)
        logger.debug("Fabricated tool call id %s", call_id)
        return call_id

    def _rename(self, old: str, new: str) -> None:
        self._entries[new] = self._entries.pop(old)
        self._order[self._order.index(old)] = new
        self._fabricated.discard(old)

"""Per-turn state owned by the round orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from toolrelay.llm.types import Message, ToolCall, Usage
from toolrelay.types import ToolResult

logger = logging.getLogger(__name__)


class RoundPhase(str, Enum):
    GENERATING = "generating"
    TOOLS_PENDING = "tools_pending"
    TOOLS_EXECUTING = "tools_executing"
    RELAUNCHING = "relaunching"
    COMPLETE = "complete"
    FAILED = "failed"


_TRANSITIONS: dict[RoundPhase, frozenset[RoundPhase]] = {
    RoundPhase.GENERATING: frozenset(
        {RoundPhase.TOOLS_PENDING, RoundPhase.COMPLETE, RoundPhase.FAILED}
    ),
    RoundPhase.TOOLS_PENDING: frozenset({RoundPhase.TOOLS_EXECUTING, RoundPhase.FAILED}),
    RoundPhase.TOOLS_EXECUTING: frozenset(
        {RoundPhase.RELAUNCHING, RoundPhase.COMPLETE, RoundPhase.FAILED}
    ),
    RoundPhase.RELAUNCHING: frozenset({RoundPhase.GENERATING, RoundPhase.FAILED}),
    RoundPhase.COMPLETE: frozenset(),
    RoundPhase.FAILED: frozenset(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class RoundState:
    """
    Mutable state for one user turn.

    *messages* is the thread sent to the model; entries are only ever
    appended.  *tool_call_map* / *tool_call_order* hold the calls collected
    in the current round.
    """

    messages: list[Message]
    max_rounds: int = 10
    round_index: int = 0
    phase: RoundPhase = RoundPhase.GENERATING
    tool_call_map: dict[str, ToolCall] = field(default_factory=dict)
    tool_call_order: list[str] = field(default_factory=list)
    last_results: list[ToolResult] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)

    def transition(self, phase: RoundPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise InvalidTransition(f"{self.phase.value} -> {phase.value}")
        logger.debug("Round %d: %s -> %s", self.round_index, self.phase.value, phase.value)
        self.phase = phase

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def set_tool_calls(self, calls: list[ToolCall]) -> None:
        self.tool_call_map = {tc.id: tc for tc in calls}
        self.tool_call_order = [tc.id for tc in calls]

    def ordered_tool_calls(self) -> list[ToolCall]:
        return [self.tool_call_map[i] for i in self.tool_call_order]

    @property
    def exhausted(self) -> bool:
        return self.round_index >= self.max_rounds


@dataclass
class TurnResult:
    """What one user turn produced."""

    content: str
    phase: RoundPhase
    rounds: int
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    fallback_used: bool = False

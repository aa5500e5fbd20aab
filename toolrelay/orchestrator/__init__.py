"""Round orchestration: state machine, tool execution and broadcasting."""

from toolrelay.orchestrator.broadcast import Broadcaster, NullBroadcaster, TokenBatcher
from toolrelay.orchestrator.core import RoundOrchestrator
from toolrelay.orchestrator.executor import (
    RegistryToolExecutor,
    ToolExecutionError,
    ToolExecutor,
    run_tool_call,
)
from toolrelay.orchestrator.state import RoundPhase, RoundState, TurnResult

__all__ = [
    "Broadcaster",
    "NullBroadcaster",
    "RegistryToolExecutor",
    "RoundOrchestrator",
    "RoundPhase",
    "RoundState",
    "TokenBatcher",
    "ToolExecutionError",
    "ToolExecutor",
    "TurnResult",
    "run_tool_call",
]

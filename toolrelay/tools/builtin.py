"""Small built-in tools so a fresh install has something to call."""

from __future__ import annotations

import ast
import operator
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from toolrelay.orchestrator.executor import ToolExecutionError
from toolrelay.tools.base import Tool
from toolrelay.tools.registry import ToolRegistry
from toolrelay.types import ErrorCode


class EchoTool(Tool):
    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Return the given text unchanged. Useful for testing tool calls."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Text to echo"}},
            "required": ["text"],
        }

    async def execute(self, **kwargs) -> Any:
        return {"success": True, "text": kwargs["text"]}


class CurrentTimeTool(Tool):
    @property
    def name(self) -> str:
        return "current_time"

    @property
    def description(self) -> str:
        return "Get the current date and time, optionally in an IANA timezone."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "timezone": {
                    "type": "string",
                    "description": "IANA timezone name, e.g. Europe/Paris. Defaults to UTC.",
                },
            },
        }

    async def execute(self, **kwargs) -> Any:
        tz_name = kwargs.get("timezone") or "UTC"
        try:
            tz = timezone.utc if tz_name == "UTC" else ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ToolExecutionError(f"Unknown timezone: {tz_name}", ErrorCode.NOT_FOUND)
        now = datetime.now(tz)
        return {"success": True, "timezone": tz_name, "iso": now.isoformat()}


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _evaluate(node.left), _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > 100:
            raise ValueError("exponent too large")
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"unsupported expression element: {type(node).__name__}")


class CalculatorTool(Tool):
    @property
    def name(self) -> str:
        return "calculate"

    @property
    def description(self) -> str:
        return "Evaluate an arithmetic expression (+ - * / // % ** and parentheses)."

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "expression": {"type": "string", "description": "Expression, e.g. (2 + 3) * 4"},
            },
            "required": ["expression"],
        }

    async def execute(self, **kwargs) -> Any:
        expression = kwargs["expression"]
        try:
            value = _evaluate(ast.parse(expression, mode="eval"))
        except (SyntaxError, ValueError, ZeroDivisionError, OverflowError) as exc:
            raise ToolExecutionError(
                f"Invalid expression {expression!r}: {exc}", ErrorCode.VALIDATION_ERROR
            )
        return {"success": True, "expression": expression, "result": value}


def builtin_registry() -> ToolRegistry:
    return ToolRegistry([EchoTool(), CurrentTimeTool(), CalculatorTool()])

"""
Tool execution: the executor protocol, the registry-backed default, and the
timeout race that turns any outcome into a ``ToolResult``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import is_dataclass, asdict
from typing import Any, Protocol, runtime_checkable

from toolrelay.llm.types import ToolCall
from toolrelay.tools.registry import ToolRegistry
from toolrelay.tools.validation import ToolValidator
from toolrelay.types import (
    MAX_RESULT_BYTES,
    ErrorCode,
    ToolResult,
    classify_error,
    truncate_tool_result,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ToolExecutor(Protocol):
    """Runs a named tool.  The return value is opaque to the orchestrator."""

    async def execute(self, name: str, args: dict, auth_token: str | None) -> Any: ...


class ToolExecutionError(Exception):
    """A tool failure with an explicit ``ErrorCode``."""

    def __init__(self, message: str, code: ErrorCode | str | None = None) -> None:
        super().__init__(message)
        self.code = code


class RegistryToolExecutor:
    """
    ``ToolExecutor`` backed by a ``ToolRegistry``.

    Unknown tools raise ``NOT_FOUND`` and schema violations raise
    ``VALIDATION_ERROR``, both as ``ToolExecutionError``.  Tools that set
    ``wants_auth`` receive the caller's token as ``auth_token``.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry

    async def execute(self, name: str, args: dict, auth_token: str | None) -> Any:
        tool = self.registry.get(name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool: {name}", ErrorCode.NOT_FOUND)

        valid, error_msg = ToolValidator.validate(tool, args)
        if not valid:
            raise ToolExecutionError(
                f"Invalid arguments for {name}: {error_msg}", ErrorCode.VALIDATION_ERROR
            )

        if tool.wants_auth:
            return await tool.execute(**{**args, "auth_token": auth_token})
        return await tool.execute(**args)


# ---------------------------------------------------------------------------
# Result normalisation
# ---------------------------------------------------------------------------

def _failure(call: ToolCall, message: str, code: ErrorCode) -> ToolResult:
    return ToolResult(
        tool_call_id=call.id,
        name=call.name,
        content=json.dumps({"success": False, "code": code.value, "error": message}),
        success=False,
        code=code,
    )


def normalize_tool_result(call: ToolCall, raw: Any) -> ToolResult:
    """
    Turn whatever an executor returned into a ``ToolResult``.

    A mapping with ``success: false`` or an ``error`` key is a failure; its
    ``code`` (when present) wins over keyword classification.  Content is
    always JSON text.
    """
    if isinstance(raw, ToolResult):
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=raw.content,
            success=raw.success,
            code=raw.code if raw.success else (raw.code or ErrorCode.UNKNOWN),
        )

    if is_dataclass(raw) and not isinstance(raw, type):
        raw = asdict(raw)

    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            parsed = None
        if isinstance(parsed, dict):
            raw = parsed
        else:
            return ToolResult(
                tool_call_id=call.id,
                name=call.name,
                content=json.dumps({"success": True, "result": raw}),
                success=True,
            )

    if raw is None:
        return ToolResult(
            tool_call_id=call.id, name=call.name, content=json.dumps({"success": True}), success=True
        )

    if isinstance(raw, dict):
        failed = raw.get("success") is False or bool(raw.get("error"))
        code = None
        if failed:
            err = raw.get("error")
            text = err.get("message") if isinstance(err, dict) else err
            code = classify_error(str(text or raw.get("message") or ""), explicit=raw.get("code"))
        return ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=json.dumps(raw, ensure_ascii=False, default=str),
            success=not failed,
            code=code,
        )

    return ToolResult(
        tool_call_id=call.id,
        name=call.name,
        content=json.dumps(raw, ensure_ascii=False, default=str),
        success=True,
    )


async def run_tool_call(
    executor: ToolExecutor,
    call: ToolCall,
    auth_token: str | None,
    *,
    timeout: float = 15.0,
    max_result_bytes: int = MAX_RESULT_BYTES,
) -> ToolResult:
    """
    Execute one call against *timeout* and always return a ``ToolResult``.

    Exceptions and timeouts become failed results; the error text is
    classified unless the exception carries an explicit ``code``.
    """
    args = call.parsed_arguments()
    logger.debug("TOOL CALL: name=%s id=%s args=%s", call.name, call.id, call.arguments[:200])
    start = time.monotonic()
    try:
        raw = await asyncio.wait_for(
            executor.execute(call.name, args, auth_token),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Tool %s (%s) timed out after %.1fs", call.name, call.id, timeout)
        result = _failure(call, f"Tool timed out after {timeout}s", ErrorCode.TIMEOUT)
    except Exception as exc:
        code = classify_error(str(exc), explicit=getattr(exc, "code", None))
        logger.warning("Tool %s (%s) failed [%s]: %s", call.name, call.id, code.value, exc)
        result = _failure(call, str(exc) or type(exc).__name__, code)
    else:
        result = normalize_tool_result(call, raw)

    duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "TOOL: name=%s id=%s success=%s code=%s duration_ms=%d",
        call.name, call.id, result.success, result.code.value if result.code else "-", duration_ms,
    )
    return truncate_tool_result(result, max_result_bytes)

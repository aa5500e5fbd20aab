"""Tool results, the error taxonomy, and result size limits."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

MAX_RESULT_BYTES = 64 * 1024


class ErrorCode(str, Enum):
    RLS_DENIED = "RLS_DENIED"
    TIMEOUT = "TIMEOUT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ToolResult:
    """
    Outcome of one tool call, as fed back to the model.

    *content* is always JSON text.  *code* is set on failures.
    """

    tool_call_id: str
    name: str
    content: str
    success: bool
    code: ErrorCode | None = None

    def to_dict(self) -> dict:
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "content": self.content,
            "success": self.success,
            "code": self.code.value if self.code else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ToolResult:
        code = data.get("code")
        content = data.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, default=str)
        return cls(
            tool_call_id=str(data.get("tool_call_id") or ""),
            name=str(data.get("name") or ""),
            content=content,
            success=bool(data.get("success", False)),
            code=_parse_code(code),
        )


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

# Checked in order; first match wins.
_ERROR_KEYWORDS: list[tuple[ErrorCode, tuple[str, ...]]] = [
    (ErrorCode.RLS_DENIED, ("row-level security", "row level security", "rls policy", "rls denied", "policy violation")),
    (ErrorCode.TIMEOUT, ("timeout", "timed out", "deadline exceeded")),
    (ErrorCode.RATE_LIMIT, ("rate limit", "rate-limit", "too many requests", "429", "quota")),
    (ErrorCode.FORBIDDEN, ("permission denied", "forbidden", "403", "unauthorized", "401", "access denied", "not allowed")),
    (ErrorCode.NOT_FOUND, ("not found", "404", "does not exist", "no such")),
    (ErrorCode.VALIDATION_ERROR, ("validation", "invalid", "required", "must be", "schema", "malformed", "400")),
    (ErrorCode.NETWORK_ERROR, ("network", "connection", "econnrefused", "econnreset", "socket", "dns", "unreachable")),
]


def _parse_code(value: Any, strict: bool = False) -> ErrorCode | None:
    if value is None or value == "":
        return None
    if isinstance(value, ErrorCode):
        return value
    try:
        return ErrorCode(str(value).upper())
    except ValueError:
        return None if strict else ErrorCode.UNKNOWN


def classify_error(text: str | None, explicit: Any = None) -> ErrorCode:
    """
    Map free-form error text onto an ``ErrorCode``.

    Best-effort keyword matching over the lower-cased text.  An *explicit*
    code (from the executor) always wins when it names an ``ErrorCode``;
    any other explicit value is matched as text along with the message.
    The function is total: every input yields a code.
    """
    code = _parse_code(explicit, strict=True)
    if code is not None:
        return code

    lowered = (text or "").lower()
    if explicit is not None:
        lowered = f"{explicit} {lowered}".lower()
    for candidate, keywords in _ERROR_KEYWORDS:
        if any(k in lowered for k in keywords):
            return candidate
    return ErrorCode.UNKNOWN


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------

def truncate_tool_result(
    result: ToolResult, max_bytes: int = MAX_RESULT_BYTES
) -> ToolResult:
    """
    Replace oversized content with a compact truncation marker.

    Content larger than *max_bytes* (UTF-8) becomes::

        {"success": ..., "code": ..., "message": "truncated",
         "truncated": true, "original_size": N}

    A result that is already a truncation marker is returned unchanged, so
    repeated truncation keeps the first ``original_size``.
    """
    if _is_truncation_marker(result.content):
        return result

    size = len(result.content.encode("utf-8"))
    if size <= max_bytes:
        return result

    marker = {
        "success": result.success,
        "code": result.code.value if result.code else None,
        "message": "truncated",
        "truncated": True,
        "original_size": size,
    }
    return ToolResult(
        tool_call_id=result.tool_call_id,
        name=result.name,
        content=json.dumps(marker),
        success=result.success,
        code=result.code,
    )


def _is_truncation_marker(content: str) -> bool:
    if '"truncated"' not in content:
        return False
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, ValueError):
        return False
    return (
        isinstance(data, dict)
        and data.get("truncated") is True
        and data.get("message") == "truncated"
        and "original_size" in data
    )

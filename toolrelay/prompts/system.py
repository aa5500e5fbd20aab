"""System prompt builder and deterministic fallback answers."""

from __future__ import annotations

import json

from toolrelay.tools.base import Tool
from toolrelay.types import ToolResult


def build_system_prompt(
    tools: list[Tool] | None = None,
    extra_sections: list[str] | None = None,
    *,
    base: str | None = None,
) -> str:
    """
    Build the system prompt for a turn.

    Assembles the base instructions, tool-use discipline, result
    interpretation, and the list of available tools.
    """
    sections: list[str] = [base or BASE_SECTION, TOOL_DISCIPLINE_SECTION, RESULTS_SECTION]

    if tools:
        tool_lines = [t.prompt_line() for t in tools]
        sections.append("## Available Tools\n\n" + "\n".join(tool_lines))

    if extra_sections:
        sections.extend(extra_sections)

    return "\n\n".join(sections)


def build_recovery_prompt(system_prompt: str, failed: list[ToolResult]) -> str:
    """Error-recovery variant used for a relaunch after failed tool calls."""
    lines = [
        f"- {r.name} ({r.tool_call_id}): {r.code.value if r.code else 'UNKNOWN'}"
        for r in failed
    ]
    section = ERROR_RECOVERY_SECTION + "\n\nFailed calls:\n" + "\n".join(lines)
    return f"{system_prompt}\n\n{section}" if system_prompt else section


def _result_preview(result: ToolResult, limit: int = 300) -> str:
    try:
        data = json.loads(result.content)
    except (json.JSONDecodeError, ValueError):
        data = None
    if isinstance(data, dict):
        if data.get("truncated") is True:
            return f"(output of {data.get('original_size', '?')} bytes was truncated)"
        for key in ("message", "error", "result", "data"):
            value = data.get(key)
            if value:
                text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
                break
        else:
            text = result.content
    else:
        text = result.content
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def build_fallback_answer(last_result: ToolResult | None, rounds: int) -> str:
    """
    Deterministic answer for when the model produced nothing usable.

    Summarises the last tool result when there is one.
    """
    if last_result is None:
        return (
            "I could not produce an answer for this request. "
            "Please try rephrasing it or providing more detail."
        )

    preview = _result_preview(last_result)
    if last_result.success:
        outcome = f"The last tool call, {last_result.name}, succeeded"
    else:
        code = last_result.code.value if last_result.code else "UNKNOWN"
        outcome = f"The last tool call, {last_result.name}, failed ({code})"
    return (
        f"I stopped after {rounds} tool round(s) without a final answer. "
        f"{outcome}: {preview}"
    )


BASE_SECTION = """You are an assistant that can act on the user's behalf through tools.
When a request needs data or an action, call the appropriate tool instead of guessing."""

TOOL_DISCIPLINE_SECTION = """## Tool Discipline

- Only call tools that are listed as available, with arguments that match their schema.
- Call one tool per step unless the calls are independent.
- Never claim an action succeeded unless a tool result confirms it."""

RESULTS_SECTION = """## Reading Tool Results

- Tool results are JSON. `success: false` means the action did not happen.
- A result with `truncated: true` was too large to return; ask for a narrower query if you need it."""

ERROR_RECOVERY_SECTION = """## Error Recovery

One or more tool calls in the previous step failed.
- Tell the user plainly which action failed and why; do not pretend it succeeded.
- Propose a concrete remedy: corrected arguments, a different tool, or what the user must provide.
- Retry only if the error suggests a fix you can apply yourself."""

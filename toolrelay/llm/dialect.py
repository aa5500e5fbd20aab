"""
Per-vendor message dialect constraints.

Each vendor accepts a slightly different set of message shapes.  Rather than
repairing history by hand in every adapter, the adapters describe their
constraints as a ``DialectRules`` entry and run the canonical thread through
``apply_dialect`` before converting it to wire JSON.

``apply_dialect`` never rewrites meaning.  A message that cannot be sent
validly is dropped (together with any tool messages that would be orphaned
by the drop) and the reason is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from toolrelay.llm.types import Message, ToolCall

logger = logging.getLogger(__name__)

IMAGE_INLINE = "inline"
IMAGE_METADATA = "metadata"
IMAGE_NONE = "none"


@dataclass(frozen=True)
class DialectRules:
    """
    Structural constraints of one vendor's chat dialect.

    Parameters
    ----------
    name:
        Dialect name, used in log lines.
    requires_reasoning_with_tool_calls:
        Assistant messages carrying ``tool_calls`` must also carry non-empty
        reasoning.
    reasoning_fallback:
        Text used when required reasoning is missing.  ``None`` means the
        message (and its tool results) is dropped instead.
    reasoning_field:
        Wire field that carries assistant reasoning, or ``None`` when the
        dialect does not accept reasoning on input.
    forbid_tool_name:
        Tool-role messages must not carry a ``name`` field.
    image_mode:
        ``"inline"`` (multi-part content), ``"metadata"`` (out-of-band
        object) or ``"none"`` (images are not accepted).
    tool_role:
        Wire role used for tool results.
    name_only_on_user:
        Only ``user`` messages may carry a ``name`` field.
    """

    name: str
    requires_reasoning_with_tool_calls: bool = False
    reasoning_fallback: str | None = None
    reasoning_field: str | None = None
    forbid_tool_name: bool = False
    image_mode: str = IMAGE_NONE
    tool_role: str = "tool"
    name_only_on_user: bool = False


OPENAI = DialectRules(name="openai", image_mode=IMAGE_INLINE)
GROQ = DialectRules(name="groq")
XAI = DialectRules(name="xai", image_mode=IMAGE_INLINE)
DEEPSEEK = DialectRules(
    name="deepseek",
    requires_reasoning_with_tool_calls=True,
    reasoning_fallback="Calling tools to answer the request.",
    reasoning_field="reasoning_content",
)
CEREBRAS = DialectRules(name="cerebras", forbid_tool_name=True)
LIMINALITY = DialectRules(
    name="liminality",
    reasoning_field="reasoning",
    image_mode=IMAGE_METADATA,
    tool_role="tool_response",
)
RESPONSES = DialectRules(name="responses", forbid_tool_name=True, name_only_on_user=True)

DIALECTS: dict[str, DialectRules] = {
    r.name: r for r in (OPENAI, GROQ, XAI, DEEPSEEK, CEREBRAS, LIMINALITY, RESPONSES)
}


# ---------------------------------------------------------------------------
# Repair pass
# ---------------------------------------------------------------------------

def apply_dialect(messages: list[Message], rules: DialectRules) -> list[Message]:
    """
    Return a copy of *messages* that satisfies *rules*.

    Tool-call exchanges are emitted as an assistant message with
    ``tool_calls`` immediately followed by one tool message per call, in
    call order:

    - results resolved in place (``tool_results``) are expanded into tool
      messages;
    - otherwise the tool messages directly following the assistant message
      must answer every call id;
    - an exchange with any unanswered call id is dropped whole;
    - tool messages that answer no emitted call (orphans) are dropped.
    """
    out: list[Message] = []
    i = 0
    n = len(messages)

    while i < n:
        msg = messages[i]

        if msg.role == "tool":
            logger.warning(
                "[%s] dropping orphan tool message %s (tool_call_id=%s)",
                rules.name, msg.id, msg.tool_call_id,
            )
            i += 1
            continue

        if msg.role == "assistant" and msg.tool_calls:
            # Consecutive tool messages belong to this exchange.
            j = i + 1
            following: list[Message] = []
            while j < n and messages[j].role == "tool":
                following.append(messages[j])
                j += 1
            out.extend(_repair_exchange(msg, following, rules))
            i = j
            continue

        out.append(_check_images(msg, rules))
        i += 1

    if rules.name_only_on_user:
        out = [_strip_name(m, rules) for m in out]
    return out


def _repair_exchange(
    assistant: Message, following: list[Message], rules: DialectRules
) -> list[Message]:
    calls = [tc for tc in assistant.tool_calls or [] if tc.id and tc.id.strip()]
    if len(calls) != len(assistant.tool_calls or []):
        logger.warning(
            "[%s] message %s: filtered %d tool call(s) without id",
            rules.name, assistant.id, len(assistant.tool_calls or []) - len(calls),
        )

    if not calls:
        for extra in following:
            _log_orphan(extra, rules)
        if assistant.content:
            return [replace(assistant, tool_calls=None, tool_results=None)]
        logger.warning(
            "[%s] dropping assistant message %s: no valid tool calls", rules.name, assistant.id
        )
        return []

    answers = _collect_answers(assistant, calls, following)
    missing = [tc.id for tc in calls if tc.id not in answers]
    if missing:
        logger.warning(
            "[%s] dropping assistant message %s: %d tool call(s) unanswered %s",
            rules.name, assistant.id, len(missing), missing,
        )
        for extra in following:
            _log_orphan(extra, rules)
        return []

    reasoning = assistant.reasoning
    if rules.requires_reasoning_with_tool_calls and not (reasoning and reasoning.strip()):
        if rules.reasoning_fallback is None:
            logger.warning(
                "[%s] dropping assistant message %s and its %d tool result(s): "
                "reasoning required with tool_calls",
                rules.name, assistant.id, len(calls),
            )
            return []
        logger.debug(
            "[%s] message %s: using fallback reasoning", rules.name, assistant.id
        )
        reasoning = rules.reasoning_fallback

    used = {answers[tc.id].id for tc in calls}
    for extra in following:
        if extra.id not in used:
            _log_orphan(extra, rules)

    head = replace(assistant, tool_calls=calls, tool_results=None, reasoning=reasoning)
    return [head] + [answers[tc.id] for tc in calls]


def _collect_answers(
    assistant: Message, calls: list[ToolCall], following: list[Message]
) -> dict[str, Message]:
    answers: dict[str, Message] = {}
    call_names = {tc.id: tc.name for tc in calls}

    if assistant.tool_results:
        for tr in assistant.tool_results:
            if tr.tool_call_id in call_names and tr.tool_call_id not in answers:
                answers[tr.tool_call_id] = Message(
                    role="tool",
                    content=tr.content,
                    tool_call_id=tr.tool_call_id,
                    name=tr.name or call_names[tr.tool_call_id],
                    timestamp=assistant.timestamp,
                )

    for msg in following:
        if msg.tool_call_id in call_names and msg.tool_call_id not in answers:
            answers[msg.tool_call_id] = msg

    return answers


def _check_images(msg: Message, rules: DialectRules) -> Message:
    if msg.images and rules.image_mode == IMAGE_NONE:
        logger.warning(
            "[%s] message %s: %d image(s) not supported by this dialect, sending text only",
            rules.name, msg.id, len(msg.images),
        )
        return replace(msg, images=None)
    return msg


def _strip_name(msg: Message, rules: DialectRules) -> Message:
    if msg.role == "user" or not msg.name:
        return msg
    logger.debug("[%s] message %s: dropping name on %s message", rules.name, msg.id, msg.role)
    return replace(msg, name=None)


def _log_orphan(msg: Message, rules: DialectRules) -> None:
    logger.warning(
        "[%s] dropping orphan tool message %s (tool_call_id=%s)",
        rules.name, msg.id, msg.tool_call_id,
    )

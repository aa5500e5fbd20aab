"""
Round orchestrator: the loop that turns one user message into a final answer.

Each round streams a model reply, assembles any tool calls, executes them
in order, persists the exchange, and relaunches the model with the results.
The loop ends when the model answers without tool calls, when
``max_rounds`` tool rounds have run, or when the model cannot be reached at
all.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Iterable

from toolrelay.config import OrchestratorConfig
from toolrelay.llm.errors import ProviderError
from toolrelay.llm.router import LLMRouter
from toolrelay.llm.thread import validate_and_normalize_thread, validate_thread_coherence
from toolrelay.llm.tool_call_accumulator import ToolCallAccumulator
from toolrelay.llm.types import ImageAttachment, LLMResponse, Message, ToolCall, Usage
from toolrelay.orchestrator.broadcast import (
    EVENT_REASONING_DELTA,
    EVENT_ROUND_COMPLETE,
    EVENT_TOOL_CALLS_ANNOUNCED,
    EVENT_TOOL_RESULT,
    Broadcaster,
    NullBroadcaster,
    TokenBatcher,
    publish_with_retry,
)
from toolrelay.orchestrator.executor import ToolExecutor, run_tool_call
from toolrelay.orchestrator.state import RoundPhase, RoundState, TurnResult
from toolrelay.prompts.system import build_fallback_answer, build_recovery_prompt
from toolrelay.session.memory import Persistence
from toolrelay.types import ToolResult

logger = logging.getLogger(__name__)


@dataclass
class _Generation:
    """What one model call produced."""

    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None


def _dedupe_calls(calls: Iterable[ToolCall]) -> list[ToolCall]:
    seen: set[str] = set()
    unique: list[ToolCall] = []
    for call in calls:
        if call.id in seen:
            logger.warning("Duplicate tool call id %s (%s) in one round, executing once", call.id, call.name)
            continue
        seen.add(call.id)
        unique.append(call)
    return unique


class RoundOrchestrator:
    """
    Drives the generate / execute / relaunch loop for one user turn.

    Parameters
    ----------
    router : LLMRouter
        Supplies the active provider.
    executor : ToolExecutor
        Runs tool calls by name.
    persistence : Persistence, optional
        Receives every message of the turn, in order.
    broadcaster : Broadcaster, optional
        UI channel for tokens, tool events and completion.
    tools : list[dict], optional
        OpenAI-style tool schemas offered to the model.
    system_prompt : str
        Prepended to every model call.  Never persisted.
    config : OrchestratorConfig, optional
        Round limit, timeouts, batching and safety-net settings.
    provider : str, optional
        Router entry to use.  Defaults to the router's active provider.
    """

    def __init__(
        self,
        router: LLMRouter,
        executor: ToolExecutor,
        persistence: Persistence | None = None,
        broadcaster: Broadcaster | None = None,
        *,
        tools: list[dict] | None = None,
        system_prompt: str = "",
        config: OrchestratorConfig | None = None,
        provider: str | None = None,
    ) -> None:
        self.router = router
        self.provider_name = provider
        self.executor = executor
        self.persistence = persistence
        self.broadcaster = broadcaster or NullBroadcaster()
        self.tools = tools or None
        self.system_prompt = system_prompt
        self.config = config or OrchestratorConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        user_input: str | None = None,
        *,
        history: Iterable[Any] | None = None,
        session_id: str = "default",
        auth_token: str | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> TurnResult:
        """
        Process one user turn and return its final answer.

        *history* is the prior thread (dicts or ``Message`` objects); it is
        validated and normalised before use.  *user_input*, when given, is
        appended and persisted as a new user message.

        Raises ``ProviderError`` only when the model call fails and the
        non-streaming retry fails too.
        """
        thread = validate_and_normalize_thread(history or [])
        report = validate_thread_coherence(thread)
        if not report.is_valid:
            logger.warning(
                "Session %s history has %d pairing problem(s); they will be repaired: %s",
                session_id, len(report.errors), "; ".join(report.errors[:5]),
            )

        if user_input is not None:
            user_msg = Message(role="user", content=user_input, images=images or None)
            await self._persist(session_id, user_msg, auth_token)
            thread.append(user_msg)

        state = RoundState(messages=thread, max_rounds=self.config.max_rounds)
        all_calls: list[ToolCall] = []
        all_results: list[ToolResult] = []
        generations = 0

        while True:
            self._log_round(state, session_id)
            messages = self._prompt_messages(state)

            gen = await self._generate(state, messages, session_id)
            generations += 1
            if gen.usage:
                state.usage = state.usage + gen.usage

            if not gen.tool_calls and not gen.content.strip() and self.config.safety_net:
                logger.warning(
                    "Round %d produced neither text nor tool calls, retrying without streaming",
                    state.round_index,
                )
                retry = await self._safety_net(messages, fatal=False)
                if retry is not None:
                    generations += 1
                    if retry.usage:
                        state.usage = state.usage + retry.usage
                    gen = retry

            calls = _dedupe_calls(gen.tool_calls)

            if not calls:
                fallback = not gen.content.strip()
                content = gen.content
                if fallback:
                    last = state.last_results[-1] if state.last_results else None
                    content = build_fallback_answer(last, state.round_index)
                return await self._complete(
                    state, session_id, auth_token, content, gen.reasoning,
                    all_calls, all_results, fallback,
                )

            # Tool round
            state.transition(RoundPhase.TOOLS_PENDING)
            state.set_tool_calls(calls)
            all_calls.extend(calls)
            await self._publish(
                EVENT_TOOL_CALLS_ANNOUNCED,
                {
                    "session_id": session_id,
                    "round": state.round_index,
                    "tool_calls": [tc.to_dict() for tc in calls],
                },
            )

            state.transition(RoundPhase.TOOLS_EXECUTING)
            results = await self._execute_round(state, session_id, auth_token)
            all_results.extend(results)

            assistant_msg = Message(
                role="assistant",
                content=gen.content or None,
                tool_calls=state.ordered_tool_calls(),
                reasoning=gen.reasoning or None,
            )
            await self._persist(session_id, assistant_msg, auth_token)
            state.append(assistant_msg)
            for result in results:
                tool_msg = Message(
                    role="tool",
                    content=result.content,
                    tool_call_id=result.tool_call_id,
                    name=result.name,
                )
                await self._persist(session_id, tool_msg, auth_token)
                state.append(tool_msg)

            state.last_results = results
            state.round_index += 1

            if state.exhausted:
                logger.warning(
                    "Session %s reached max_rounds=%d, ending turn", session_id, state.max_rounds
                )
                content, reasoning = "", ""
                if self.config.force_final_answer:
                    final = await self._forced_final(state)
                    if final is not None:
                        generations += 1
                        if final.usage:
                            state.usage = state.usage + final.usage
                        content, reasoning = final.content, final.reasoning
                fallback = not content.strip()
                if fallback:
                    content = build_fallback_answer(results[-1] if results else None, state.round_index)
                return await self._complete(
                    state, session_id, auth_token, content, reasoning,
                    all_calls, all_results, fallback,
                )

            state.transition(RoundPhase.RELAUNCHING)
            state.transition(RoundPhase.GENERATING)

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    def _prompt_messages(self, state: RoundState) -> list[Message]:
        """System prompt (recovery variant after failed tools) + thread."""
        failed = [r for r in state.last_results if not r.success]
        prompt = build_recovery_prompt(self.system_prompt, failed) if failed else self.system_prompt
        if not prompt:
            return list(state.messages)
        return [Message(role="system", content=prompt)] + list(state.messages)

    async def _generate(
        self, state: RoundState, messages: list[Message], session_id: str
    ) -> _Generation:
        """Drain one streamed reply; fall back to a plain call if the stream fails."""
        provider = self.router.resolve(self.provider_name)
        context = {"session_id": session_id, "round": state.round_index}
        batcher = TokenBatcher(
            self.broadcaster,
            batch_size=self.config.batch_size,
            max_retries=self.config.broadcast_max_retries,
            base_delay=self.config.broadcast_base_delay,
            context=context,
        )
        accumulator = ToolCallAccumulator()
        gen = _Generation()
        content_parts: list[str] = []
        reasoning_parts: list[str] = []

        try:
            async with aclosing(provider.call_with_messages_stream(messages, self.tools)) as stream:
                async for chunk in stream:
                    if chunk.type == "error":
                        raise ProviderError(
                            chunk.error or "stream error",
                            error_code="stream_error",
                            provider=provider.name,
                        )
                    if chunk.content:
                        content_parts.append(chunk.content)
                        await batcher.add(chunk.content)
                    if chunk.reasoning:
                        reasoning_parts.append(chunk.reasoning)
                        await self._publish(EVENT_REASONING_DELTA, {**context, "content": chunk.reasoning})
                    for delta in chunk.tool_calls or []:
                        accumulator.feed(delta)
                    if chunk.usage:
                        gen.usage = chunk.usage
                    if chunk.finish_reason:
                        gen.finish_reason = chunk.finish_reason
                    if chunk.type == "done":
                        break
        except ProviderError as exc:
            await batcher.flush()
            logger.error("Stream from %s failed in round %d: %s", provider.name, state.round_index, exc)
            if not self.config.safety_net:
                state.transition(RoundPhase.FAILED)
                raise
            try:
                retry = await self._safety_net(messages, fatal=True)
            except ProviderError:
                state.transition(RoundPhase.FAILED)
                raise
            return retry

        await batcher.flush()
        gen.content = "".join(content_parts)
        gen.reasoning = "".join(reasoning_parts)
        gen.tool_calls = accumulator.finish()
        if accumulator.errors:
            logger.warning("Tool call assembly problems: %s", "; ".join(accumulator.errors))
        logger.debug(
            "Round %d stream done: finish=%s text_len=%d tool_calls=%d",
            state.round_index, gen.finish_reason, len(gen.content), len(gen.tool_calls),
        )
        return gen

    async def _safety_net(self, messages: list[Message], *, fatal: bool) -> _Generation | None:
        """
        One non-streaming call over the same messages.

        With *fatal* the ``ProviderError`` propagates; otherwise it is logged
        and ``None`` is returned.
        """
        provider = self.router.resolve(self.provider_name)
        try:
            response = await provider.call_with_messages(messages, self.tools)
        except ProviderError as exc:
            if fatal:
                logger.error("Non-streaming retry to %s failed: %s", provider.name, exc)
                raise
            logger.warning("Non-streaming retry to %s failed: %s", provider.name, exc)
            return None
        return self._from_response(response)

    async def _forced_final(self, state: RoundState) -> _Generation | None:
        """Ask for a plain answer with no tools offered."""
        messages = self._prompt_messages(state)
        try:
            provider = self.router.resolve(self.provider_name)
            response = await provider.call_with_messages(messages, None)
        except ProviderError as exc:
            logger.warning("Final answer call failed: %s", exc)
            return None
        return self._from_response(response)

    @staticmethod
    def _from_response(response: LLMResponse) -> _Generation:
        return _Generation(
            content=response.content or "",
            reasoning=response.reasoning or "",
            tool_calls=list(response.tool_calls or []),
            usage=response.usage,
            finish_reason=response.finish_reason,
        )

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _execute_round(
        self, state: RoundState, session_id: str, auth_token: str | None
    ) -> list[ToolResult]:
        results: list[ToolResult] = []
        for call in state.ordered_tool_calls():
            result = await run_tool_call(
                self.executor,
                call,
                auth_token,
                timeout=self.config.tool_timeout_seconds,
                max_result_bytes=self.config.max_result_bytes,
            )
            results.append(result)
            await self._publish(
                EVENT_TOOL_RESULT,
                {
                    "session_id": session_id,
                    "round": state.round_index,
                    "tool_call_id": result.tool_call_id,
                    "name": result.name,
                    "success": result.success,
                    "code": result.code.value if result.code else None,
                    "content": result.content,
                },
            )
        return results

    # ------------------------------------------------------------------
    # Completion and collaborators
    # ------------------------------------------------------------------

    async def _complete(
        self,
        state: RoundState,
        session_id: str,
        auth_token: str | None,
        content: str,
        reasoning: str,
        tool_calls: list[ToolCall],
        tool_results: list[ToolResult],
        fallback: bool,
    ) -> TurnResult:
        if fallback:
            logger.warning("Session %s: model gave no usable answer, using fallback", session_id)
        final = Message(role="assistant", content=content, reasoning=reasoning or None)
        await self._persist(session_id, final, auth_token)
        state.append(final)
        state.transition(RoundPhase.COMPLETE)

        await self._publish(
            EVENT_ROUND_COMPLETE,
            {
                "session_id": session_id,
                "rounds": state.round_index,
                "content": content,
                "fallback_used": fallback,
            },
        )
        logger.info(
            "Turn complete: session=%s rounds=%d tool_calls=%d fallback=%s",
            session_id, state.round_index, len(tool_calls), fallback,
        )
        return TurnResult(
            content=content,
            phase=state.phase,
            rounds=state.round_index,
            reasoning=reasoning,
            tool_calls=tool_calls,
            tool_results=tool_results,
            messages=list(state.messages),
            usage=state.usage,
            fallback_used=fallback,
        )

    async def _persist(self, session_id: str, message: Message, auth_token: str | None) -> None:
        if self.persistence is None:
            return
        try:
            await self.persistence.add_message(session_id, message, auth_token)
        except Exception:
            logger.exception("Failed to persist %s message %s", message.role, message.id)

    async def _publish(self, event: str, payload: dict) -> None:
        await publish_with_retry(
            self.broadcaster,
            event,
            payload,
            max_retries=self.config.broadcast_max_retries,
            base_delay=self.config.broadcast_base_delay,
        )

    @staticmethod
    def _log_round(state: RoundState, session_id: str) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        roles = ",".join(m.role for m in state.messages)
        pending = sum(len(m.tool_calls or []) for m in state.messages if m.role == "assistant")
        logger.debug(
            "ROUND: session=%s index=%d messages=%d roles=[%s] tool_calls_in_thread=%d",
            session_id, state.round_index, len(state.messages), roles, pending,
        )

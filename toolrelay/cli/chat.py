"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
import json
import uuid

from rich.console import Console

from toolrelay.cli.output import OutputFormatter
from toolrelay.llm.errors import ProviderError
from toolrelay.llm.thread import validate_and_normalize_thread
from toolrelay.orchestrator.broadcast import (
    EVENT_REASONING_DELTA,
    EVENT_ROUND_COMPLETE,
    EVENT_TOKEN_BATCH,
    EVENT_TOOL_CALLS_ANNOUNCED,
    EVENT_TOOL_RESULT,
)
from toolrelay.orchestrator.core import RoundOrchestrator
from toolrelay.session.store import MessageStore
from toolrelay.tools.registry import ToolRegistry


class ChatHandler:
    """
    Manages the interactive chat loop.

    Also acts as the orchestrator's ``Broadcaster``: streamed tokens, tool
    activity and the final answer are rendered on the console as they
    arrive.
    """

    def __init__(
        self,
        orchestrator: RoundOrchestrator | None,
        store: MessageStore,
        registry: ToolRegistry,
        *,
        session_id: str | None = None,
        console: Console | None = None,
        show_reasoning: bool = False,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.registry = registry
        self.session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.show_reasoning = show_reasoning
        self._running = True
        self._round_text: list[str] = []

    # ------------------------------------------------------------------
    # Broadcaster
    # ------------------------------------------------------------------

    async def send(self, event: str, payload: dict) -> None:
        if event == EVENT_TOKEN_BATCH:
            self._round_text.append(payload.get("content", ""))
            self.console.print(payload.get("content", ""), end="", markup=False, highlight=False)
        elif event == EVENT_REASONING_DELTA and self.show_reasoning:
            self.console.print(payload.get("content", ""), end="", style="dim italic", markup=False)
        elif event == EVENT_TOOL_CALLS_ANNOUNCED:
            if self._round_text:
                self.console.print()
            self._round_text = []
            for tc in payload.get("tool_calls", []):
                self.console.print(
                    f"  [yellow]->[/yellow] {tc['name']}", end=" ", highlight=False
                )
                self.console.print(format_arguments(tc.get("arguments", "")), style="dim", markup=False)
        elif event == EVENT_TOOL_RESULT:
            if payload.get("success"):
                self.console.print(f"  [green]ok[/green]   {payload.get('name')}")
            else:
                self.console.print(
                    f"  [red]fail[/red] {payload.get('name')} ({payload.get('code') or 'UNKNOWN'})"
                )
        elif event == EVENT_ROUND_COMPLETE:
            content = payload.get("content", "")
            if content != "".join(self._round_text):
                # The answer did not arrive as stream tokens (retry or fallback).
                self.console.print(content, markup=False, highlight=False)
            else:
                self.console.print()
            self._round_text = []

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_command(self, command: str) -> bool:
        """
        Handle inline commands. Returns True if the command was handled.
        """
        parts = command.strip().split(None, 1)
        cmd = parts[0].lower()
        arg = parts[1] if len(parts) > 1 else ""

        if cmd == "/quit":
            self._running = False
            self.console.print("[dim]Goodbye.[/dim]")
            return True

        if cmd == "/history":
            raw = await self.store.get_messages(self.session_id)
            self.formatter.format_messages(validate_and_normalize_thread(raw))
            return True

        if cmd == "/tools":
            self.formatter.format_tool_list(self.registry.list())
            return True

        if cmd == "/new":
            self.session_id = f"sess_{uuid.uuid4().hex[:12]}"
            self.console.print(f"  New session: [bold]{self.session_id}[/bold]")
            return True

        if cmd == "/switch":
            router = self.orchestrator.router
            if not arg:
                self.console.print(f"  Available providers: {', '.join(router.provider_names)}")
                self.console.print(f"  Active: {router.active_name}")
            else:
                try:
                    router.set_active(arg)
                    self.console.print(f"  Switched to provider: [bold]{arg}[/bold]")
                except KeyError as e:
                    self.console.print(f"  [red]Error:[/red] {e}")
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /quit     - Exit the chat\n"
                "  /history  - Show this session's messages\n"
                "  /tools    - List available tools\n"
                "  /switch   - Switch LLM provider\n"
                "  /new      - Start a new session\n"
                "  /help     - Show this help\n"
            )
            return True

        return False

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def handle_input(self, user_input: str) -> None:
        """Run one turn against the stored history of the current session."""
        history = await self.store.get_messages(self.session_id)
        self._round_text = []
        try:
            result = await self.orchestrator.run(
                user_input, history=history, session_id=self.session_id
            )
        except ProviderError as e:
            self.console.print(f"\n[red]Model error:[/red] {e}")
            return

        if result.usage.total_tokens:
            self.console.print(
                f"[dim]rounds={result.rounds} tokens={result.usage.total_tokens}[/dim]"
            )

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            "[bold]toolrelay[/bold] - tool-calling chat\n"
            f"[dim]Session {self.session_id}. Type /help for commands, /quit to exit.[/dim]\n"
        )

        loop = asyncio.get_running_loop()
        while self._running:
            try:
                user_input = await loop.run_in_executor(None, lambda: input("you> ").strip())
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                if await self.handle_command(user_input):
                    continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)


def format_arguments(arguments: str) -> str:
    """Compact one-line rendering of a tool call's JSON arguments."""
    try:
        return json.dumps(json.loads(arguments), ensure_ascii=False, separators=(",", ":"))
    except (json.JSONDecodeError, ValueError):
        return arguments

"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from toolrelay.llm.types import Message
from toolrelay.tools.base import Tool

ROLE_COLORS = {
    "user": "blue",
    "assistant": "green",
    "tool": "cyan",
    "system": "dim",
}


class OutputFormatter:
    """Rich-based output formatting for the toolrelay CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_tool_list(self, tools: list[Tool]) -> None:
        table = Table(title="Tools", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Required args", no_wrap=True)
        table.add_column("Description")

        for t in tools:
            required = ", ".join(t.parameters.get("required", [])) or "-"
            table.add_row(t.name, required, t.description)

        self.console.print(table)

    def format_provider_list(self, rows: list[dict[str, Any]], active: str | None) -> None:
        table = Table(title="Providers")
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Vendor", no_wrap=True)
        table.add_column("Model")
        table.add_column("Base URL")
        table.add_column("Key", no_wrap=True)

        for row in rows:
            name = row["name"] + (" *" if row["name"] == active else "")
            key = Text("set", style="green") if row["available"] else Text("missing", style="red")
            table.add_row(name, row["vendor"], row["model"], row["base_url"], key)

        self.console.print(table)

    def format_session_list(self, sessions: list[dict]) -> None:
        if not sessions:
            self.console.print("[dim]No sessions.[/dim]")
            return

        table = Table(title="Sessions")
        table.add_column("Session ID", style="cyan", no_wrap=True)
        table.add_column("Created")
        table.add_column("Updated")
        table.add_column("Messages", justify="right")

        for s in sessions:
            table.add_row(
                s.get("session_id", "?"),
                s.get("created_at") or "?",
                s.get("updated_at") or "-",
                str(s.get("message_count", 0)),
            )

        self.console.print(table)

    def format_messages(self, messages: list[Message]) -> None:
        if not messages:
            self.console.print("[dim]No messages.[/dim]")
            return

        for msg in messages:
            color = ROLE_COLORS.get(msg.role, "white")
            ts = msg.timestamp[11:19] if len(msg.timestamp) >= 19 else msg.timestamp
            if msg.role == "assistant" and msg.tool_calls:
                calls = ", ".join(f"{tc.name}({tc.arguments[:60]})" for tc in msg.tool_calls)
                body = f"-> {calls}"
            elif msg.role == "tool":
                body = f"{msg.name} [{msg.tool_call_id}] {(msg.content or '')[:100]}"
            else:
                body = (msg.content or "")[:200]
            self.console.print(f"  [{color}]{ts} {msg.role:>9s}[/{color}]  ", end="")
            self.console.print(body, markup=False, highlight=False)

    def format_config(self, config: dict) -> None:
        config_json = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(config_json, "json", theme="monokai"))

"""
Main CLI application for toolrelay.

Usage:
    toolrelay chat [--provider NAME] [--profile NAME] [--session ID] [--max-rounds N]
    toolrelay sessions list|show|delete
    toolrelay providers list
    toolrelay config show|validate
    toolrelay version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console

from toolrelay import __version__
from toolrelay.config import ConfigError, ToolrelayConfig, load_config

app = typer.Typer(name="toolrelay", help="toolrelay - streaming tool-calling chat over many LLM vendors")
sessions_app = typer.Typer(help="Session history management")
providers_app = typer.Typer(help="Configured LLM providers")
config_app = typer.Typer(help="Configuration management")

app.add_typer(sessions_app, name="sessions")
app.add_typer(providers_app, name="providers")
app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "toolrelay.yaml",
        Path.cwd() / "toolrelay.yml",
        Path.home() / ".config" / "toolrelay" / "config.yaml",
        Path.home() / ".toolrelay" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _load(profile: str | None = None, overrides: dict[str, Any] | None = None) -> ToolrelayConfig:
    try:
        return load_config(_get_config_path(), profile=profile, cli_overrides=overrides)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)


async def _open_store(cfg: ToolrelayConfig):
    from toolrelay.session.store import MessageStore

    store = MessageStore(cfg.session.history_db)
    await store.init()
    return store


async def _setup_stack(
    cfg: ToolrelayConfig,
    session_id: str | None = None,
    show_reasoning: bool = False,
):
    """Wire up router, tools, store and orchestrator for chat."""
    from toolrelay.cli.chat import ChatHandler
    from toolrelay.llm.router import LLMRouter
    from toolrelay.orchestrator.core import RoundOrchestrator
    from toolrelay.orchestrator.executor import RegistryToolExecutor
    from toolrelay.prompts.system import build_system_prompt
    from toolrelay.tools.builtin import builtin_registry

    router = LLMRouter.from_config(cfg)
    if not router.active_provider.is_available():
        console.print(
            f"[yellow]Warning:[/yellow] provider '{router.active_name}' has no API key; "
            "set the environment variable named by its api_key_env."
        )

    registry = builtin_registry()
    store = await _open_store(cfg)

    handler = ChatHandler(
        orchestrator=None,
        store=store,
        registry=registry,
        session_id=session_id,
        console=console,
        show_reasoning=show_reasoning,
    )
    handler.orchestrator = RoundOrchestrator(
        router,
        RegistryToolExecutor(registry),
        persistence=store,
        broadcaster=handler,
        tools=registry.to_openai_schema(),
        system_prompt=build_system_prompt(tools=registry.list()),
        config=cfg.orchestrator,
    )
    return handler, store


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    provider: Optional[str] = typer.Option(None, help="LLM provider name"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    session: Optional[str] = typer.Option(None, "--session", help="Resume session ID"),
    max_rounds: Optional[int] = typer.Option(None, "--max-rounds", help="Tool rounds per turn"),
    reasoning: bool = typer.Option(False, "--reasoning", help="Show model reasoning"),
):
    """Start an interactive chat session."""
    from toolrelay.logsetup import configure_logging

    overrides: dict[str, Any] = {}
    if provider:
        overrides["llm.active"] = provider
    if max_rounds is not None:
        overrides["orchestrator.max_rounds"] = max_rounds
    cfg = _load(profile, overrides)
    configure_logging(cfg.logging, console=Console(stderr=True))

    async def _run():
        handler, store = await _setup_stack(cfg, session, reasoning)
        try:
            await handler.run_loop()
        finally:
            await store.close()

    asyncio.run(_run())


@sessions_app.command("list")
def sessions_list():
    """List stored sessions."""
    from toolrelay.cli.output import OutputFormatter

    cfg = _load()

    async def _run():
        store = await _open_store(cfg)
        try:
            sessions = await store.list_sessions()
        finally:
            await store.close()
        OutputFormatter(console).format_session_list(sessions)

    asyncio.run(_run())


@sessions_app.command("show")
def sessions_show(session_id: str = typer.Argument(..., help="Session ID")):
    """Show the messages of a session."""
    from toolrelay.cli.output import OutputFormatter
    from toolrelay.llm.thread import validate_and_normalize_thread

    cfg = _load()

    async def _run():
        store = await _open_store(cfg)
        try:
            if await store.get_session(session_id) is None:
                console.print(f"[red]Session not found:[/red] {session_id}")
                raise typer.Exit(1)
            raw = await store.get_messages(session_id)
        finally:
            await store.close()
        OutputFormatter(console).format_messages(validate_and_normalize_thread(raw))

    asyncio.run(_run())


@sessions_app.command("delete")
def sessions_delete(session_id: str = typer.Argument(..., help="Session ID")):
    """Delete a session and its messages."""
    cfg = _load()

    async def _run():
        store = await _open_store(cfg)
        try:
            deleted = await store.delete_session(session_id)
        finally:
            await store.close()
        if not deleted:
            console.print(f"[red]Session not found:[/red] {session_id}")
            raise typer.Exit(1)
        console.print(f"Deleted session: {session_id}")

    asyncio.run(_run())


@providers_app.command("list")
def providers_list(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """List configured providers and whether their API key is set."""
    from toolrelay.cli.output import OutputFormatter

    cfg = _load(profile)
    rows = [
        {
            "name": name,
            "vendor": p.vendor,
            "model": p.model,
            "base_url": p.base_url,
            "available": bool(p.resolve_api_key()),
        }
        for name, p in sorted(cfg.providers.items())
    ]
    OutputFormatter(console).format_provider_list(rows, cfg.llm.active)


@config_app.command("show")
def config_show(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Show effective config."""
    from toolrelay.cli.output import OutputFormatter

    cfg = _load(profile)
    OutputFormatter(console).format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Validate config and summarise what was loaded."""
    config_path = _get_config_path()
    cfg = _load(profile)
    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    active = cfg.providers[cfg.llm.active]
    console.print(f"  Active provider: {cfg.llm.active} ({active.vendor}, {active.model})")
    console.print(f"  Max rounds: {cfg.orchestrator.max_rounds}")
    console.print(f"  History DB: {cfg.session.history_db}")


@app.command()
def version():
    """Show version."""
    console.print(f"toolrelay v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()

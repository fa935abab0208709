"""
Main CLI application for chatloom.

Usage:
    chatloom chat [--profile NAME] [--incognito] [--web-search] [--verbose]
    chatloom tools list|info
    chatloom config show|validate
    chatloom version
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from chatloom.config import ChatloomConfig, load_config, validate_config

app = typer.Typer(name="chatloom", help="Chatloom - streaming assistant with tools and memories")
tools_app = typer.Typer(help="Tool declarations")
config_app = typer.Typer(help="Configuration management")

app.add_typer(tools_app, name="tools")
app.add_typer(config_app, name="config")

console = Console()

VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "chatloom.yaml",
        Path.cwd() / "chatloom.yml",
        Path.home() / ".config" / "chatloom" / "config.yaml",
        Path.home() / ".chatloom" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_registry(cfg: ChatloomConfig):
    from chatloom.tools.builtin import register_builtin_tools
    from chatloom.tools.registry import ToolRegistry

    registry = ToolRegistry()
    register_builtin_tools(registry)
    if cfg.tools.declarations_file:
        loaded = registry.load_declarations(cfg.tools.declarations_file)
        logging.getLogger(__name__).info(
            "Loaded %d tool declarations from %s", loaded, cfg.tools.declarations_file
        )
    return registry


async def _setup_stack(cfg: ChatloomConfig):
    """Wire up the full stack for chat."""
    from chatloom.cli.chat import ChatHandler
    from chatloom.files.uploader import AttachmentUploader
    from chatloom.llm.providers.gemini import GeminiClient
    from chatloom.orchestrator.core import TurnOrchestrator
    from chatloom.tools.invoker import ToolInvoker

    api_key = cfg.api_key()
    if not api_key:
        console.print(
            f"[red]Error:[/red] no API key found in ${cfg.provider.api_key_env}."
        )
        raise typer.Exit(1)

    client = GeminiClient(
        api_key=api_key,
        api_base=cfg.provider.api_base,
        api_version=cfg.provider.api_version,
        timeout=float(cfg.provider.timeout_seconds),
        max_retries=cfg.provider.max_retries,
    )

    registry = _build_registry(cfg)
    uploader = AttachmentUploader(client, cfg.retry_policy())
    invoker = ToolInvoker(
        registry,
        uploader,
        timeout=float(cfg.tools.timeout_seconds),
    )
    orchestrator = TurnOrchestrator(
        provider=client,
        uploader=uploader,
        invoker=invoker,
        registry=registry,
        settings=cfg.generation_settings(),
        max_tool_rounds=cfg.session.max_tool_rounds,
        disabled_tools=cfg.tools.disabled,
    )
    handler = ChatHandler(orchestrator, cfg, console=console)
    return handler, client, invoker


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    incognito: bool = typer.Option(False, "--incognito", help="Do not read or change memories"),
    web_search: bool = typer.Option(False, "--web-search", help="Use built-in web search instead of tools"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Start an interactive chat session."""
    _setup_logging(verbose)
    overrides = {
        "session.incognito": True if incognito else None,
        "tools.web_search": True if web_search else None,
    }
    cfg = load_config(_get_config_path(), profile=profile, cli_overrides=overrides)

    async def _run():
        handler, client, invoker = await _setup_stack(cfg)
        try:
            await handler.run_loop()
        finally:
            await invoker.aclose()
            await client.aclose()

    asyncio.run(_run())


@tools_app.command("list")
def tools_list(
    incognito: bool = typer.Option(False, "--incognito", help="Show the incognito tool set"),
):
    """List declared tools."""
    from chatloom.cli.output import OutputFormatter

    cfg = load_config(_get_config_path())
    registry = _build_registry(cfg)
    tools = list(registry.active(incognito=incognito, disabled=cfg.tools.disabled))
    formatter = OutputFormatter(console)
    formatter.format_tool_list(tools)


@tools_app.command("info")
def tools_info(tool_name: str = typer.Argument(..., help="Tool name")):
    """Show tool details and schema."""
    from chatloom.cli.output import OutputFormatter

    cfg = load_config(_get_config_path())
    registry = _build_registry(cfg)

    tool = registry.get(tool_name)
    if not tool:
        console.print(f"[red]Tool not found:[/red] {tool_name}")
        raise typer.Exit(1)

    formatter = OutputFormatter(console)
    formatter.format_tool_info(tool)


@config_app.command("show")
def config_show(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Show effective config."""
    from chatloom.cli.output import OutputFormatter

    cfg = load_config(_get_config_path(), profile=profile)
    formatter = OutputFormatter(console)
    formatter.format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate():
    """Validate config and show any issues."""
    config_path = _get_config_path()
    try:
        cfg = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    problems = validate_config(cfg)
    if problems:
        console.print("[red]Config validation failed:[/red]")
        for problem in problems:
            console.print(f"  - {problem}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Model: {cfg.provider.model}")
    key_state = "set" if cfg.api_key() else "[yellow]missing[/yellow]"
    console.print(f"  API key (${cfg.provider.api_key_env}): {key_state}")
    console.print(f"  Max tool rounds: {cfg.session.max_tool_rounds}")


@app.command()
def version():
    """Show version."""
    console.print(f"chatloom v{VERSION}")


def main():
    app()


if __name__ == "__main__":
    main()

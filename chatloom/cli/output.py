"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from chatloom.memory.book import AppliedMemoryAction, MemoryBook
from chatloom.tools.base import ToolDeclaration
from chatloom.types import Attachment, ProcessingStage, ProcessingStatus

STAGE_COLORS = {
    ProcessingStage.PENDING: "dim",
    ProcessingStage.IN_PROGRESS: "yellow",
    ProcessingStage.AWAITING_MODEL: "cyan",
    ProcessingStage.COMPLETED: "green",
    ProcessingStage.FAILED: "red",
}


def _target(tool: ToolDeclaration) -> str:
    if tool.is_native:
        return f"native:{tool.native}"
    return f"{tool.http_method.value} {tool.endpoint_url}"


class OutputFormatter:
    """Rich-based output formatting for the chatloom CLI."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def format_tool_list(self, tools: list[ToolDeclaration]) -> None:
        if not tools:
            self.console.print("[dim]No tools declared.[/dim]")
            return

        table = Table(title="Declared Tools", show_lines=True)
        table.add_column("Name", style="cyan", no_wrap=True)
        table.add_column("Source", no_wrap=True)
        table.add_column("Target")
        table.add_column("Description")

        for t in tools:
            source = Text("platform", style="green") if t.platform_provided else Text("user")
            table.add_row(t.name, source, _target(t), t.description)

        self.console.print(table)

    def format_tool_info(self, tool: ToolDeclaration) -> None:
        self.console.print(Panel(
            f"[bold]{tool.name}[/bold]\n\n"
            f"[dim]Target:[/dim] {_target(tool)}\n"
            f"[dim]Platform provided:[/dim] {tool.platform_provided}\n"
            f"[dim]Mutates memory:[/dim] {tool.mutates_memory}\n\n"
            f"{tool.description}",
            title=f"Tool: {tool.name}",
        ))
        schema_json = json.dumps(tool.parameters, indent=2)
        self.console.print(Syntax(schema_json, "json", theme="monokai"))

    def format_status(self, status: ProcessingStatus) -> None:
        color = STAGE_COLORS.get(status.stage, "white")
        label = status.kind.value.replace("_", " ")
        line = f"  [{color}]\\[{label}: {status.stage.value}][/{color}]"
        if status.subject_name:
            line += f" {status.subject_name}"
        if status.error_text:
            line += f" [red]{status.error_text}[/red]"
        elif status.detail_text:
            line += f" [dim]{status.detail_text}[/dim]"
        self.console.print(line, highlight=False)

    def format_attachments(self, attachments: list[Attachment]) -> None:
        for a in attachments:
            self.console.print(f"  [cyan]attachment[/cyan] {a.name} ({a.mime_type}, {a.size} bytes)")

    def format_memories(self, book: MemoryBook) -> None:
        if not len(book):
            self.console.print("[dim]No memories recorded.[/dim]")
            return

        table = Table(title="Memories")
        table.add_column("#", style="dim", no_wrap=True)
        table.add_column("Saved", no_wrap=True)
        table.add_column("Content")
        for i, m in enumerate(book, 1):
            table.add_row(str(i), m.timestamp.strftime("%Y-%m-%d %H:%M"), m.content)
        self.console.print(table)

    def format_memory_actions(self, actions: list[AppliedMemoryAction]) -> None:
        colors = {"created": "green", "updated": "yellow", "deleted_by_ai": "red"}
        for a in actions:
            color = colors.get(a.action, "white")
            if a.original_content and a.original_content != a.content:
                detail = f'"{a.original_content}" -> "{a.content}"'
            else:
                detail = f'"{a.content}"'
            self.console.print(f"  [{color}]memory {a.action}[/{color}] {detail}", highlight=False)

    def format_config(self, config: dict) -> None:
        config_json = json.dumps(config, indent=2, default=str)
        self.console.print(Syntax(config_json, "json", theme="monokai"))

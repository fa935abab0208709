"""Interactive chat session handler."""

from __future__ import annotations

import asyncio
import mimetypes
import signal
from pathlib import Path

from rich.console import Console

from chatloom.cli.output import OutputFormatter
from chatloom.config import ChatloomConfig
from chatloom.llm.types import ROLE_MODEL, ContextEntry
from chatloom.memory.book import MemoryBook
from chatloom.orchestrator.core import TurnInput, TurnOrchestrator
from chatloom.prompts.system import build_system_instruction
from chatloom.types import RawAttachment, TurnDisposition, TurnResult


class ChatHandler:
    """
    Manages the interactive chat loop.

    Keeps the conversation history, the memory book and pending attachments
    for the lifetime of the process; nothing is written to disk.
    """

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        config: ChatloomConfig,
        console: Console | None = None,
        memories: MemoryBook | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.config = config
        self.console = console or Console()
        self.formatter = OutputFormatter(self.console)
        self.memories = memories if memories is not None else MemoryBook()
        self.history: list[ContextEntry] = []
        self.pending: list[RawAttachment] = []
        self.incognito = config.session.incognito
        self.web_search = config.tools.web_search
        self._running = True

    def attach(self, path: str) -> RawAttachment:
        p = Path(path).expanduser()
        data = p.read_bytes()
        mime_type, _ = mimetypes.guess_type(p.name)
        raw = RawAttachment(name=p.name, mime_type=mime_type or "application/octet-stream", data=data)
        self.pending.append(raw)
        return raw

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

        if cmd == "/attach":
            if not arg:
                self.console.print("  Usage: /attach PATH")
                return True
            try:
                raw = self.attach(arg)
            except OSError as e:
                self.console.print(f"  [red]Error:[/red] {e}")
                return True
            self.console.print(f"  Attached [bold]{raw.name}[/bold] ({raw.mime_type}, {len(raw.data)} bytes)")
            return True

        if cmd == "/memories":
            self.formatter.format_memories(self.memories)
            return True

        if cmd == "/incognito":
            self.incognito = not self.incognito
            self.console.print(f"  Incognito: [bold]{'on' if self.incognito else 'off'}[/bold]")
            return True

        if cmd == "/websearch":
            self.web_search = not self.web_search
            self.console.print(f"  Web search: [bold]{'on' if self.web_search else 'off'}[/bold]")
            return True

        if cmd == "/tools":
            tools = list(
                self.orchestrator.registry.active(
                    incognito=self.incognito,
                    disabled=self.orchestrator.disabled_tools,
                )
            )
            self.formatter.format_tool_list(tools)
            return True

        if cmd == "/help":
            self.console.print(
                "  [bold]Commands:[/bold]\n"
                "  /attach PATH - Attach a file to the next message\n"
                "  /memories    - Show remembered facts\n"
                "  /incognito   - Toggle incognito mode\n"
                "  /websearch   - Toggle web search\n"
                "  /tools       - List active tools\n"
                "  /quit        - Exit the chat\n"
                "  /help        - Show this help\n"
                "  Ctrl-C during a reply cancels it.\n"
            )
            return True

        return False

    def _turn_input(self, user_input: str) -> TurnInput:
        tools = self.orchestrator.registry.active(
            incognito=self.incognito, disabled=self.orchestrator.disabled_tools
        )
        persona = self.config.persona
        instruction = build_system_instruction(
            personality_prompt=persona.personality_prompt or None,
            assistant_name=persona.assistant_name,
            message_count=len(self.history),
            tools=None if self.web_search else tools,
            incognito=self.incognito,
        )
        turn = TurnInput(
            text=user_input,
            attachments=self.pending,
            history=self.history,
            memories=[] if self.incognito else self.memories.contents(),
            system_instruction=instruction,
            web_search=self.web_search,
            incognito=self.incognito,
        )
        self.pending = []
        return turn

    async def handle_input(self, user_input: str) -> TurnResult:
        """Run one turn through the orchestrator and stream the response."""
        stream = self.orchestrator.run(self._turn_input(user_input))

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, stream.cancel)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            handler_installed = False

        try:
            async for event in stream:
                if event.text_delta:
                    self.console.print(event.text_delta, end="", markup=False, highlight=False)
                if event.processing_status:
                    self.console.print()
                    self.formatter.format_status(event.processing_status)
                if event.promoted_attachments:
                    self.formatter.format_attachments(event.promoted_attachments)
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

        result = await stream.result()
        self.console.print()
        self._record(result)
        return result

    def _record(self, result: TurnResult) -> None:
        if result.disposition is TurnDisposition.ABORTED:
            self.console.print("[dim](response stopped)[/dim]")
        elif result.disposition is TurnDisposition.ERRORED:
            self.console.print(f"[red]Error:[/red] {result.error}")

        self.history.extend(result.context_entries)
        text = result.final_text if result.disposition is not TurnDisposition.ERRORED else ""
        if text:
            self.history.append(ContextEntry(role=ROLE_MODEL, text=text))

        if result.memory_operations and not self.incognito:
            applied = self.memories.apply(result.memory_operations)
            self.formatter.format_memory_actions(applied)

    async def run_loop(self) -> None:
        """Main interactive loop."""
        self.console.print(
            f"[bold]{self.config.persona.assistant_name}[/bold] - chatloom assistant\n"
            "[dim]Type /help for commands, /quit to exit.[/dim]\n"
        )

        while self._running:
            try:
                user_input = await asyncio.get_running_loop().run_in_executor(
                    None, lambda: input("you> ").strip()
                )
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/dim]")
                break

            if not user_input and not self.pending:
                continue

            if user_input.startswith("/"):
                handled = await self.handle_command(user_input)
                if handled:
                    continue

            self.console.print("[dim]assistant>[/dim] ", end="")
            await self.handle_input(user_input)

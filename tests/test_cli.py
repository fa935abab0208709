"""Tests for the interactive chat handler and CLI commands."""

from __future__ import annotations

import io

import httpx
import pytest
from rich.console import Console
from typer.testing import CliRunner

from chatloom.cli.app import app
from chatloom.cli.chat import ChatHandler
from chatloom.config import ChatloomConfig
from chatloom.files.uploader import AttachmentUploader, RetryPolicy
from chatloom.llm.types import ROLE_MODEL, ROLE_USER
from chatloom.memory.book import MemoryBook
from chatloom.orchestrator.core import TurnOrchestrator
from chatloom.tools.invoker import ToolInvoker
from chatloom.tools.registry import ToolRegistry
from tests.mock_providers import MockFileStore, make_text_provider
from tests.mock_tools import CREATE_MEMORY_TOOL, WEATHER_TOOL

runner = CliRunner()


def _handler(provider, memories=None):
    registry = ToolRegistry()
    registry.register(WEATHER_TOOL)
    registry.register(CREATE_MEMORY_TOOL)
    uploader = AttachmentUploader(
        MockFileStore(active_on_upload=True), RetryPolicy(max_attempts=1, delay_seconds=0)
    )
    invoker = ToolInvoker(
        registry,
        uploader,
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})),
    )
    orchestrator = TurnOrchestrator(provider, uploader, invoker, registry)
    console = Console(file=io.StringIO(), width=120)
    return ChatHandler(orchestrator, ChatloomConfig(), console=console, memories=memories)


def _output(handler) -> str:
    return handler.console.file.getvalue()


class TestChatHandler:

    async def test_turn_is_recorded_in_history(self):
        handler = _handler(make_text_provider("Hello!"))

        result = await handler.handle_input("hi")

        assert result.final_text == "Hello!"
        assert [e.role for e in handler.history] == [ROLE_USER, ROLE_MODEL]
        assert handler.history[1].text == "Hello!"
        assert "Hello!" in _output(handler)

    async def test_memory_directives_update_the_book(self):
        handler = _handler(make_text_provider('Hi Ana. [MEMORIZE: "name is Ana"]'))

        await handler.handle_input("I'm Ana")

        assert handler.memories.contents() == ["name is Ana"]
        assert handler.history[-1].text == "Hi Ana."
        assert "memory created" in _output(handler)

    async def test_incognito_sends_no_memories(self):
        provider = make_text_provider('Ok. [MEMORIZE: "secret"]')
        handler = _handler(provider, memories=MemoryBook(["likes tea"]))
        await handler.handle_command("/incognito")

        await handler.handle_input("hello")

        first = provider.requests[0].contents[0].text
        assert "likes tea" not in first
        assert handler.memories.contents() == ["likes tea"]
        assert "create_memory" not in [d["name"] for d in provider.requests[0].tools]
        assert "## Memory Management" not in provider.requests[0].system_instruction

    async def test_attach_command_queues_file(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("remember the milk", encoding="utf-8")
        provider = make_text_provider("Read it.")
        handler = _handler(provider)

        assert await handler.handle_command(f"/attach {path}")
        assert handler.pending[0].mime_type == "text/plain"

        await handler.handle_input("summarize")

        assert handler.pending == []
        parts = provider.requests[0].contents[-1].parts
        assert parts[1].file.mime_type == "text/plain"

    async def test_attach_missing_file(self, tmp_path):
        handler = _handler(make_text_provider("x"))
        assert await handler.handle_command(f"/attach {tmp_path / 'absent.txt'}")
        assert handler.pending == []
        assert "Error" in _output(handler)

    async def test_toggles_and_unknown_commands(self):
        handler = _handler(make_text_provider("x"))
        assert await handler.handle_command("/websearch")
        assert handler.web_search is True
        assert await handler.handle_command("/tools")
        assert not await handler.handle_command("/nonsense")

    async def test_web_search_turn(self):
        provider = make_text_provider("Found it.")
        handler = _handler(provider)
        await handler.handle_command("/websearch")
        await handler.handle_input("latest news")
        assert provider.requests[0].web_search is True
        assert "## Tool Use" not in provider.requests[0].system_instruction


class TestCliCommands:

    @pytest.fixture(autouse=True)
    def isolated(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "chatloom v0.1.0" in result.output

    def test_tools_info(self):
        result = runner.invoke(app, ["tools", "info", "getPublicIPAddress"])
        assert result.exit_code == 0
        assert "api.ipify.org" in result.output

    def test_tools_info_unknown(self):
        result = runner.invoke(app, ["tools", "info", "nope"])
        assert result.exit_code == 1

    def test_config_validate_defaults(self):
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0
        assert "Config is valid." in result.output

    def test_config_validate_reports_problems(self, tmp_path):
        (tmp_path / "chatloom.yaml").write_text(
            "provider:\n  temperature: 9\n", encoding="utf-8"
        )
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 1
        assert "temperature" in result.output

    def test_chat_requires_api_key(self):
        result = runner.invoke(app, ["chat"])
        assert result.exit_code == 1
        assert "GEMINI_API_KEY" in result.output

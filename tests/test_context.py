"""Tests for context building and turn events."""

import pytest

from chatloom.llm.types import ROLE_MODEL, ROLE_USER, ContextEntry, Part
from chatloom.session.context import (
    MEMORY_ACK,
    MEMORY_BLOCK_HEADER,
    NO_MEMORIES_MARKER,
    build_context,
    memory_block,
)
from chatloom.session.events import finished_event, snapshot_event
from chatloom.types import FileReference, TurnDisposition, TurnResult


class TestBuildContext:

    def test_empty_history_without_memories(self):
        entries = build_context([], [])
        assert len(entries) == 2
        assert entries[0].role == ROLE_USER
        assert entries[0].text == NO_MEMORIES_MARKER
        assert entries[1].role == ROLE_MODEL
        assert entries[1].text == MEMORY_ACK

    def test_memories_are_listed_in_order(self):
        block = memory_block(["name is Ana", "likes tea"])
        lines = block.splitlines()
        assert lines[0] == "---"
        assert lines[1] == MEMORY_BLOCK_HEADER
        assert lines[2:4] == ['- "name is Ana"', '- "likes tea"']
        assert lines[-1] == "---"

    def test_history_follows_the_preamble_in_order(self):
        history = [
            ContextEntry(role=ROLE_USER, text="hi"),
            ContextEntry(role=ROLE_MODEL, text="hello"),
            ContextEntry(
                role=ROLE_USER,
                parts=[Part.from_file(FileReference(uri="u", mime_type="image/png"))],
            ),
        ]
        entries = build_context(history, ["m"])
        assert [e.role for e in entries[2:]] == [ROLE_USER, ROLE_MODEL, ROLE_USER]
        assert entries[2].text == "hi"
        assert entries[4].parts[0].file.uri == "u"

    def test_history_entries_are_copies(self):
        history = [ContextEntry(role=ROLE_USER, parts=[Part.from_text("hi")])]
        entries = build_context(history, [])
        entries[2].parts.append(Part.from_text("extra"))
        assert len(history[0].parts) == 1

    def test_entry_rejects_text_and_parts(self):
        with pytest.raises(ValueError):
            ContextEntry(role=ROLE_USER, text="x", parts=[])


class TestTurnEvents:

    def test_finished_event_carries_result(self):
        result = TurnResult(final_text="done", disposition=TurnDisposition.ABORTED)
        event = finished_event(result)
        assert event.is_finished
        assert event.aborted
        assert event.final_text == "done"
        assert event.text_delta is None

    def test_snapshot_is_detached(self):
        entries = [ContextEntry(role=ROLE_USER, text="hi")]
        event = snapshot_event(entries)
        entries[0].text = "changed"
        assert event.context_snapshot[0].text == "hi"

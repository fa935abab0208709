"""Tests for memory directive parsing."""

from chatloom.memory.directives import MemoryDirectiveParser, parse_directives
from chatloom.types import MemoryAction, MemoryOperation


class TestParseDirectives:

    def test_text_without_directives_is_unchanged(self):
        text = "  Hello there!  \n"
        parsed = parse_directives(text)
        assert parsed.display_text == text
        assert parsed.operations == []

    def test_memorize_quoted(self):
        parsed = parse_directives('Nice to meet you, Ana! [MEMORIZE: "User\'s name is Ana"]')
        assert parsed.display_text == "Nice to meet you, Ana!"
        assert parsed.operations == [
            MemoryOperation(action=MemoryAction.CREATE, content="User's name is Ana")
        ]

    def test_memorize_unquoted(self):
        parsed = parse_directives("Noted. [MEMORIZE: likes green tea]")
        assert parsed.display_text == "Noted."
        assert parsed.operations[0].content == "likes green tea"

    def test_update_memory(self):
        parsed = parse_directives(
            'Got it.\n[UPDATE_MEMORY original: "lives in Porto" new: "lives in Lisbon"]'
        )
        assert parsed.display_text == "Got it."
        op = parsed.operations[0]
        assert op.action is MemoryAction.UPDATE
        assert op.target_content == "lives in Porto"
        assert op.content == "lives in Lisbon"

    def test_delete_memory_quoted_and_unquoted(self):
        quoted = parse_directives('Done. [DELETE_MEMORY: "has a cat"]')
        unquoted = parse_directives("Done. [DELETE_MEMORY: has a cat]")
        for parsed in (quoted, unquoted):
            assert parsed.display_text == "Done."
            assert parsed.operations == [
                MemoryOperation(action=MemoryAction.DELETE_SUGGESTED, target_content="has a cat")
            ]

    def test_multiple_trailing_directives_keep_order(self):
        parsed = parse_directives(
            'Sure.\n[MEMORIZE: "a"]\n[DELETE_MEMORY: "b"]\n'
            '[UPDATE_MEMORY original: "c" new: "d"]\n'
        )
        assert parsed.display_text == "Sure."
        assert [op.action for op in parsed.operations] == [
            MemoryAction.CREATE,
            MemoryAction.DELETE_SUGGESTED,
            MemoryAction.UPDATE,
        ]

    def test_directive_followed_by_text_is_left_alone(self):
        text = '[MEMORIZE: "a"] and then more text'
        parsed = parse_directives(text)
        assert parsed.display_text == text
        assert parsed.operations == []

    def test_malformed_directive_stays_in_text(self):
        text = "Answer. [UPDATE_MEMORY original: old new: new]"
        parsed = parse_directives(text)
        assert parsed.display_text == text
        assert parsed.operations == []

    def test_malformed_stops_parsing_before_it(self):
        parsed = parse_directives('Hi [MEMORIZE: "a"] [UPDATE_MEMORY new: "x"] [MEMORIZE: "b"]')
        assert parsed.display_text == 'Hi [MEMORIZE: "a"] [UPDATE_MEMORY new: "x"]'
        assert [op.content for op in parsed.operations] == ["b"]

    def test_empty_value_is_not_a_directive(self):
        text = 'Ok [MEMORIZE: ""]'
        assert parse_directives(text).display_text == text

    def test_only_directives_gives_empty_display(self):
        parsed = parse_directives('[MEMORIZE: "x"]')
        assert parsed.display_text == ""
        assert len(parsed.operations) == 1

    def test_idempotent_on_display_text(self):
        first = parse_directives('Hello [MEMORIZE: "x"]')
        second = parse_directives(first.display_text)
        assert second.display_text == first.display_text
        assert second.operations == []

    def test_parser_wrapper(self):
        parsed = MemoryDirectiveParser().parse('Ok [MEMORIZE: "x"]')
        assert parsed.operations[0].content == "x"

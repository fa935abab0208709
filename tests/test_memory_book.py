"""Tests for MemoryBook."""

from chatloom.memory.book import (
    APPLIED_CREATED,
    APPLIED_DELETED,
    APPLIED_UPDATED,
    MemoryBook,
)
from chatloom.types import MemoryAction, MemoryOperation


def _create(content):
    return MemoryOperation(action=MemoryAction.CREATE, content=content)


class TestMemoryBook:

    def test_initial_contents_keep_order(self):
        book = MemoryBook(["newest", "older"])
        assert book.contents() == ["newest", "older"]

    def test_add_puts_newest_first_and_dedupes(self):
        book = MemoryBook(["likes tea"])
        book.add("has a cat")
        book.add("Likes Tea")
        assert book.contents() == ["Likes Tea", "has a cat"]

    def test_add_ignores_blank(self):
        book = MemoryBook()
        assert book.add("   ") is None
        assert len(book) == 0

    def test_find_is_case_insensitive(self):
        book = MemoryBook(["Lives in Porto"])
        assert book.find("lives in porto").content == "Lives in Porto"
        assert book.find("nope") is None

    def test_apply_create(self):
        book = MemoryBook()
        applied = book.apply([_create("name is Ana")])
        assert book.contents() == ["name is Ana"]
        assert applied[0].action == APPLIED_CREATED

    def test_apply_update_existing(self):
        book = MemoryBook(["lives in Porto"])
        applied = book.apply([
            MemoryOperation(
                action=MemoryAction.UPDATE,
                content="lives in Lisbon",
                target_content="lives in porto",
            )
        ])
        assert book.contents() == ["lives in Lisbon"]
        assert applied[0].action == APPLIED_UPDATED
        assert applied[0].original_content == "lives in Porto"

    def test_apply_update_unknown_target_creates(self):
        book = MemoryBook(["a"])
        applied = book.apply([
            MemoryOperation(action=MemoryAction.UPDATE, content="b", target_content="zzz")
        ])
        assert book.contents() == ["b", "a"]
        assert applied[0].action == APPLIED_CREATED

    def test_apply_delete(self):
        book = MemoryBook(["a", "b"])
        applied = book.apply([
            MemoryOperation(action=MemoryAction.DELETE_SUGGESTED, target_content="A")
        ])
        assert book.contents() == ["b"]
        assert applied[0].action == APPLIED_DELETED

    def test_apply_delete_unknown_is_ignored(self):
        book = MemoryBook(["a"])
        applied = book.apply([
            MemoryOperation(action=MemoryAction.DELETE_SUGGESTED, target_content="zzz")
        ])
        assert applied == []
        assert book.contents() == ["a"]

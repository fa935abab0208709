"""
Memory directive parsing.

The model may end a reply with directives asking for changes to the user's
memories::

    [MEMORIZE: "likes tea"]            or  [MEMORIZE: likes tea]
    [UPDATE_MEMORY original: "old" new: "new"]
    [DELETE_MEMORY: "old"]             or  [DELETE_MEMORY: old]

Only the trailing run of directives is recognized; a directive followed by
ordinary text is left as it is.  Anything malformed stays in the display
text and parsing stops there.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from chatloom.types import MemoryAction, MemoryOperation

_VALUE = r'(?:"(?P<{0}q>[^"]*)"|(?P<{0}u>[^\[\]"]*))'

_MEMORIZE_RE = re.compile(r"\[MEMORIZE:\s*" + _VALUE.format("c") + r"\s*\]\s*\Z")
_DELETE_RE = re.compile(r"\[DELETE_MEMORY:\s*" + _VALUE.format("c") + r"\s*\]\s*\Z")
_UPDATE_RE = re.compile(
    r'\[UPDATE_MEMORY\s+original:\s*"(?P<old>[^"]*)"\s*new:\s*"(?P<new>[^"]*)"\s*\]\s*\Z'
)


@dataclass
class ParsedText:
    display_text: str
    operations: list[MemoryOperation] = field(default_factory=list)


def _value(match: re.Match) -> str:
    raw = match.group("cq")
    if raw is None:
        raw = match.group("cu") or ""
    return raw.strip()


def _match_last(text: str) -> tuple[int, MemoryOperation] | None:
    """Match a single directive that ends *text*; return its start and operation."""
    m = _MEMORIZE_RE.search(text)
    if m and _value(m):
        return m.start(), MemoryOperation(action=MemoryAction.CREATE, content=_value(m))

    m = _DELETE_RE.search(text)
    if m and _value(m):
        return m.start(), MemoryOperation(
            action=MemoryAction.DELETE_SUGGESTED, target_content=_value(m)
        )

    m = _UPDATE_RE.search(text)
    if m and m.group("old").strip() and m.group("new").strip():
        return m.start(), MemoryOperation(
            action=MemoryAction.UPDATE,
            content=m.group("new").strip(),
            target_content=m.group("old").strip(),
        )
    return None


def parse_directives(text: str) -> ParsedText:
    """
    Split *text* into the user-visible part and memory operations.

    Text without trailing directives is returned unchanged.  Operations are
    reported in the order they appear.
    """
    remaining = text
    found: list[MemoryOperation] = []
    while True:
        hit = _match_last(remaining)
        if hit is None:
            break
        start, op = hit
        found.append(op)
        remaining = remaining[:start]

    if not found:
        return ParsedText(display_text=text)
    found.reverse()
    return ParsedText(display_text=remaining.strip(), operations=found)


class MemoryDirectiveParser:
    """Stateless wrapper kept for callers that inject a parser."""

    def parse(self, text: str) -> ParsedText:
        return parse_directives(text)

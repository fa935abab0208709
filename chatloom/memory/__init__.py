"""User memories: directive parsing and application."""

from chatloom.memory.book import AppliedMemoryAction, Memory, MemoryBook
from chatloom.memory.directives import MemoryDirectiveParser, ParsedText, parse_directives

__all__ = [
    "AppliedMemoryAction",
    "Memory",
    "MemoryBook",
    "MemoryDirectiveParser",
    "ParsedText",
    "parse_directives",
]

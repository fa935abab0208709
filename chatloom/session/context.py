"""
Conversation context builder.

:func:`build_context` turns prior turns and the current memory snippets into
the ordered entries sent to the model:

1.  A synthetic user entry declaring the memories as prior knowledge (or
    stating that none are recorded).
2.  A synthetic model acknowledgment.
3.  The real history, in order, each entry cloned so callers can append to
    the result without touching their own history.

The function is pure: no I/O, no shared state.
"""

from __future__ import annotations

from typing import Iterable

from chatloom.llm.types import ROLE_MODEL, ROLE_USER, ContextEntry

MEMORY_BLOCK_HEADER = "PRIOR KNOWLEDGE ABOUT THE USER (CURRENT AND EXACT MEMORIES):"
NO_MEMORIES_MARKER = "(No global memories recorded at the moment.)"
MEMORY_ACK = "Ok, I understand the prior knowledge."


def memory_block(memories: Iterable[str]) -> str:
    lines = [f'- "{m}"' for m in memories]
    if not lines:
        return NO_MEMORIES_MARKER
    return "\n".join(["---", MEMORY_BLOCK_HEADER, *lines, "---"])


def build_context(
    prior_turns: Iterable[ContextEntry],
    memories: Iterable[str],
) -> list[ContextEntry]:
    entries = [
        ContextEntry(role=ROLE_USER, text=memory_block(memories)),
        ContextEntry(role=ROLE_MODEL, text=MEMORY_ACK),
    ]
    entries.extend(entry.clone() for entry in prior_turns)
    return entries

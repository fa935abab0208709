"""
Turn event model.

A running turn reports progress as an ordered sequence of
:class:`TurnEvent` records.  Every record carries at most one kind of
payload, except the terminal one (``is_finished=True``), which carries the
final text, the memory operations and the disposition.  Exactly one terminal
record ends each stream.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from chatloom.llm.types import ContextEntry
from chatloom.types import (
    Attachment,
    MemoryOperation,
    ProcessingStatus,
    TurnDisposition,
    TurnResult,
)


@dataclass
class TurnEvent:
    """
    A single record in a turn's event stream.

    Attributes
    ----------
    text_delta:
        Newly streamed assistant text.
    processing_status:
        Progress of an upload, tool call or downstream file.
    context_snapshot:
        Entries appended to the context during this turn so far, for callers
        that persist structured history.
    promoted_attachments:
        Files produced by a tool, ready for display.
    error:
        Classified, user-facing error message.
    is_finished:
        Set on the terminal record only.
    """

    text_delta: str | None = None
    processing_status: ProcessingStatus | None = None
    context_snapshot: list[ContextEntry] | None = None
    promoted_attachments: list[Attachment] | None = None
    error: str | None = None
    is_finished: bool = False
    final_text: str | None = None
    memory_operations: list[MemoryOperation] = field(default_factory=list)
    disposition: TurnDisposition | None = None

    @property
    def aborted(self) -> bool:
        return self.disposition is TurnDisposition.ABORTED


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def delta_event(text: str) -> TurnEvent:
    return TurnEvent(text_delta=text)


def status_event(status: ProcessingStatus) -> TurnEvent:
    return TurnEvent(processing_status=status)


def snapshot_event(entries: list[ContextEntry]) -> TurnEvent:
    return TurnEvent(context_snapshot=[e.clone() for e in entries])


def attachments_event(attachments: list[Attachment]) -> TurnEvent:
    return TurnEvent(promoted_attachments=list(attachments))


def finished_event(result: TurnResult) -> TurnEvent:
    """Create the terminal record for *result*."""
    return TurnEvent(
        error=result.error,
        is_finished=True,
        final_text=result.final_text,
        memory_operations=list(result.memory_operations),
        disposition=result.disposition,
    )

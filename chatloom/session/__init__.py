"""Turn-scoped session pieces: context building and the event stream."""

from chatloom.session.context import build_context, memory_block
from chatloom.session.events import (
    TurnEvent,
    attachments_event,
    delta_event,
    finished_event,
    snapshot_event,
    status_event,
)

__all__ = [
    "TurnEvent",
    "build_context",
    "memory_block",
    # Factory functions
    "attachments_event",
    "delta_event",
    "finished_event",
    "snapshot_event",
    "status_event",
]

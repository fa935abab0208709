"""In-process memory list and application of parsed memory operations."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from chatloom.types import MemoryAction, MemoryOperation

logger = logging.getLogger(__name__)

APPLIED_CREATED = "created"
APPLIED_UPDATED = "updated"
APPLIED_DELETED = "deleted_by_ai"


@dataclass
class Memory:
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AppliedMemoryAction:
    action: str
    memory_id: str
    content: str
    original_content: str | None = None


class MemoryBook:
    """
    The user's memories, newest first.

    Content matching is case-insensitive throughout; adding a memory that
    already exists replaces the older copy.
    """

    def __init__(self, contents: Iterable[str] = ()):
        self._memories: list[Memory] = []
        for content in reversed(list(contents)):
            self.add(content)

    def __len__(self) -> int:
        return len(self._memories)

    def __iter__(self):
        return iter(list(self._memories))

    def contents(self) -> list[str]:
        return [m.content for m in self._memories]

    def find(self, content: str) -> Memory | None:
        key = content.strip().lower()
        for m in self._memories:
            if m.content.lower() == key:
                return m
        return None

    def add(self, content: str) -> Memory | None:
        text = content.strip()
        if not text:
            return None
        memory = Memory(content=text)
        self._memories = [memory] + [
            m for m in self._memories if m.content.lower() != text.lower()
        ]
        return memory

    def update(self, memory_id: str, content: str) -> bool:
        for m in self._memories:
            if m.id == memory_id:
                m.content = content.strip()
                return True
        return False

    def delete(self, memory_id: str) -> bool:
        before = len(self._memories)
        self._memories = [m for m in self._memories if m.id != memory_id]
        return len(self._memories) < before

    def apply(self, operations: Iterable[MemoryOperation]) -> list[AppliedMemoryAction]:
        """
        Apply parsed operations and report what actually changed.

        An update whose target is unknown becomes a create.  A suggested
        delete whose target is unknown is ignored.
        """
        applied: list[AppliedMemoryAction] = []
        for op in operations:
            if op.action is MemoryAction.CREATE and op.content:
                created = self.add(op.content)
                if created:
                    applied.append(AppliedMemoryAction(APPLIED_CREATED, created.id, created.content))

            elif op.action is MemoryAction.UPDATE and op.content and op.target_content:
                target = self.find(op.target_content)
                if target:
                    original = target.content
                    self.update(target.id, op.content)
                    applied.append(
                        AppliedMemoryAction(APPLIED_UPDATED, target.id, target.content, original)
                    )
                else:
                    created = self.add(op.content)
                    if created:
                        applied.append(
                            AppliedMemoryAction(APPLIED_CREATED, created.id, created.content)
                        )

            elif op.action is MemoryAction.DELETE_SUGGESTED and op.target_content:
                target = self.find(op.target_content)
                if target:
                    self.delete(target.id)
                    applied.append(
                        AppliedMemoryAction(APPLIED_DELETED, target.id, target.content, target.content)
                    )
                else:
                    logger.info("No memory matches delete suggestion %r", op.target_content)
        return applied

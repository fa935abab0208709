from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

MEMORY_TOOL_NAMES = frozenset({"create_memory", "update_memory", "delete_memory"})


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"

    @property
    def sends_json_body(self) -> bool:
        return self in (HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH)


def normalize_schema(schema: dict | None) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    s.setdefault("properties", {})
    return s


@dataclass(frozen=True)
class ToolDeclaration:
    """
    A callable capability advertised to the model.

    The target is either an HTTP endpoint (``endpoint_url`` + ``http_method``)
    or an in-process routine identified by ``native``.
    """

    name: str
    description: str
    parameters: dict = field(default_factory=dict)
    endpoint_url: str | None = None
    http_method: HttpMethod = HttpMethod.GET
    native: str | None = None
    platform_provided: bool = False
    memory_mutating: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("ToolDeclaration requires a name")
        if (self.endpoint_url is None) == (self.native is None):
            raise ValueError(
                f"Tool {self.name!r} needs exactly one of endpoint_url or native"
            )

    @property
    def is_native(self) -> bool:
        return self.native is not None

    @property
    def mutates_memory(self) -> bool:
        return self.memory_mutating or self.name in MEMORY_TOOL_NAMES

    def to_function_declaration(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": normalize_schema(self.parameters),
        }


class NativeRoutine(ABC):
    """An in-process implementation behind a ``native`` declaration."""

    @property
    @abstractmethod
    def identifier(self) -> str: ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Return a JSON-compatible dict/list or a plain string."""
        ...

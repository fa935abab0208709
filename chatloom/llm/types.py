"""Core types for the LLM subsystem."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from chatloom.types import FileReference

ROLE_USER = "user"
ROLE_MODEL = "model"
ROLE_FUNCTION = "function"


@dataclass
class ToolCall:
    """A function call requested by the model, with parsed arguments."""

    name: str
    arguments: dict[str, Any]
    id: str | None = None


@dataclass
class Part:
    """
    One fragment of a context entry.

    Exactly one of the payload fields is set: ``text``, ``file``,
    ``function_call`` or ``function_response``.
    """

    text: str | None = None
    file: FileReference | None = None
    function_call: ToolCall | None = None
    function_response: dict[str, Any] | None = None

    @classmethod
    def from_text(cls, text: str) -> Part:
        return cls(text=text)

    @classmethod
    def from_file(cls, reference: FileReference) -> Part:
        return cls(file=reference)

    @classmethod
    def from_function_call(cls, call: ToolCall) -> Part:
        return cls(function_call=call)

    @classmethod
    def from_function_response(cls, name: str, response: Any) -> Part:
        return cls(function_response={"name": name, "response": response})


@dataclass
class ContextEntry:
    """
    A single entry in the outgoing context.

    Historical entries carry either free ``text`` or pre-structured ``parts``
    (used once an entry held attachment references or a tool exchange),
    never both.
    """

    role: str  # "user", "model", "function"
    text: str | None = None
    parts: list[Part] | None = None

    def __post_init__(self) -> None:
        if self.text is not None and self.parts is not None:
            raise ValueError("ContextEntry takes either text or parts, not both")

    def as_parts(self) -> list[Part]:
        if self.parts is not None:
            return list(self.parts)
        return [Part.from_text(self.text or "")]

    def clone(self) -> ContextEntry:
        return copy.deepcopy(self)


@dataclass
class StreamChunk:
    """
    A single chunk yielded while streaming a completion.

    *delta* carries new text content.
    *tool_calls* carries function calls the provider emitted in this chunk.
    *done* is ``True`` on the final chunk.
    """

    delta: str = ""
    tool_calls: list[ToolCall] | None = None
    done: bool = False
    finish_reason: str | None = None


@dataclass
class SafetySetting:
    category: str
    threshold: str


HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


@dataclass
class GenerationSettings:
    model: str = "gemini-2.0-flash"
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 64
    max_output_tokens: int = 8192
    thinking_budget: int | None = None
    safety_settings: list[SafetySetting] = field(default_factory=list)


@dataclass
class CompletionRequest:
    """
    Everything sent on one streaming completion call.

    ``tools`` holds function declarations (wire-ready dicts); ``web_search``
    enables the provider's built-in search instead.  The two are mutually
    exclusive: when ``web_search`` is set, ``tools`` is ignored.
    """

    settings: GenerationSettings
    contents: list[ContextEntry]
    system_instruction: str | None = None
    tools: list[dict] | None = None
    web_search: bool = False

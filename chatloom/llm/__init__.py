"""LLM subsystem -- context types, providers and the Gemini wire client."""

from chatloom.llm.types import (
    CompletionRequest,
    ContextEntry,
    GenerationSettings,
    Part,
    SafetySetting,
    StreamChunk,
    ToolCall,
)
from chatloom.llm.providers.base import FileStore, Provider, RemoteFile
from chatloom.llm.providers.gemini import GeminiClient

__all__ = [
    "CompletionRequest",
    "ContextEntry",
    "FileStore",
    "GeminiClient",
    "GenerationSettings",
    "Part",
    "Provider",
    "RemoteFile",
    "SafetySetting",
    "StreamChunk",
    "ToolCall",
]

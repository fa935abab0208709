"""Abstract base classes for model providers and their file stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator

from chatloom.llm.types import CompletionRequest, StreamChunk

FILE_STATE_ACTIVE = "ACTIVE"
FILE_STATE_PROCESSING = "PROCESSING"
FILE_STATE_FAILED = "FAILED"


@dataclass
class RemoteFile:
    """Metadata returned by the provider's file store."""

    resource_id: str
    state: str
    uri: str = ""
    mime_type: str = ""
    display_name: str = ""


class Provider(ABC):
    """
    A provider encapsulates access to a single model endpoint.

    Implementations must support streaming completions (``stream``).
    """

    @abstractmethod
    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        """
        Start a streaming completion.

        Yields ``StreamChunk`` objects.  The last chunk has ``done=True``.
        Raises ``ProviderError`` subclasses for provider-level failures.
        """
        ...
        # Make the method an async generator so sub-classes can ``yield``.
        if False:  # pragma: no cover
            yield StreamChunk()  # type: ignore[misc]

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g. ``"gemini"``)."""
        ...


class FileStore(ABC):
    """Remote store where attachments are uploaded before use in context."""

    @abstractmethod
    async def upload(
        self,
        data: bytes,
        mime_type: str,
        display_name: str,
        resource_name: str,
    ) -> RemoteFile:
        """Upload *data* and return the created file's metadata."""
        ...

    @abstractmethod
    async def get_status(self, resource_id: str) -> RemoteFile:
        """Fetch the current state of a previously uploaded file."""
        ...

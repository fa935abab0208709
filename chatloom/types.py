"""Shared data model for a conversation turn."""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chatloom.llm.types import ContextEntry


class AttachmentState(str, Enum):
    RAW = "raw"
    UPLOADING = "uploading"
    AWAITING_ACTIVATION = "awaiting_activation"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class RawAttachment:
    """A binary the user attached to a turn, not yet sent anywhere."""

    name: str
    mime_type: str
    data: bytes


@dataclass
class FileReference:
    """Provider-side handle for an active file, usable inside context."""

    uri: str
    mime_type: str
    resource_id: str = ""


@dataclass
class Attachment:
    """
    An attachment tracked through its upload lifecycle.

    Tool-produced media is also surfaced as an ``Attachment`` so callers can
    display it; those carry ``data`` and no ``reference``.
    """

    name: str
    mime_type: str
    size: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: AttachmentState = AttachmentState.RAW
    reference: FileReference | None = None
    data: bytes | None = None
    error: str | None = None

    @property
    def data_url(self) -> str | None:
        if self.data is None:
            return None
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class ProcessingKind(str, Enum):
    ATTACHMENT_UPLOAD = "attachment_upload"
    TOOL_REQUEST = "tool_request"
    TOOL_EXECUTION = "tool_execution"
    TOOL_RESPONSE = "tool_response"
    DOWNSTREAM_FILE_PROCESSING = "downstream_file_processing"


class ProcessingStage(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_MODEL = "awaiting_model"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessingStatus:
    kind: ProcessingKind
    stage: ProcessingStage
    subject_name: str | None = None
    detail_text: str | None = None
    error_text: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in (ProcessingStage.COMPLETED, ProcessingStage.FAILED)


class MemoryAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE_SUGGESTED = "delete_suggested"


@dataclass(frozen=True)
class MemoryOperation:
    action: MemoryAction
    content: str | None = None
    target_content: str | None = None


@dataclass
class ToolCallResult:
    """
    Outcome of servicing one tool call.

    *content* is what gets sent back to the model as the function response.
    *context_reference* is set when the tool produced a file the model should
    be able to look at on its next request.
    """

    content: Any
    promoted_attachments: list[Attachment] = field(default_factory=list)
    context_reference: FileReference | None = None
    success: bool = True
    error_code: str | None = None


class TurnDisposition(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass
class TurnResult:
    final_text: str
    disposition: TurnDisposition
    statuses: list[ProcessingStatus] = field(default_factory=list)
    memory_operations: list[MemoryOperation] = field(default_factory=list)
    promoted_attachments: list[Attachment] = field(default_factory=list)
    error: str | None = None
    context_entries: list[ContextEntry] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.disposition is TurnDisposition.ABORTED


class ErrorCode:
    CREDENTIAL = "credential"
    MODEL_NOT_FOUND = "model_not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    REGION_UNSUPPORTED = "region_unsupported"
    SAFETY_BLOCK = "safety_block"
    TOOL_EXECUTION = "tool_execution"
    UNKNOWN_TOOL = "unknown_tool"
    ATTACHMENT_UPLOAD = "attachment_upload"
    NO_CONTENT = "no_content"
    UNCLASSIFIED_PROVIDER = "unclassified_provider"

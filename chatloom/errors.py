"""
Error taxonomy and the classifier that turns raw failures into
user-facing messages.

Provider-level errors terminate a turn; ``ToolExecutionError`` and
``AttachmentUploadError`` are recovered where they occur.  ``UserAbort`` is
not part of the hierarchy: cancellation is never reported as an error.
"""

from __future__ import annotations

import logging

import httpx

from chatloom.types import ErrorCode

logger = logging.getLogger(__name__)


class ChatloomError(Exception):
    error_code = ErrorCode.UNCLASSIFIED_PROVIDER

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ProviderError(ChatloomError):
    """A non-2xx or otherwise failed exchange with the model provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CredentialError(ProviderError):
    error_code = ErrorCode.CREDENTIAL


class ModelNotFoundError(ProviderError):
    error_code = ErrorCode.MODEL_NOT_FOUND


class QuotaExceededError(ProviderError):
    error_code = ErrorCode.QUOTA_EXCEEDED


class RegionUnsupportedError(ProviderError):
    error_code = ErrorCode.REGION_UNSUPPORTED


class SafetyBlockError(ProviderError):
    error_code = ErrorCode.SAFETY_BLOCK


class UnclassifiedProviderError(ProviderError):
    error_code = ErrorCode.UNCLASSIFIED_PROVIDER


class ToolExecutionError(ChatloomError):
    error_code = ErrorCode.TOOL_EXECUTION

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class AttachmentUploadError(ChatloomError):
    error_code = ErrorCode.ATTACHMENT_UPLOAD

    def __init__(self, attachment_name: str, message: str) -> None:
        super().__init__(message)
        self.attachment_name = attachment_name


class NoContentError(ChatloomError):
    """Nothing usable is left to send: no text and no active attachment."""

    error_code = ErrorCode.NO_CONTENT


class UserAbort(Exception):
    """Raised at a suspension point once the turn's cancel token fired."""

    def __init__(self, reason: str = "aborted by user") -> None:
        super().__init__(reason)
        self.reason = reason


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_CATEGORY_MARKERS: list[tuple[type[ProviderError], tuple[str, ...]]] = [
    (CredentialError, ("api key", "api_key_invalid", "permission denied", "unauthenticated")),
    (ModelNotFoundError, ("model not found", "is not found for api version")),
    (QuotaExceededError, ("quota", "resource_exhausted", "rate limit")),
    (RegionUnsupportedError, ("user location is not supported",)),
    (SafetyBlockError, ("safety settings", "blocked by safety", "safety")),
]

_STATUS_CATEGORIES: dict[int, type[ProviderError]] = {
    401: CredentialError,
    403: CredentialError,
    429: QuotaExceededError,
}


def _raw_message(error: object) -> str:
    if isinstance(error, ChatloomError):
        return error.message
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}: {error.response.reason_phrase}"
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    if isinstance(error, str):
        return error
    message = getattr(error, "message", None)
    if isinstance(message, str):
        return message
    return repr(error)


def error_category(error: object) -> type[ChatloomError]:
    """Map any raw error onto a class of the taxonomy."""
    if isinstance(error, ChatloomError) and type(error) not in (
        ChatloomError,
        ProviderError,
    ):
        return type(error)

    text = _raw_message(error).lower()
    for category, markers in _CATEGORY_MARKERS:
        if any(m in text for m in markers):
            return category

    status = getattr(error, "status_code", None)
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    if isinstance(status, int) and status in _STATUS_CATEGORIES:
        return _STATUS_CATEGORIES[status]
    return UnclassifiedProviderError


def classify_error(error: object, model: str | None = None) -> str:
    """
    Return a short, displayable explanation for *error*.

    Never raises; anything that cannot be categorized becomes
    ``"provider error: <raw message>"``.
    """
    try:
        raw = _raw_message(error)
        category = error_category(error)
    except Exception:
        logger.exception("Error classification failed")
        return "provider error: unknown failure"

    if category is CredentialError:
        return "Invalid or unauthorized API key."
    if category is ModelNotFoundError:
        return f'Model "{model}" not found.' if model else "Model not found."
    if category is QuotaExceededError:
        return f"Quota exceeded: {raw}"
    if category is RegionUnsupportedError:
        return f"Unsupported region: {raw}"
    if category is SafetyBlockError:
        return f"Blocked by safety settings: {raw}"
    if category is NoContentError:
        return raw
    if category is AttachmentUploadError:
        return f"Attachment upload failed: {raw}"
    if category is ToolExecutionError:
        return f"Tool execution failed: {raw}"
    return f"provider error: {raw}"

"""
Attachment upload and activation.

An attachment goes ``raw -> uploading -> awaiting_activation -> active`` (or
``failed``).  Only ``active`` attachments may be referenced in context, so the
uploader polls the provider's file store until the file is usable, using an
injected :class:`RetryPolicy`.
"""

from __future__ import annotations

import logging
import os
import random
import re
import string
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from chatloom.cancellation import CancelToken
from chatloom.errors import AttachmentUploadError, ChatloomError
from chatloom.llm.providers.base import (
    FILE_STATE_ACTIVE,
    FILE_STATE_FAILED,
    FileStore,
    RemoteFile,
)
from chatloom.types import (
    Attachment,
    AttachmentState,
    FileReference,
    ProcessingKind,
    ProcessingStage,
    ProcessingStatus,
    RawAttachment,
)

logger = logging.getLogger(__name__)

StatusCallback = Callable[[ProcessingStatus], Awaitable[None]]

RESOURCE_NAME_MAX_LENGTH = 40
RESOURCE_STEM_MAX_LENGTH = 20

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_BASE36 = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _unique_suffix() -> str:
    millis = _base36(int(time.time() * 1000))
    rand = "".join(random.choices(_BASE36, k=3))
    return f"{millis[-5:]}-{rand}"


def sanitize_resource_name(
    base_name: str,
    max_length: int = RESOURCE_NAME_MAX_LENGTH,
) -> str:
    """
    Turn a display name into a provider-safe resource identifier.

    The result is lower-case alphanumerics joined by single hyphens, never
    starts or ends with a hyphen, ends with a time+random token and is at
    most *max_length* characters long.
    """
    stem = _NON_ALNUM.sub("-", (base_name or "").lower()).strip("-")
    stem = stem[:RESOURCE_STEM_MAX_LENGTH].strip("-") or "file"
    name = f"{stem}-{_unique_suffix()}"
    return name[:max_length].strip("-")


def display_stem(file_name: str) -> str:
    """File name without its extension, as used for resource naming."""
    stem, _ext = os.path.splitext(file_name)
    return stem or file_name


@dataclass
class RetryPolicy:
    """Bounded polling policy for upload activation."""

    max_attempts: int = 15
    delay_seconds: float = 2.0
    backoff: float = 1.0
    max_delay_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        delay = self.delay_seconds * (self.backoff ** attempt)
        return min(delay, self.max_delay_seconds)


class AttachmentUploader:
    """
    Uploads attachments to a :class:`FileStore` and waits for activation.

    Status updates are pushed through the ``emit`` callback handed to
    :meth:`upload`; the coroutine itself resolves to the active
    :class:`Attachment` or raises ``AttachmentUploadError`` / ``UserAbort``.
    """

    def __init__(self, store: FileStore, retry_policy: RetryPolicy | None = None) -> None:
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()

    async def upload(
        self,
        raw: RawAttachment,
        token: CancelToken,
        emit: StatusCallback,
        kind: ProcessingKind = ProcessingKind.ATTACHMENT_UPLOAD,
    ) -> Attachment:
        display_name = raw.name or f"unnamed-file-{int(time.time())}"
        attachment = Attachment(
            name=display_name,
            mime_type=raw.mime_type,
            size=len(raw.data),
        )
        # Tool-produced files stop at "awaiting_model"; the model consumes them next.
        ready_stage = (
            ProcessingStage.AWAITING_MODEL
            if kind is ProcessingKind.DOWNSTREAM_FILE_PROCESSING
            else ProcessingStage.COMPLETED
        )

        async def _status(stage: ProcessingStage, detail: str | None = None, error: str | None = None) -> None:
            await emit(
                ProcessingStatus(
                    kind=kind,
                    stage=stage,
                    subject_name=display_name,
                    detail_text=detail,
                    error_text=error,
                )
            )

        token.raise_if_cancelled()
        resource_name = sanitize_resource_name(display_stem(display_name))
        attachment.state = AttachmentState.UPLOADING
        await _status(ProcessingStage.IN_PROGRESS, "Uploading to provider...")

        try:
            remote = await token.guard(
                self.store.upload(raw.data, raw.mime_type, display_name, resource_name)
            )
            attachment.state = AttachmentState.AWAITING_ACTIVATION
            await _status(ProcessingStage.IN_PROGRESS, "Waiting for file activation...")
            if remote.state != FILE_STATE_ACTIVE:
                remote = await self._wait_until_active(remote, display_name, token)
        except (ChatloomError, httpx.HTTPError) as exc:
            message = exc.message if isinstance(exc, ChatloomError) else str(exc)
            attachment.state = AttachmentState.FAILED
            attachment.error = message
            logger.warning("Attachment '%s' failed: %s", display_name, message)
            await _status(ProcessingStage.FAILED, error=message)
            if isinstance(exc, AttachmentUploadError):
                raise
            raise AttachmentUploadError(display_name, message) from exc

        attachment.state = AttachmentState.ACTIVE
        attachment.reference = FileReference(
            uri=remote.uri,
            mime_type=remote.mime_type or raw.mime_type,
            resource_id=remote.resource_id,
        )
        await _status(ready_stage, "File ready for the model.")
        return attachment

    async def _wait_until_active(
        self,
        remote: RemoteFile,
        display_name: str,
        token: CancelToken,
    ) -> RemoteFile:
        policy = self.retry_policy
        resource_id = remote.resource_id
        last_error: str | None = None

        for attempt in range(policy.max_attempts):
            token.raise_if_cancelled()
            try:
                current = await token.guard(self.store.get_status(resource_id))
            except (ChatloomError, httpx.HTTPError) as exc:
                last_error = str(exc)
                logger.warning(
                    "Error checking state of %s, attempt %d/%d: %s",
                    resource_id,
                    attempt + 1,
                    policy.max_attempts,
                    exc,
                )
            else:
                if current.state == FILE_STATE_ACTIVE:
                    return current
                if current.state == FILE_STATE_FAILED:
                    raise AttachmentUploadError(
                        display_name,
                        f"File {resource_id} processing failed on provider side.",
                    )
            if attempt < policy.max_attempts - 1:
                await token.sleep(policy.delay_for(attempt))

        message = (
            f"File {resource_id} did not become active after "
            f"{policy.max_attempts} attempts."
        )
        if last_error:
            message += f" Last error: {last_error}"
        raise AttachmentUploadError(display_name, message)

"""
Tool invocation.

A declared tool is either an HTTP endpoint or a native routine.  HTTP
responses are interpreted by :func:`classify_response`, which picks one of
four strategies from the content type and body; the invoker then carries out
that strategy (uploading direct files, extracting embedded media) and
returns a :class:`ToolCallResult` for the model.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import unquote, urlencode, urlparse

import httpx

from chatloom.cancellation import CancelToken
from chatloom.errors import AttachmentUploadError, ToolExecutionError, UserAbort
from chatloom.files.uploader import AttachmentUploader, StatusCallback
from chatloom.tools.base import HttpMethod, ToolDeclaration
from chatloom.tools.registry import ToolRegistry
from chatloom.types import (
    Attachment,
    AttachmentState,
    ProcessingKind,
    ProcessingStage,
    ProcessingStatus,
    RawAttachment,
    ToolCallResult,
)

logger = logging.getLogger(__name__)

DIRECT_FILE_MIME_TYPES = (
    "application/pdf",
    "text/plain",
    "text/markdown",
    "text/csv",
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
    "audio/mpeg",
    "audio/wav",
    "audio/ogg",
    "audio/mp4",
    "video/mp4",
    "video/webm",
    "video/quicktime",
)

# (field, default mime prefix, default file stem)
BASE64_MEDIA_FIELDS = (
    ("image_base64", "image/", "image"),
    ("audio_base64", "audio/", "audio"),
    ("video_base64", "video/", "video"),
)

DEFAULT_DOWNLOAD_NAME = "downloaded-file"

_FILENAME_RE = re.compile(r"""filename\*?=(?:[\w-]+'[\w-]*')?['"]?([^'";]+)['"]?""")


class ResponseKind(str, Enum):
    DIRECT_FILE = "direct_file"
    STRUCTURED_JSON_WITH_MEDIA = "structured_json_with_media"
    STRUCTURED_JSON = "structured_json"
    PLAIN_TEXT = "plain_text"


@dataclass
class InterpretedResponse:
    kind: ResponseKind
    content_type: str
    payload: Any


def _media_type(content_type: str | None) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def has_embedded_media(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    for key, _prefix, _stem in BASE64_MEDIA_FIELDS:
        if isinstance(data.get(key), str) and data[key]:
            return True
    return isinstance(data.get("file_url"), str) and isinstance(data.get("mime_type"), str)


def classify_response(content_type: str | None, body: bytes) -> InterpretedResponse:
    """
    Select the interpretation strategy for a tool's HTTP response.

    Pure: depends only on the declared content type and the body bytes.
    A JSON content type whose body does not parse is treated as text.
    """
    media_type = _media_type(content_type)

    if any(media_type.startswith(t) for t in DIRECT_FILE_MIME_TYPES):
        return InterpretedResponse(ResponseKind.DIRECT_FILE, media_type, body)

    text = body.decode("utf-8", errors="replace")
    if "application/json" in media_type:
        try:
            data = json.loads(text) if text.strip() else None
        except ValueError:
            return InterpretedResponse(ResponseKind.PLAIN_TEXT, media_type, text)
        kind = (
            ResponseKind.STRUCTURED_JSON_WITH_MEDIA
            if has_embedded_media(data)
            else ResponseKind.STRUCTURED_JSON
        )
        return InterpretedResponse(kind, media_type, data)

    return InterpretedResponse(ResponseKind.PLAIN_TEXT, media_type, text)


def filename_from_response(content_disposition: str | None, url: str) -> str:
    """``Content-Disposition`` filename, else the last URL path segment."""
    if content_disposition:
        match = _FILENAME_RE.search(content_disposition)
        if match and match.group(1):
            return unquote(match.group(1))
    segment = urlparse(url).path.rsplit("/", 1)[-1]
    if segment:
        return unquote(segment)
    return DEFAULT_DOWNLOAD_NAME


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if value is None:
        return ""
    return str(value)


def build_request_url(url: str, method: HttpMethod, args: dict[str, Any]) -> str:
    if method is not HttpMethod.GET or not args:
        return url
    query = urlencode({k: _query_value(v) for k, v in args.items()})
    return f"{url}{'&' if '?' in url else '?'}{query}"


def error_content(tool_name: str, message: str) -> dict:
    return {
        "status": "error",
        "error_message": f"Error executing function '{tool_name}': {message}",
    }


def _default_media_name(stem: str, tool_name: str, mime_type: str) -> str:
    ext = mime_type.split("/", 1)[1] if "/" in mime_type else "bin"
    return f"{stem}_{tool_name}_{int(time.time() * 1000)}.{ext or 'bin'}"


class ToolInvoker:
    """
    Executes tool calls on behalf of the orchestrator.

    Owns an ``httpx.AsyncClient`` unless one is passed in.  Every network
    await goes through the turn's :class:`CancelToken`.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        uploader: AttachmentUploader,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.registry = registry
        self.uploader = uploader
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def invoke(
        self,
        declaration: ToolDeclaration,
        args: dict[str, Any],
        token: CancelToken,
        emit: StatusCallback,
    ) -> ToolCallResult:
        name = declaration.name

        async def _exec_status(stage: ProcessingStage, detail: str | None = None, error: str | None = None) -> None:
            await emit(
                ProcessingStatus(
                    kind=ProcessingKind.TOOL_EXECUTION,
                    stage=stage,
                    subject_name=name,
                    detail_text=detail,
                    error_text=error,
                )
            )

        token.raise_if_cancelled()
        await _exec_status(ProcessingStage.IN_PROGRESS, "Starting function execution...")

        try:
            if declaration.is_native:
                content = await self._run_native(declaration, args, token)
                await _exec_status(ProcessingStage.COMPLETED, "Function returned.")
                return ToolCallResult(content=content)

            response = await self._send(declaration, args, token)
            await _exec_status(ProcessingStage.COMPLETED, "External API responded.")
            interpreted = classify_response(
                response.headers.get("content-type"), response.content
            )
            return await self._interpret(declaration, response, interpreted, token, emit)
        except UserAbort:
            raise
        except (ToolExecutionError, AttachmentUploadError) as exc:
            logger.warning("Tool %s failed: %s", name, exc.message)
            # The uploader already reported its own failure for promoted files.
            if isinstance(exc, ToolExecutionError):
                await _exec_status(ProcessingStage.FAILED, error=exc.message)
            return ToolCallResult(
                content=error_content(name, exc.message),
                success=False,
                error_code=exc.error_code,
            )
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.exception("Tool %s raised unexpectedly", name)
            await _exec_status(ProcessingStage.FAILED, error=message)
            return ToolCallResult(
                content=error_content(name, message),
                success=False,
                error_code=ToolExecutionError.error_code,
            )

    async def _run_native(
        self,
        declaration: ToolDeclaration,
        args: dict[str, Any],
        token: CancelToken,
    ) -> Any:
        routine = self.registry.native(declaration.native or "")
        if routine is None:
            raise ToolExecutionError(
                declaration.name, f"No native routine registered as '{declaration.native}'"
            )
        try:
            return await token.guard(routine.execute(**args))
        except UserAbort:
            raise
        except Exception as e:
            raise ToolExecutionError(declaration.name, str(e) or e.__class__.__name__) from e

    async def _send(
        self,
        declaration: ToolDeclaration,
        args: dict[str, Any],
        token: CancelToken,
    ) -> httpx.Response:
        method = declaration.http_method
        url = build_request_url(declaration.endpoint_url or "", method, args)
        headers = {"Accept": "*/*"}
        kwargs: dict[str, Any] = {"headers": headers}
        if method.sends_json_body:
            kwargs["json"] = args
        logger.info("Calling tool %s: %s %s", declaration.name, method.value, url)

        try:
            response = await token.guard(self._client.request(method.value, url, **kwargs))
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ToolExecutionError(declaration.name, f"Request failed: {e}") from e

        if not response.is_success:
            detail = f"HTTP error: {response.status_code} {response.reason_phrase}"
            try:
                detail += f" - {json.dumps(response.json())}"
            except ValueError:
                pass
            raise ToolExecutionError(declaration.name, detail)
        return response

    async def _interpret(
        self,
        declaration: ToolDeclaration,
        response: httpx.Response,
        interpreted: InterpretedResponse,
        token: CancelToken,
        emit: StatusCallback,
    ) -> ToolCallResult:
        if interpreted.kind is ResponseKind.DIRECT_FILE:
            return await self._promote_direct_file(response, interpreted, token, emit)

        if interpreted.kind is ResponseKind.STRUCTURED_JSON_WITH_MEDIA:
            attachments = await self._extract_media(
                declaration.name, interpreted.payload, token, emit
            )
            return ToolCallResult(content=interpreted.payload, promoted_attachments=attachments)

        return ToolCallResult(content=interpreted.payload)

    async def _promote_direct_file(
        self,
        response: httpx.Response,
        interpreted: InterpretedResponse,
        token: CancelToken,
        emit: StatusCallback,
    ) -> ToolCallResult:
        file_name = filename_from_response(
            response.headers.get("content-disposition"), str(response.request.url)
        )
        raw = RawAttachment(name=file_name, mime_type=interpreted.content_type, data=interpreted.payload)
        uploaded = await self.uploader.upload(
            raw, token, emit, kind=ProcessingKind.DOWNSTREAM_FILE_PROCESSING
        )
        reference = uploaded.reference
        uploaded.data = raw.data

        content = {
            "status": "success",
            "message": (
                f"File '{file_name}' ({raw.mime_type}) retrieved and made available "
                f"at URI '{reference.uri}'. Use this URI to analyze the file."
            ),
            "fileName": file_name,
            "mimeType": reference.mime_type,
            "fileUri": reference.uri,
        }
        return ToolCallResult(
            content=content,
            promoted_attachments=[uploaded],
            context_reference=reference,
        )

    async def _extract_media(
        self,
        tool_name: str,
        data: dict,
        token: CancelToken,
        emit: StatusCallback,
    ) -> list[Attachment]:
        """
        Materialize embedded media into local attachments.

        Entries that fail to decode or download are skipped with a warning;
        the JSON itself is still returned to the model unchanged.
        """
        await emit(
            ProcessingStatus(
                kind=ProcessingKind.DOWNSTREAM_FILE_PROCESSING,
                stage=ProcessingStage.IN_PROGRESS,
                subject_name=tool_name,
                detail_text="Processing media from function response...",
            )
        )

        attachments: list[Attachment] = []
        for key, prefix, stem in BASE64_MEDIA_FIELDS:
            encoded = data.get(key)
            if not isinstance(encoded, str) or not encoded:
                continue
            mime_type = data.get(f"{key}_mime_type")
            if not isinstance(mime_type, str) or not mime_type:
                mime_type = f"{prefix}jpeg"
            name = data.get(f"{key}_name")
            if not isinstance(name, str) or not name:
                name = _default_media_name(stem, tool_name, mime_type)
            try:
                blob = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as e:
                logger.warning("Skipping %s from %s: %s", key, tool_name, e)
                continue
            attachments.append(_local_attachment(name, mime_type, blob))

        file_url = data.get("file_url")
        mime_type = data.get("mime_type")
        if isinstance(file_url, str) and isinstance(mime_type, str):
            name = data.get("file_name")
            if not isinstance(name, str) or not name:
                name = _default_media_name("file", tool_name, mime_type)
            try:
                response = await token.guard(self._client.get(file_url))
                response.raise_for_status()
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                logger.warning("Skipping file_url from %s: %s", tool_name, e)
            else:
                attachments.append(_local_attachment(name, mime_type, response.content))

        await emit(
            ProcessingStatus(
                kind=ProcessingKind.DOWNSTREAM_FILE_PROCESSING,
                stage=ProcessingStage.AWAITING_MODEL,
                subject_name=tool_name,
                detail_text=f"{len(attachments)} media file(s) extracted.",
            )
        )
        return attachments


def _local_attachment(name: str, mime_type: str, data: bytes) -> Attachment:
    return Attachment(
        name=name,
        mime_type=mime_type,
        size=len(data),
        state=AttachmentState.ACTIVE,
        data=data,
    )

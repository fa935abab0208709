"""
Gemini REST provider and file store.

Speaks the ``generativelanguage.googleapis.com`` wire protocol directly:
``:streamGenerateContent?alt=sse`` for completions and the resumable
``upload/v1beta/files`` protocol for attachments.

Dependencies: ``httpx`` (async HTTP client).  No ``google-genai`` SDK needed.

The client owns one ``httpx.AsyncClient``; construct it once, pass it to the
orchestrator and uploader, and close it with ``aclose()`` (or use it as an
async context manager).
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from chatloom.errors import (
    ProviderError,
    SafetyBlockError,
    error_category,
)
from chatloom.llm.providers.base import FileStore, Provider, RemoteFile
from chatloom.llm.types import (
    ROLE_FUNCTION,
    ROLE_USER,
    CompletionRequest,
    ContextEntry,
    Part,
    StreamChunk,
    ToolCall,
)

logger = logging.getLogger(__name__)

FINISH_REASON_SAFETY = "SAFETY"


class GeminiClient(Provider, FileStore):
    """
    Stream-capable Gemini provider that also manages file uploads.

    Parameters
    ----------
    api_key:
        Key sent in the ``x-goog-api-key`` header.
    api_base:
        Base URL, e.g. ``"https://generativelanguage.googleapis.com"``.
    api_version:
        API version path segment.
    timeout:
        HTTP request timeout in seconds.
    max_retries:
        Number of automatic retries on transient HTTP errors (5xx, 429)
        before any chunk has been delivered.
    transport:
        Optional ``httpx`` transport, used by tests.
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://generativelanguage.googleapis.com",
        api_version: str = "v1beta",
        timeout: float = 120.0,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base = api_base.rstrip("/")
        self._version = api_version
        self._max_retries = max_retries
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._client.aclose()

    async def __aenter__(self) -> GeminiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def name(self) -> str:
        return "gemini"

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self._api_key}

    @staticmethod
    def _wire_part(part: Part) -> dict[str, Any]:
        if part.file is not None:
            return {
                "fileData": {
                    "mimeType": part.file.mime_type,
                    "fileUri": part.file.uri,
                }
            }
        if part.function_call is not None:
            return {
                "functionCall": {
                    "name": part.function_call.name,
                    "args": part.function_call.arguments,
                }
            }
        if part.function_response is not None:
            response = part.function_response.get("response")
            if not isinstance(response, dict):
                response = {"content": response}
            return {
                "functionResponse": {
                    "name": part.function_response.get("name", ""),
                    "response": response,
                }
            }
        return {"text": part.text or ""}

    def _wire_content(self, entry: ContextEntry) -> dict[str, Any]:
        # Function results travel in user-role content on the wire.
        role = ROLE_USER if entry.role == ROLE_FUNCTION else entry.role
        return {
            "role": role,
            "parts": [self._wire_part(p) for p in entry.as_parts()],
        }

    def build_body(self, request: CompletionRequest) -> dict[str, Any]:
        settings = request.settings
        generation: dict[str, Any] = {
            "temperature": settings.temperature,
            "topP": settings.top_p,
            "topK": settings.top_k,
            "maxOutputTokens": settings.max_output_tokens,
        }
        if settings.thinking_budget is not None:
            generation["thinkingConfig"] = {"thinkingBudget": settings.thinking_budget}

        body: dict[str, Any] = {
            "contents": [self._wire_content(e) for e in request.contents],
            "generationConfig": generation,
        }
        if settings.safety_settings:
            body["safetySettings"] = [
                {"category": s.category, "threshold": s.threshold}
                for s in settings.safety_settings
            ]
        if request.system_instruction:
            body["systemInstruction"] = {
                "parts": [{"text": request.system_instruction}]
            }
        if request.web_search:
            body["tools"] = [{"googleSearch": {}}]
        elif request.tools:
            body["tools"] = [{"functionDeclarations": request.tools}]

        logger.info(
            "REQUEST: model=%s tools=%d contents=%d web_search=%s api_key=%s...",
            settings.model,
            0 if request.web_search else len(request.tools or []),
            len(body["contents"]),
            request.web_search,
            self._api_key[:6] if self._api_key else "(none)",
        )
        return body

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            text = response.text.strip()
            return text or f"HTTP {response.status_code}"
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return f"HTTP {response.status_code}"

    def _raise_for_response(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        message = self._error_message(response)
        raw = ProviderError(message, status_code=response.status_code)
        category = error_category(raw)
        raise category(message, status_code=response.status_code)

    # ------------------------------------------------------------------
    # Streaming completion
    # ------------------------------------------------------------------

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        url = (
            f"{self._base}/{self._version}/models/"
            f"{request.settings.model}:streamGenerateContent"
        )
        body = self.build_body(request)

        last_error: Exception | None = None
        delivered = False
        for attempt in range(1 + self._max_retries):
            try:
                async with self._client.stream(
                    "POST",
                    url,
                    params={"alt": "sse"},
                    json=body,
                    headers=self._headers(),
                ) as response:
                    if response.status_code == 429 or response.status_code >= 500:
                        # Retryable -- read body so the connection is released.
                        await response.aread()
                        last_error = ProviderError(
                            self._error_message(response),
                            status_code=response.status_code,
                        )
                        logger.warning(
                            "Retryable provider response %s (attempt %d)",
                            response.status_code,
                            attempt + 1,
                        )
                        continue

                    if not response.is_success:
                        await response.aread()
                        self._raise_for_response(response)

                    async for chunk in self._parse_sse_stream(response):
                        delivered = True
                        yield chunk
                    return  # success
            except httpx.TransportError as exc:
                # No retry once any chunk has been delivered.
                if delivered:
                    raise ProviderError(f"stream interrupted: {exc}") from exc
                last_error = exc
                if attempt < self._max_retries:
                    continue
                raise ProviderError(f"transport error: {exc}") from exc

        if isinstance(last_error, ProviderError):
            category = error_category(last_error)
            raise category(last_error.message, status_code=last_error.status_code)
        if last_error is not None:
            raise ProviderError(str(last_error))

    async def _parse_sse_stream(
        self, response: httpx.Response
    ) -> AsyncIterator[StreamChunk]:
        """
        Parse Server-Sent Events from the decoded response lines.

        Each SSE event has the form::

            data: {json}\\n\\n

        The stream ends when the server closes the connection.
        """
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue

            data_str = line[len("data:"):].strip()
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse SSE data: %s", data_str[:200])
                continue

            chunk = self._sse_data_to_chunk(data)
            if chunk is not None:
                yield chunk

        yield StreamChunk(done=True)

    def _sse_data_to_chunk(self, data: dict) -> StreamChunk | None:
        """Convert a parsed SSE ``data`` payload into a ``StreamChunk``."""
        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise SafetyBlockError(
                f"prompt blocked by safety settings ({feedback['blockReason']})"
            )

        candidates = data.get("candidates")
        if not candidates:
            return None

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        if finish_reason == FINISH_REASON_SAFETY:
            raise SafetyBlockError("response blocked by safety settings")

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                call = part["functionCall"] or {}
                tool_calls.append(
                    ToolCall(
                        name=call.get("name", ""),
                        arguments=call.get("args") or {},
                        id=call.get("id"),
                    )
                )
            elif part.get("text") and not part.get("thought"):
                text_parts.append(part["text"])

        return StreamChunk(
            delta="".join(text_parts),
            tool_calls=tool_calls or None,
            finish_reason=finish_reason,
        )

    # ------------------------------------------------------------------
    # File store
    # ------------------------------------------------------------------

    @staticmethod
    def _remote_file(data: dict) -> RemoteFile:
        return RemoteFile(
            resource_id=data.get("name", ""),
            state=str(data.get("state", "")).upper(),
            uri=data.get("uri", ""),
            mime_type=data.get("mimeType", ""),
            display_name=data.get("displayName", ""),
        )

    async def upload(
        self,
        data: bytes,
        mime_type: str,
        display_name: str,
        resource_name: str,
    ) -> RemoteFile:
        start = await self._client.post(
            f"{self._base}/upload/{self._version}/files",
            headers={
                **self._headers(),
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(data)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            },
            json={
                "file": {
                    "displayName": display_name,
                    "name": f"files/{resource_name}",
                }
            },
        )
        self._raise_for_response(start)
        upload_url = start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise ProviderError("upload session did not return an upload URL")

        finished = await self._client.post(
            upload_url,
            headers={
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
            content=data,
        )
        self._raise_for_response(finished)
        payload = finished.json()
        remote = self._remote_file(payload.get("file") or payload)
        if not remote.resource_id:
            raise ProviderError(f"upload of '{display_name}' returned no file id")
        return remote

    async def get_status(self, resource_id: str) -> RemoteFile:
        response = await self._client.get(
            f"{self._base}/{self._version}/{resource_id}",
            headers=self._headers(),
        )
        self._raise_for_response(response)
        return self._remote_file(response.json())

"""
Orchestrator core -- drives one assistant turn end to end.

For each turn the orchestrator:
1. Builds the context from memories and prior history
2. Uploads the user's attachments, one at a time, until they are active
3. Streams a completion, forwarding text deltas as they arrive
4. Executes the first tool call of a response, appends the exchange to the
   context and requests again
5. Parses memory directives out of the final text once no tool call remains

A turn runs as a background task that pushes :class:`TurnEvent` records onto
a queue; the caller pulls them from the returned :class:`TurnStream`.  One
:class:`CancelToken` covers every suspension point of the turn.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Iterable

from chatloom.cancellation import CancelToken
from chatloom.errors import (
    AttachmentUploadError,
    ChatloomError,
    NoContentError,
    UserAbort,
    classify_error,
)
from chatloom.files.uploader import AttachmentUploader
from chatloom.llm.providers.base import Provider
from chatloom.llm.types import (
    ROLE_FUNCTION,
    ROLE_MODEL,
    ROLE_USER,
    CompletionRequest,
    ContextEntry,
    GenerationSettings,
    Part,
    StreamChunk,
    ToolCall,
)
from chatloom.memory.directives import parse_directives
from chatloom.session.context import build_context
from chatloom.session.events import (
    TurnEvent,
    attachments_event,
    delta_event,
    finished_event,
    snapshot_event,
    status_event,
)
from chatloom.tools.invoker import ToolInvoker, error_content
from chatloom.tools.registry import ToolRegistry, ToolSet
from chatloom.types import (
    Attachment,
    ErrorCode,
    ProcessingKind,
    ProcessingStage,
    ProcessingStatus,
    RawAttachment,
    ToolCallResult,
    TurnDisposition,
    TurnResult,
)

logger = logging.getLogger(__name__)

NO_CONTENT_MESSAGE = "no valid content to send."


@dataclass
class TurnInput:
    """Everything the caller supplies for one turn."""

    text: str = ""
    attachments: list[RawAttachment] = field(default_factory=list)
    history: list[ContextEntry] = field(default_factory=list)
    memories: list[str] = field(default_factory=list)
    system_instruction: str | None = None
    web_search: bool = False
    incognito: bool = False


@dataclass
class _TurnState:
    text: list[str] = field(default_factory=list)
    statuses: list[ProcessingStatus] = field(default_factory=list)
    promoted: list[Attachment] = field(default_factory=list)
    added: list[ContextEntry] = field(default_factory=list)

    @property
    def accumulated(self) -> str:
        return "".join(self.text)


class TurnStream:
    """
    Async iterator over a running turn's events.

    Iteration ends after the single ``is_finished`` event.  :meth:`cancel`
    fires the turn's token; :meth:`result` waits for the final
    :class:`TurnResult`.
    """

    def __init__(self, token: CancelToken) -> None:
        self.token = token
        self._queue: asyncio.Queue[TurnEvent] = asyncio.Queue()
        self._task: asyncio.Task[TurnResult] | None = None
        self._finished = False

    def _start(self, coro: Awaitable[TurnResult]) -> None:
        self._task = asyncio.get_running_loop().create_task(coro)

    async def _put(self, event: TurnEvent) -> None:
        await self._queue.put(event)

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        return self

    async def __anext__(self) -> TurnEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.is_finished:
            self._finished = True
        return event

    def cancel(self, reason: str = "aborted by user") -> None:
        self.token.cancel(reason)

    async def result(self) -> TurnResult:
        if self._task is None:
            raise RuntimeError("turn not started")
        return await asyncio.shield(self._task)

    async def aclose(self) -> None:
        """Cancel the turn if still running and wait for it to settle."""
        if self._task is None:
            return
        if not self._task.done():
            self.token.cancel()
        await asyncio.gather(self._task, return_exceptions=True)


async def _next_chunk(stream: AsyncIterator[StreamChunk]) -> StreamChunk | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


class TurnOrchestrator:
    """
    Runs assistant turns.

    Parameters
    ----------
    provider : Provider
        Streaming completion provider.
    uploader : AttachmentUploader
        Uploads user attachments to the provider's file store.
    invoker : ToolInvoker
        Executes tool calls.
    registry : ToolRegistry
        Declared tools; the active set is taken once per turn.
    settings : GenerationSettings
        Model and sampling settings for every request of the turn.
    max_tool_rounds : int
        Max tool-call rounds before the turn is finalized as is.
    disabled_tools : iterable of str
        Tool names never offered to the model.
    """

    def __init__(
        self,
        provider: Provider,
        uploader: AttachmentUploader,
        invoker: ToolInvoker,
        registry: ToolRegistry,
        settings: GenerationSettings | None = None,
        max_tool_rounds: int = 10,
        disabled_tools: Iterable[str] = (),
    ) -> None:
        self.provider = provider
        self.uploader = uploader
        self.invoker = invoker
        self.registry = registry
        self.settings = settings or GenerationSettings()
        self.max_tool_rounds = max_tool_rounds
        self.disabled_tools = frozenset(disabled_tools)

    def run(self, turn: TurnInput, cancel: CancelToken | None = None) -> TurnStream:
        """
        Start a turn and return its event stream.

        Must be called from inside a running event loop.  The caller must not
        start another turn over the same history until this one finished.
        """
        stream = TurnStream(cancel or CancelToken())
        stream._start(self._drive(turn, stream.token, stream._put))
        return stream

    async def run_to_completion(self, turn: TurnInput, cancel: CancelToken | None = None) -> TurnResult:
        stream = self.run(turn, cancel)
        async for _event in stream:
            pass
        return await stream.result()

    # ------------------------------------------------------------------
    # Turn driver
    # ------------------------------------------------------------------

    async def _drive(
        self,
        turn: TurnInput,
        token: CancelToken,
        put: Callable[[TurnEvent], Awaitable[None]],
    ) -> TurnResult:
        state = _TurnState()

        async def emit_status(status: ProcessingStatus) -> None:
            state.statuses.append(status)
            await put(status_event(status))

        try:
            token.raise_if_cancelled()
            contents = build_context(turn.history, turn.memories)
            tools = self.registry.active(
                incognito=turn.incognito, disabled=self.disabled_tools
            )

            user_entry = await self._user_entry(turn, token, emit_status)
            contents.append(user_entry)
            state.added.append(user_entry)

            await self._tool_loop(turn, tools, contents, state, token, put, emit_status)
            result = self._finalize(turn, state)
        except UserAbort as abort:
            logger.info("Turn aborted: %s", abort.reason)
            result = TurnResult(
                final_text=state.accumulated,
                disposition=TurnDisposition.ABORTED,
                statuses=state.statuses,
                promoted_attachments=state.promoted,
                context_entries=state.added,
            )
        except Exception as exc:
            if isinstance(exc, ChatloomError):
                logger.warning("Turn failed: %s", exc.message)
            else:
                logger.exception("Unexpected failure during turn")
            message = classify_error(exc, model=self.settings.model)
            text = state.accumulated
            result = TurnResult(
                final_text=f"{text}\n\n{message}" if text else message,
                disposition=TurnDisposition.ERRORED,
                statuses=state.statuses,
                promoted_attachments=state.promoted,
                error=message,
                context_entries=state.added,
            )

        await put(finished_event(result))
        return result

    async def _user_entry(
        self,
        turn: TurnInput,
        token: CancelToken,
        emit_status: Callable[[ProcessingStatus], Awaitable[None]],
    ) -> ContextEntry:
        if not turn.attachments:
            if not turn.text.strip():
                raise NoContentError(NO_CONTENT_MESSAGE)
            return ContextEntry(role=ROLE_USER, text=turn.text)

        parts: list[Part] = []
        if turn.text.strip():
            parts.append(Part.from_text(turn.text))

        # Sequential on purpose: status order follows attachment order.
        for raw in turn.attachments:
            try:
                attachment = await self.uploader.upload(raw, token, emit_status)
            except AttachmentUploadError as e:
                logger.warning("Dropping attachment '%s': %s", e.attachment_name, e.message)
                continue
            parts.append(Part.from_file(attachment.reference))

        if not parts:
            raise NoContentError(NO_CONTENT_MESSAGE)
        return ContextEntry(role=ROLE_USER, parts=parts)

    async def _tool_loop(
        self,
        turn: TurnInput,
        tools: ToolSet,
        contents: list[ContextEntry],
        state: _TurnState,
        token: CancelToken,
        put: Callable[[TurnEvent], Awaitable[None]],
        emit_status: Callable[[ProcessingStatus], Awaitable[None]],
    ) -> None:
        declarations = None if turn.web_search else (tools.to_function_declarations() or None)

        for round_no in range(self.max_tool_rounds + 1):
            request = CompletionRequest(
                settings=self.settings,
                contents=contents,
                system_instruction=turn.system_instruction,
                tools=declarations,
                web_search=turn.web_search,
            )
            round_text, call = await self._stream_response(request, token, state, put)
            if call is None:
                return
            if round_no == self.max_tool_rounds:
                logger.warning(
                    "Reached %d tool rounds; finalizing without calling %s",
                    self.max_tool_rounds,
                    call.name,
                )
                return
            await self._handle_tool_call(
                call, round_text, tools, contents, state, token, put, emit_status
            )

    async def _stream_response(
        self,
        request: CompletionRequest,
        token: CancelToken,
        state: _TurnState,
        put: Callable[[TurnEvent], Awaitable[None]],
    ) -> tuple[str, ToolCall | None]:
        """
        Stream one completion.

        Returns the text of this response and the first tool call seen, if
        any.  Streaming continues past the tool call until the provider
        finishes.
        """
        token.raise_if_cancelled()
        logger.info(
            "Requesting %s with %d context entries",
            request.settings.model,
            len(request.contents),
        )
        round_text: list[str] = []
        call: ToolCall | None = None

        stream = self.provider.stream(request)
        try:
            while True:
                chunk = await token.guard(_next_chunk(stream))
                if chunk is None:
                    break
                token.raise_if_cancelled()

                if chunk.delta:
                    round_text.append(chunk.delta)
                    state.text.append(chunk.delta)
                    await put(delta_event(chunk.delta))
                for tc in chunk.tool_calls or []:
                    if call is None:
                        call = tc
                    else:
                        logger.warning("Ignoring additional tool call %s", tc.name)
                if chunk.done:
                    break
        finally:
            await stream.aclose()

        return "".join(round_text), call

    async def _handle_tool_call(
        self,
        call: ToolCall,
        round_text: str,
        tools: ToolSet,
        contents: list[ContextEntry],
        state: _TurnState,
        token: CancelToken,
        put: Callable[[TurnEvent], Awaitable[None]],
        emit_status: Callable[[ProcessingStatus], Awaitable[None]],
    ) -> None:
        model_parts = [Part.from_text(round_text)] if round_text else []
        model_parts.append(Part.from_function_call(call))
        self._append(contents, state, ContextEntry(role=ROLE_MODEL, parts=model_parts))

        await emit_status(
            ProcessingStatus(
                kind=ProcessingKind.TOOL_REQUEST,
                stage=ProcessingStage.COMPLETED,
                subject_name=call.name,
                detail_text=f"Model requested function '{call.name}'.",
            )
        )

        declaration = tools.get(call.name)
        if declaration is None:
            message = f"Function '{call.name}' is not declared or not active."
            logger.warning("Unknown tool requested: %s", call.name)
            await emit_status(
                ProcessingStatus(
                    kind=ProcessingKind.TOOL_EXECUTION,
                    stage=ProcessingStage.FAILED,
                    subject_name=call.name,
                    error_text=message,
                )
            )
            result = ToolCallResult(
                content=error_content(call.name, message),
                success=False,
                error_code=ErrorCode.UNKNOWN_TOOL,
            )
        else:
            result = await self.invoker.invoke(
                declaration, dict(call.arguments or {}), token, emit_status
            )

        self._append(
            contents,
            state,
            ContextEntry(
                role=ROLE_FUNCTION,
                parts=[Part.from_function_response(call.name, result.content)],
            ),
        )

        if result.promoted_attachments:
            state.promoted.extend(result.promoted_attachments)
            await put(attachments_event(result.promoted_attachments))

        if result.context_reference is not None:
            file_name = (
                result.promoted_attachments[0].name
                if result.promoted_attachments
                else "file"
            )
            self._append(
                contents,
                state,
                ContextEntry(
                    role=ROLE_USER,
                    parts=[
                        Part.from_file(result.context_reference),
                        Part.from_text(
                            f"File '{file_name}' returned by function '{call.name}' "
                            f"is attached. Analyze it to continue."
                        ),
                    ],
                ),
            )

        await emit_status(
            ProcessingStatus(
                kind=ProcessingKind.TOOL_RESPONSE,
                stage=ProcessingStage.AWAITING_MODEL,
                subject_name=call.name,
                detail_text="Sending function result to the model...",
            )
        )
        await put(snapshot_event(state.added))

    @staticmethod
    def _append(contents: list[ContextEntry], state: _TurnState, entry: ContextEntry) -> None:
        contents.append(entry)
        state.added.append(entry)

    def _finalize(self, turn: TurnInput, state: _TurnState) -> TurnResult:
        parsed = parse_directives(state.accumulated)
        operations = parsed.operations
        if turn.incognito and operations:
            logger.info("Incognito turn: discarding %d memory operations", len(operations))
            operations = []
        return TurnResult(
            final_text=parsed.display_text,
            disposition=TurnDisposition.COMPLETED,
            statuses=state.statuses,
            memory_operations=operations,
            promoted_attachments=state.promoted,
            context_entries=state.added,
        )

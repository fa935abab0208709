"""Tests for the orchestrator core."""

from __future__ import annotations

import httpx
import pytest

from chatloom.cancellation import CancelToken
from chatloom.errors import ProviderError, QuotaExceededError
from chatloom.files.uploader import AttachmentUploader, RetryPolicy
from chatloom.llm.providers.base import FILE_STATE_ACTIVE, FILE_STATE_PROCESSING
from chatloom.llm.types import (
    ROLE_FUNCTION,
    ROLE_MODEL,
    ROLE_USER,
    ContextEntry,
    GenerationSettings,
    StreamChunk,
    ToolCall,
)
from chatloom.orchestrator.core import (
    NO_CONTENT_MESSAGE,
    TurnInput,
    TurnOrchestrator,
    TurnStream,
)
from chatloom.session.context import MEMORY_ACK
from chatloom.tools.invoker import ToolInvoker
from chatloom.tools.registry import ToolRegistry
from chatloom.types import (
    MemoryAction,
    ProcessingKind,
    ProcessingStage,
    RawAttachment,
    TurnDisposition,
)
from tests.mock_providers import (
    MockFileStore,
    MockProvider,
    make_text_chunks,
    make_text_provider,
    make_tool_call_chunks,
)
from tests.mock_tools import (
    CREATE_MEMORY_TOOL,
    ECHO_TOOL,
    REPORT_TOOL,
    WEATHER_TOOL,
    WEATHER_URL,
    EchoRoutine,
)


def _json_handler(request):
    return httpx.Response(200, json={"temp": 21, "sky": "clear"})


@pytest.fixture
def registry():
    reg = ToolRegistry()
    reg.register(WEATHER_TOOL)
    reg.register(REPORT_TOOL)
    reg.register(ECHO_TOOL)
    reg.register(CREATE_MEMORY_TOOL)
    reg.register_native(EchoRoutine())
    return reg


@pytest.fixture
def file_store():
    return MockFileStore(states=[FILE_STATE_PROCESSING, FILE_STATE_ACTIVE])


@pytest.fixture
def http_requests():
    return []


@pytest.fixture
async def make_orchestrator(registry, file_store, http_requests):
    invokers = []

    def _make(provider, handler=_json_handler, **kwargs):
        def recording(request):
            http_requests.append(request)
            return handler(request)

        uploader = AttachmentUploader(file_store, RetryPolicy(max_attempts=3, delay_seconds=0))
        invoker = ToolInvoker(registry, uploader, transport=httpx.MockTransport(recording))
        invokers.append(invoker)
        return TurnOrchestrator(
            provider=provider,
            uploader=uploader,
            invoker=invoker,
            registry=registry,
            settings=GenerationSettings(model="gemini-test"),
            **kwargs,
        )

    yield _make

    for invoker in invokers:
        await invoker.aclose()


async def _run(orchestrator, turn, cancel=None):
    """Run a turn, returning all events and the result."""
    stream = orchestrator.run(turn, cancel)
    events = [event async for event in stream]
    result = await stream.result()
    assert sum(1 for e in events if e.is_finished) == 1
    assert events[-1].is_finished
    return events, result


def _stages(result, kind):
    return [s.stage for s in result.statuses if s.kind is kind]


class TestSimpleTurn:

    async def test_text_turn_streams_and_completes(self, make_orchestrator):
        provider = make_text_provider("Hello there, friend.")
        orch = make_orchestrator(provider)

        events, result = await _run(orch, TurnInput(text="hi"))

        deltas = [e.text_delta for e in events if e.text_delta]
        assert "".join(deltas) == "Hello there, friend."
        assert result.final_text == "Hello there, friend."
        assert result.disposition is TurnDisposition.COMPLETED
        assert result.error is None
        assert result.statuses == []
        assert provider.call_count == 1
        assert events[-1].final_text == "Hello there, friend."

    async def test_request_context_layout(self, make_orchestrator):
        provider = make_text_provider("ok")
        orch = make_orchestrator(provider)
        history = [
            ContextEntry(role=ROLE_USER, text="earlier question"),
            ContextEntry(role=ROLE_MODEL, text="earlier answer"),
        ]

        await _run(
            orch,
            TurnInput(
                text="new question",
                history=history,
                memories=["likes tea"],
                system_instruction="Be brief.",
            ),
        )

        request = provider.requests[0]
        assert request.system_instruction == "Be brief."
        contents = request.contents
        assert '- "likes tea"' in contents[0].text
        assert contents[1].text == MEMORY_ACK
        assert [e.text for e in contents[2:]] == ["earlier question", "earlier answer", "new question"]
        # Caller history is not mutated.
        assert len(history) == 2

    async def test_tools_are_offered(self, make_orchestrator):
        provider = make_text_provider("ok")
        await _run(make_orchestrator(provider), TurnInput(text="hi"))
        names = [d["name"] for d in provider.requests[0].tools]
        assert names == ["create_memory", "echo", "getReport", "getWeather"]

    async def test_web_search_replaces_tools(self, make_orchestrator):
        provider = make_text_provider("ok")
        await _run(make_orchestrator(provider), TurnInput(text="news?", web_search=True))
        request = provider.requests[0]
        assert request.web_search is True
        assert request.tools is None


class TestAttachments:

    async def test_upload_is_active_before_request(self, make_orchestrator, file_store):
        provider = make_text_provider("A cat.")
        orch = make_orchestrator(provider)
        turn = TurnInput(
            text="What is in this picture?",
            attachments=[RawAttachment(name="cat.png", mime_type="image/png", data=b"png")],
        )

        events, result = await _run(orch, turn)

        assert file_store.status_calls == 2
        user_entry = provider.requests[0].contents[-1]
        assert user_entry.parts[0].text == "What is in this picture?"
        file_part = user_entry.parts[1].file
        assert file_part.mime_type == "image/png"
        assert file_part.uri.startswith("https://files.example/files/cat-")
        assert _stages(result, ProcessingKind.ATTACHMENT_UPLOAD) == [
            ProcessingStage.IN_PROGRESS,
            ProcessingStage.IN_PROGRESS,
            ProcessingStage.COMPLETED,
        ]
        first_delta = next(i for i, e in enumerate(events) if e.text_delta)
        last_status = max(i for i, e in enumerate(events) if e.processing_status)
        assert last_status < first_delta

    async def test_attachments_upload_in_order(self, make_orchestrator, file_store):
        provider = make_text_provider("ok")
        orch = make_orchestrator(provider)
        turn = TurnInput(
            attachments=[
                RawAttachment(name="a.txt", mime_type="text/plain", data=b"a"),
                RawAttachment(name="b.txt", mime_type="text/plain", data=b"b"),
            ],
        )

        _events, result = await _run(orch, turn)

        assert [u["display_name"] for u in file_store.uploads] == ["a.txt", "b.txt"]
        subjects = [s.subject_name for s in result.statuses]
        assert subjects == ["a.txt"] * 3 + ["b.txt"] * 3
        assert len(provider.requests[0].contents[-1].parts) == 2

    async def test_failed_attachment_is_dropped_when_text_remains(self, make_orchestrator):
        store = MockFileStore(fail_names={"bad.png"})
        provider = make_text_provider("ok")
        orch = make_orchestrator(provider)
        orch.uploader.store = store

        _events, result = await _run(
            orch,
            TurnInput(
                text="hello",
                attachments=[RawAttachment(name="bad.png", mime_type="image/png", data=b"x")],
            ),
        )

        assert result.disposition is TurnDisposition.COMPLETED
        assert provider.call_count == 1
        parts = provider.requests[0].contents[-1].parts
        assert len(parts) == 1
        assert parts[0].text == "hello"
        assert _stages(result, ProcessingKind.ATTACHMENT_UPLOAD)[-1] is ProcessingStage.FAILED

    async def test_nothing_left_to_send_errors(self, make_orchestrator):
        store = MockFileStore(fail_names={"bad.png"})
        provider = make_text_provider("never")
        orch = make_orchestrator(provider)
        orch.uploader.store = store

        events, result = await _run(
            orch,
            TurnInput(attachments=[RawAttachment(name="bad.png", mime_type="image/png", data=b"x")]),
        )

        assert result.disposition is TurnDisposition.ERRORED
        assert result.error == NO_CONTENT_MESSAGE
        assert result.final_text == NO_CONTENT_MESSAGE
        assert events[-1].error == NO_CONTENT_MESSAGE
        assert provider.call_count == 0

    async def test_activation_timeout_is_dropped_when_text_remains(self, make_orchestrator):
        store = MockFileStore(states=[FILE_STATE_PROCESSING])
        provider = make_text_provider("ok")
        orch = make_orchestrator(provider)
        orch.uploader.store = store
        orch.uploader.retry_policy = RetryPolicy(max_attempts=2, delay_seconds=0)

        _events, result = await _run(
            orch,
            TurnInput(
                text="hello",
                attachments=[RawAttachment(name="slow.mp4", mime_type="video/mp4", data=b"x")],
            ),
        )

        assert store.status_calls == 2
        assert result.disposition is TurnDisposition.COMPLETED
        assert result.final_text == "ok"
        parts = provider.requests[0].contents[-1].parts
        assert [p.text for p in parts] == ["hello"]
        assert _stages(result, ProcessingKind.ATTACHMENT_UPLOAD)[-1] is ProcessingStage.FAILED

    async def test_activation_timeout_without_text_errors(self, make_orchestrator):
        store = MockFileStore(states=[FILE_STATE_PROCESSING])
        provider = make_text_provider("never")
        orch = make_orchestrator(provider)
        orch.uploader.store = store
        orch.uploader.retry_policy = RetryPolicy(max_attempts=2, delay_seconds=0)

        _events, result = await _run(
            orch,
            TurnInput(attachments=[RawAttachment(name="slow.mp4", mime_type="video/mp4", data=b"x")]),
        )

        assert store.status_calls == 2
        assert result.disposition is TurnDisposition.ERRORED
        assert result.error == NO_CONTENT_MESSAGE
        assert provider.call_count == 0

    async def test_empty_turn_errors(self, make_orchestrator):
        provider = make_text_provider("never")
        _events, result = await _run(make_orchestrator(provider), TurnInput(text="   "))
        assert result.error == NO_CONTENT_MESSAGE
        assert provider.call_count == 0


class TestToolCalls:

    async def test_http_tool_round_trip(self, make_orchestrator, http_requests):
        provider = MockProvider(responses=[
            make_tool_call_chunks("getWeather", {"city": "Paris"}),
            make_text_chunks("It is sunny in Paris."),
        ])
        orch = make_orchestrator(provider)

        events, result = await _run(orch, TurnInput(text="Weather in Paris?"))

        assert str(http_requests[0].url) == f"{WEATHER_URL}?city=Paris"
        assert provider.call_count == 2
        assert result.final_text == "It is sunny in Paris."

        second = provider.requests[1].contents
        model_entry, function_entry = second[-2], second[-1]
        assert model_entry.role == ROLE_MODEL
        assert model_entry.parts[-1].function_call.name == "getWeather"
        assert function_entry.role == ROLE_FUNCTION
        assert function_entry.parts[0].function_response == {
            "name": "getWeather",
            "response": {"temp": 21, "sky": "clear"},
        }

        assert [(s.kind, s.stage) for s in result.statuses] == [
            (ProcessingKind.TOOL_REQUEST, ProcessingStage.COMPLETED),
            (ProcessingKind.TOOL_EXECUTION, ProcessingStage.IN_PROGRESS),
            (ProcessingKind.TOOL_EXECUTION, ProcessingStage.COMPLETED),
            (ProcessingKind.TOOL_RESPONSE, ProcessingStage.AWAITING_MODEL),
        ]
        snapshots = [e.context_snapshot for e in events if e.context_snapshot]
        assert len(snapshots) == 1
        assert [e.role for e in snapshots[0]] == [ROLE_USER, ROLE_MODEL, ROLE_FUNCTION]
        assert [e.role for e in result.context_entries] == [ROLE_USER, ROLE_MODEL, ROLE_FUNCTION]

    async def test_text_before_tool_call_is_kept(self, make_orchestrator):
        provider = MockProvider(responses=[
            make_tool_call_chunks("echo", {"message": "x"}, content_prefix="Let me check. "),
            make_text_chunks("Done."),
        ])
        _events, result = await _run(make_orchestrator(provider), TurnInput(text="go"))
        assert result.final_text == "Let me check. Done."
        model_entry = provider.requests[1].contents[-2]
        assert model_entry.parts[0].text == "Let me check. "

    async def test_only_first_tool_call_runs(self, make_orchestrator):
        provider = MockProvider(responses=[
            make_tool_call_chunks(
                "echo",
                {"message": "first"},
                extra_calls=[ToolCall(name="echo", arguments={"message": "second"})],
            ),
            make_text_chunks("ok"),
        ])
        _events, result = await _run(make_orchestrator(provider), TurnInput(text="go"))

        function_entries = [e for e in result.context_entries if e.role == ROLE_FUNCTION]
        assert len(function_entries) == 1
        assert function_entries[0].parts[0].function_response["response"] == {"echo": "first"}

    async def test_unknown_tool_reports_and_continues(self, make_orchestrator):
        provider = MockProvider(responses=[
            make_tool_call_chunks("launchRocket", {}),
            make_text_chunks("I cannot do that."),
        ])
        _events, result = await _run(make_orchestrator(provider), TurnInput(text="launch"))

        assert result.disposition is TurnDisposition.COMPLETED
        assert result.final_text == "I cannot do that."
        assert ProcessingStage.FAILED in _stages(result, ProcessingKind.TOOL_EXECUTION)
        response = provider.requests[1].contents[-1].parts[0].function_response["response"]
        assert response["status"] == "error"
        assert "launchRocket" in response["error_message"]

    async def test_tool_http_error_continues(self, make_orchestrator):
        provider = MockProvider(responses=[
            make_tool_call_chunks("getWeather", {"city": "Atlantis"}),
            make_text_chunks("That city does not exist."),
        ])
        orch = make_orchestrator(provider, handler=lambda r: httpx.Response(500))
        _events, result = await _run(orch, TurnInput(text="weather?"))

        assert result.disposition is TurnDisposition.COMPLETED
        response = provider.requests[1].contents[-1].parts[0].function_response["response"]
        assert "HTTP error: 500" in response["error_message"]

    async def test_direct_file_is_attached_for_the_model(self, make_orchestrator, file_store):
        def pdf_handler(request):
            return httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"})

        provider = MockProvider(responses=[
            make_tool_call_chunks("getReport", {}),
            make_text_chunks("The report says revenue grew."),
        ])
        orch = make_orchestrator(provider, handler=pdf_handler)

        events, result = await _run(orch, TurnInput(text="Summarize the report"))

        assert len(result.promoted_attachments) == 1
        assert result.promoted_attachments[0].name == "q3-report.pdf"
        assert any(e.promoted_attachments for e in events)

        contents = provider.requests[1].contents
        follow_up = contents[-1]
        assert follow_up.role == ROLE_USER
        assert follow_up.parts[0].file.mime_type == "application/pdf"
        assert follow_up.parts[1].text == (
            "File 'q3-report.pdf' returned by function 'getReport' is attached. "
            "Analyze it to continue."
        )
        assert contents[-2].role == ROLE_FUNCTION
        assert contents[-2].parts[0].function_response["response"]["status"] == "success"
        assert _stages(result, ProcessingKind.DOWNSTREAM_FILE_PROCESSING)[-1] is ProcessingStage.AWAITING_MODEL

    async def test_tool_round_limit(self, make_orchestrator):
        provider = MockProvider(responses=[
            make_tool_call_chunks("echo", {"message": "again"}, content_prefix="Working. "),
        ])
        orch = make_orchestrator(provider, max_tool_rounds=2)

        _events, result = await _run(orch, TurnInput(text="loop"))

        assert provider.call_count == 3
        assert result.disposition is TurnDisposition.COMPLETED
        assert result.final_text == "Working. " * 3
        assert len(_stages(result, ProcessingKind.TOOL_REQUEST)) == 2


class TestMemoryDirectives:

    async def test_directive_is_stripped_and_reported(self, make_orchestrator):
        provider = make_text_provider('Nice to meet you, Ana! [MEMORIZE: "User\'s name is Ana"]')
        events, result = await _run(make_orchestrator(provider), TurnInput(text="I'm Ana"))

        assert result.final_text == "Nice to meet you, Ana!"
        assert len(result.memory_operations) == 1
        op = result.memory_operations[0]
        assert op.action is MemoryAction.CREATE
        assert op.content == "User's name is Ana"
        assert events[-1].memory_operations == result.memory_operations

    async def test_incognito_discards_operations_and_memory_tools(self, make_orchestrator):
        provider = make_text_provider('Hi Ana. [MEMORIZE: "name is Ana"]')
        _events, result = await _run(
            make_orchestrator(provider), TurnInput(text="I'm Ana", incognito=True)
        )

        assert result.final_text == "Hi Ana."
        assert result.memory_operations == []
        names = [d["name"] for d in provider.requests[0].tools]
        assert "create_memory" not in names


class TestErrors:

    async def test_provider_error_is_classified(self, make_orchestrator):
        provider = MockProvider(error=QuotaExceededError("Resource exhausted"))
        events, result = await _run(make_orchestrator(provider), TurnInput(text="hi"))

        assert result.disposition is TurnDisposition.ERRORED
        assert result.error == "Quota exceeded: Resource exhausted"
        assert result.final_text == result.error
        assert events[-1].error == result.error

    async def test_error_after_partial_text_keeps_the_text(self, make_orchestrator):
        class PartialProvider(MockProvider):
            async def stream(self, request):
                self.call_count += 1
                yield StreamChunk(delta="Partial answer")
                raise ProviderError("connection reset")

        _events, result = await _run(make_orchestrator(PartialProvider()), TurnInput(text="hi"))

        assert result.disposition is TurnDisposition.ERRORED
        assert result.error == "provider error: connection reset"
        assert result.final_text == "Partial answer\n\nprovider error: connection reset"


class TestCancellation:

    async def test_cancel_before_start(self, make_orchestrator, file_store):
        provider = make_text_provider("never")
        orch = make_orchestrator(provider)
        token = CancelToken()
        token.cancel()

        events, result = await _run(
            orch,
            TurnInput(
                text="hi",
                attachments=[RawAttachment(name="a.png", mime_type="image/png", data=b"x")],
            ),
            cancel=token,
        )

        assert result.aborted
        assert result.error is None
        assert result.final_text == ""
        assert provider.call_count == 0
        assert file_store.uploads == []
        assert len(events) == 1

    async def test_cancel_mid_stream_keeps_received_text(self, make_orchestrator):
        provider = MockProvider(
            responses=[make_text_chunks("one two three four")],
            hang_after=2,
        )
        orch = make_orchestrator(provider)

        stream = orch.run(TurnInput(text="count"))
        events = []
        async for event in stream:
            events.append(event)
            if sum(1 for e in events if e.text_delta) == 2:
                stream.cancel()
        result = await stream.result()

        deltas = "".join(e.text_delta for e in events if e.text_delta)
        assert deltas == "one two "
        assert result.aborted
        assert result.final_text == "one two "
        assert result.error is None
        assert result.statuses == []
        assert events[-1].is_finished and events[-1].aborted
        assert provider.closed_streams == 1

    async def test_aclose_cancels_running_turn(self, make_orchestrator):
        provider = MockProvider(responses=[make_text_chunks("a b c")], hang_after=1)
        orch = make_orchestrator(provider)

        stream = orch.run(TurnInput(text="x"))
        await provider.chunks_sent.wait()
        await stream.aclose()

        result = await stream.result()
        assert result.aborted
        assert result.final_text == "a "

    async def test_run_to_completion(self, make_orchestrator):
        provider = make_text_provider("done")
        result = await make_orchestrator(provider).run_to_completion(TurnInput(text="hi"))
        assert result.final_text == "done"

    async def test_result_before_start_raises(self):
        stream = TurnStream(CancelToken())
        with pytest.raises(RuntimeError, match="turn not started"):
            await stream.result()

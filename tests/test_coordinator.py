"""Tests for the response coordinator state machine."""

from __future__ import annotations

import dataclasses
import json

import pytest

from reply_stream.coordinator import QUOTA_NOTICE, ResponseCoordinator, issue_reply
from reply_stream.errors import (
    QuotaExceededError,
    StreamDecodeError,
    TerminalStatusError,
    TransportError,
)
from reply_stream.events.bus import EventBus
from reply_stream.flags import InMemoryReasoningFlag
from reply_stream.transport import TransportResponse
from reply_stream.types import (
    DeltaEvent,
    EventType,
    PromptSegment,
    ReplyEvent,
    ReplyRequest,
    ReplyState,
)

# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """Return (or raise) one scripted step per ``send()``."""

    def __init__(self, *steps) -> None:
        self._steps = list(steps)
        self.requests: list[ReplyRequest] = []

    async def send(self, request: ReplyRequest) -> TransportResponse:
        self.requests.append(request)
        step = self._steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


async def _body(*chunks: bytes, error: Exception | None = None):
    for chunk in chunks:
        yield chunk
    if error is not None:
        raise error


def _record(content: str | None = None, reasoning: str | None = None, model: str | None = None) -> bytes:
    delta: dict = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning"] = reasoning
    payload: dict = {"choices": [{"delta": delta}]}
    if model:
        payload["model"] = model
    return f"data: {json.dumps(payload)}\n\n".encode()


_DONE = b"data: [DONE]\n\n"


def _stream(*chunks: bytes, error: Exception | None = None, status: int = 200) -> TransportResponse:
    return TransportResponse(
        status,
        {"content-type": "text/event-stream; charset=utf-8"},
        _body(*chunks, error=error),
    )


def _document(data: dict, status: int = 200) -> TransportResponse:
    return TransportResponse(
        status, {"content-type": "application/json"}, json.dumps(data).encode(),
    )


def _completion(content: str, model: str = "openai/gpt-4o-mini", reasoning: str | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if reasoning:
        message["reasoning"] = reasoning
    return {"model": model, "choices": [{"message": message, "finish_reason": "stop"}]}


@pytest.fixture
def request_() -> ReplyRequest:
    return ReplyRequest(
        conversation_id="conv-1",
        model="openai/gpt-4o-mini",
        segments=(PromptSegment("user", "hi"),),
        stream=True,
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


def _events(bus: EventBus, event_type: EventType) -> list[ReplyEvent]:
    return [e for e in bus.history if e.type is event_type]


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------

class TestSuccess:
    @pytest.mark.asyncio
    async def test_streaming_reply(self, request_: ReplyRequest, bus: EventBus):
        transport = ScriptedTransport(_stream(
            _record(reasoning="thinking…", model="openai/gpt-4o-mini-2024"),
            _record(content="Hello"),
            _record(content=" there"),
            _DONE,
        ))
        coordinator = ResponseCoordinator(transport, InMemoryReasoningFlag(), bus=bus)
        seen: list[DeltaEvent] = []

        result = await coordinator.issue_reply(request_, seen.append)

        assert result.content == "Hello there"
        assert result.reasoning == "thinking…"
        assert result.model == "openai/gpt-4o-mini-2024"
        assert result.streamed
        assert result.attempts == 1
        assert coordinator.history == [
            ReplyState.IDLE, ReplyState.REQUESTING, ReplyState.STREAMING, ReplyState.SETTLED,
        ]
        assert [d.content for d in seen if d.content] == ["Hello", " there"]
        assert len(_events(bus, EventType.REPLY_SETTLED)) == 1

    @pytest.mark.asyncio
    async def test_placeholder_mirrors_stream(self, request_: ReplyRequest):
        transport = ScriptedTransport(_stream(
            _record(content="a"), _record(reasoning="r"), _record(content="b"), _DONE,
        ))
        coordinator = ResponseCoordinator(transport, InMemoryReasoningFlag())
        lengths: list[int] = []

        def observe(delta: DeltaEvent) -> None:
            lengths.append(len(coordinator.placeholder.content))

        await coordinator.issue_reply(request_, observe)

        placeholder = coordinator.placeholder
        assert placeholder.conversation_id == "conv-1"
        assert placeholder.content == "ab"
        assert placeholder.reasoning == "r"
        assert not placeholder.streaming
        assert lengths == sorted(lengths)

    @pytest.mark.asyncio
    async def test_json_response_takes_non_streaming_branch(self, request_: ReplyRequest):
        transport = ScriptedTransport(_document(_completion("Plain", reasoning="why")))
        coordinator = ResponseCoordinator(transport, InMemoryReasoningFlag())

        result = await coordinator.issue_reply(request_)

        assert result.content == "Plain"
        assert result.reasoning == "why"
        assert not result.streamed
        assert ReplyState.NON_STREAMING in coordinator.history

    @pytest.mark.asyncio
    async def test_module_level_issue_reply(self, request_: ReplyRequest):
        transport = ScriptedTransport(_document(_completion("ok")))
        result = await issue_reply(request_, transport=transport, flags=InMemoryReasoningFlag())
        assert result.content == "ok"

    @pytest.mark.asyncio
    async def test_coordinator_is_single_use(self, request_: ReplyRequest):
        transport = ScriptedTransport(_document(_completion("ok")))
        coordinator = ResponseCoordinator(transport, InMemoryReasoningFlag())
        await coordinator.issue_reply(request_)
        with pytest.raises(RuntimeError):
            await coordinator.issue_reply(request_)


class TestEmptyReply:
    @pytest.mark.asyncio
    async def test_immediate_sentinel_yields_placeholder_text(self, request_: ReplyRequest):
        transport = ScriptedTransport(_stream(_DONE))
        result = await ResponseCoordinator(transport, InMemoryReasoningFlag()).issue_reply(request_)
        assert result.content == "(empty reply)"
        assert result.model == request_.model

    @pytest.mark.asyncio
    async def test_blank_document_content(self, request_: ReplyRequest):
        transport = ScriptedTransport(_document(_completion("   ")))
        coordinator = ResponseCoordinator(
            transport, InMemoryReasoningFlag(), empty_reply_text="(nothing)",
        )
        result = await coordinator.issue_reply(request_)
        assert result.content == "(nothing)"


# ---------------------------------------------------------------------------
# Quota-retry edge
# ---------------------------------------------------------------------------

class TestQuotaRetry:
    @pytest.mark.asyncio
    async def test_402_then_success(self, request_: ReplyRequest, bus: EventBus):
        flags = InMemoryReasoningFlag(True)
        request = dataclasses.replace(request_, reasoning=True)
        transport = ScriptedTransport(
            _document({"error": {"message": "Insufficient credits", "code": 402}}, status=402),
            _document(_completion("recovered")),
        )
        coordinator = ResponseCoordinator(transport, flags, bus=bus)

        result = await coordinator.issue_reply(request)

        assert result.content == "recovered"
        assert flags.get() is False
        notices = _events(bus, EventType.NOTICE)
        assert len(notices) == 1
        assert notices[0].data["message"] == QUOTA_NOTICE
        assert transport.requests[0].reasoning is True
        assert transport.requests[1].reasoning is False
        assert transport.requests[1].retryable is False
        assert coordinator.quota_retries == 1
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_second_402_is_terminal(self, request_: ReplyRequest, bus: EventBus):
        flags = InMemoryReasoningFlag(True)
        request = dataclasses.replace(request_, reasoning=True)
        transport = ScriptedTransport(
            _document({"error": "quota"}, status=402),
            _document({"error": "still no quota"}, status=402),
        )
        coordinator = ResponseCoordinator(transport, flags, bus=bus)

        with pytest.raises(QuotaExceededError) as exc_info:
            await coordinator.issue_reply(request)

        assert exc_info.value.status_code == 402
        assert exc_info.value.detail == "still no quota"
        assert len(transport.requests) == 2
        assert len(_events(bus, EventType.NOTICE)) == 1
        assert coordinator.state is ReplyState.FAILED

    @pytest.mark.asyncio
    async def test_stream_failure_after_quota_retry_is_surfaced(
        self, request_: ReplyRequest, bus: EventBus,
    ):
        request = dataclasses.replace(request_, reasoning=True)
        transport = ScriptedTransport(
            _document({"error": "quota"}, status=402),
            _stream(_record(content="half"), error=TransportError("reset")),
            _document(_completion("never requested")),
        )
        coordinator = ResponseCoordinator(transport, InMemoryReasoningFlag(True), bus=bus)

        with pytest.raises(TransportError, match="reset"):
            await coordinator.issue_reply(request)

        assert len(transport.requests) == 2
        assert coordinator.attempts == 2
        assert coordinator.fallbacks == 0
        assert _events(bus, EventType.REPLY_FALLBACK) == []
        assert coordinator.state is ReplyState.FAILED

    @pytest.mark.asyncio
    async def test_402_on_fallback_is_terminal(self, request_: ReplyRequest):
        request = dataclasses.replace(request_, reasoning=True)
        transport = ScriptedTransport(
            _stream(error=TransportError("reset")),
            _document({"error": "quota"}, status=402),
        )
        flags = InMemoryReasoningFlag(True)

        with pytest.raises(QuotaExceededError):
            await ResponseCoordinator(transport, flags).issue_reply(request)

        assert len(transport.requests) == 2
        assert flags.get() is True

    @pytest.mark.asyncio
    async def test_402_without_reasoning_not_retried(self, request_: ReplyRequest, bus: EventBus):
        flags = InMemoryReasoningFlag(False)
        transport = ScriptedTransport(_document({"error": "quota"}, status=402))

        with pytest.raises(QuotaExceededError):
            await ResponseCoordinator(transport, flags, bus=bus).issue_reply(request_)

        assert len(transport.requests) == 1
        assert _events(bus, EventType.NOTICE) == []

    @pytest.mark.asyncio
    async def test_streamed_402_body_is_drained(self, request_: ReplyRequest):
        drained = []

        async def error_body():
            yield b'{"error": "quota"}'
            drained.append(True)

        request = dataclasses.replace(request_, reasoning=True)
        transport = ScriptedTransport(
            TransportResponse(402, {"content-type": "application/json"}, error_body()),
            _stream(_record(content="fine"), _DONE),
        )
        result = await ResponseCoordinator(transport, InMemoryReasoningFlag(True)).issue_reply(request)
        assert result.content == "fine"
        assert drained == [True]


# ---------------------------------------------------------------------------
# Stream fallback edge
# ---------------------------------------------------------------------------

class TestStreamFallback:
    @pytest.mark.asyncio
    async def test_mid_stream_error_falls_back_without_merging(
        self, request_: ReplyRequest, bus: EventBus,
    ):
        transport = ScriptedTransport(
            _stream(
                _record(content="Partial "),
                _record(content="answer"),
                error=TransportError("connection reset"),
            ),
            _document(_completion("Complete answer from the document")),
        )
        coordinator = ResponseCoordinator(transport, InMemoryReasoningFlag(), bus=bus)
        seen: list[DeltaEvent] = []

        result = await coordinator.issue_reply(request_, seen.append)

        assert result.content == "Complete answer from the document"
        assert not result.streamed
        assert [d.content for d in seen] == ["Partial ", "answer"]
        assert transport.requests[0].stream is True
        assert transport.requests[1].stream is False
        fallback = _events(bus, EventType.REPLY_FALLBACK)
        assert len(fallback) == 1
        assert fallback[0].data["discarded_chars"] == len("Partial answer")
        assert coordinator.history == [
            ReplyState.IDLE,
            ReplyState.REQUESTING, ReplyState.STREAMING,
            ReplyState.REQUESTING, ReplyState.NON_STREAMING,
            ReplyState.SETTLED,
        ]

    @pytest.mark.asyncio
    async def test_connect_error_on_streaming_request_falls_back(self, request_: ReplyRequest):
        transport = ScriptedTransport(
            TransportError("timed out"),
            _document(_completion("late but fine")),
        )
        result = await ResponseCoordinator(transport, InMemoryReasoningFlag()).issue_reply(request_)
        assert result.content == "late but fine"
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_invalid_utf8_in_stream_falls_back(self, request_: ReplyRequest):
        transport = ScriptedTransport(
            _stream(_record(content="ok"), b"data: \xff\n\n"),
            _document(_completion("clean")),
        )
        result = await ResponseCoordinator(transport, InMemoryReasoningFlag()).issue_reply(request_)
        assert result.content == "clean"

    @pytest.mark.asyncio
    async def test_fallback_failure_is_surfaced(self, request_: ReplyRequest, bus: EventBus):
        transport = ScriptedTransport(
            _stream(_record(content="x"), error=TransportError("reset")),
            TransportError("still down"),
        )
        coordinator = ResponseCoordinator(transport, InMemoryReasoningFlag(), bus=bus)

        with pytest.raises(TransportError, match="still down"):
            await coordinator.issue_reply(request_)

        assert len(transport.requests) == 2
        assert coordinator.state is ReplyState.FAILED
        assert coordinator.fallbacks == 1
        assert len(_events(bus, EventType.REPLY_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_non_streaming_request_does_not_fall_back(self, request_: ReplyRequest):
        transport = ScriptedTransport(TransportError("refused"))
        with pytest.raises(TransportError):
            await ResponseCoordinator(transport, InMemoryReasoningFlag()).issue_reply(
                request_.without_streaming(),
            )
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_event_stream_answer_to_non_streaming_request(self, request_: ReplyRequest):
        transport = ScriptedTransport(
            TransportResponse(
                200, {"content-type": "text/event-stream"},
                _record(content="hi", model="x/m") + _DONE,
            ),
        )
        coordinator = ResponseCoordinator(transport, InMemoryReasoningFlag())

        result = await coordinator.issue_reply(request_.without_streaming())

        assert result.content == "hi"
        assert result.model == "x/m"
        assert coordinator.state is ReplyState.SETTLED

    @pytest.mark.asyncio
    async def test_fallback_answered_with_event_stream(self, request_: ReplyRequest):
        transport = ScriptedTransport(
            _stream(_record(content="par"), error=TransportError("reset")),
            TransportResponse(
                200, {"content-type": "text/event-stream; charset=utf-8"},
                _record(content="whole") + _DONE,
            ),
        )
        result = await ResponseCoordinator(transport, InMemoryReasoningFlag()).issue_reply(request_)
        assert result.content == "whole"
        assert transport.requests[1].stream is False

    @pytest.mark.asyncio
    async def test_unparsable_document_is_decode_error(self, request_: ReplyRequest):
        transport = ScriptedTransport(
            TransportResponse(200, {"content-type": "application/json"}, b"<html>bad gateway"),
        )
        with pytest.raises(StreamDecodeError):
            await ResponseCoordinator(transport, InMemoryReasoningFlag()).issue_reply(
                request_.without_streaming(),
            )


# ---------------------------------------------------------------------------
# Terminal status errors
# ---------------------------------------------------------------------------

class TestTerminalStatus:
    @pytest.mark.asyncio
    async def test_server_error_surfaced_with_detail(self, request_: ReplyRequest):
        transport = ScriptedTransport(
            _document({"error": {"message": "upstream exploded"}}, status=502),
        )
        coordinator = ResponseCoordinator(transport, InMemoryReasoningFlag())

        with pytest.raises(TerminalStatusError) as exc_info:
            await coordinator.issue_reply(request_)

        assert exc_info.value.status_code == 502
        assert exc_info.value.detail == "upstream exploded"
        assert "502" in str(exc_info.value)
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_plain_text_error_body(self, request_: ReplyRequest):
        transport = ScriptedTransport(
            TransportResponse(401, {"content-type": "text/plain"}, b"invalid token"),
        )
        with pytest.raises(TerminalStatusError) as exc_info:
            await ResponseCoordinator(transport, InMemoryReasoningFlag()).issue_reply(request_)
        assert exc_info.value.detail == "invalid token"
        assert not isinstance(exc_info.value, QuotaExceededError)

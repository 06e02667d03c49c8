"""Response coordinator: one logical reply, at most two physical attempts.

State machine::

    IDLE -> REQUESTING -> STREAMING | NON_STREAMING -> SETTLED | FAILED

with two edges back into ``REQUESTING``.  Each is capped at one by its own
counter, and together they share a budget of two attempts, so at most one
recovery happens per reply:

- quota retry: HTTP 402 on a request with reasoning on.  The reasoning flag
  is turned off, one notice is surfaced and the request is reissued without
  reasoning (and marked non-retryable).
- stream fallback: transport or decode failure on a streaming request.  The
  request is reissued non-streaming and its document is authoritative; the
  fragments already handed to the observer are superseded, not merged.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from reply_stream.config import EMPTY_REPLY_TEXT
from reply_stream.errors import (
    QuotaExceededError,
    ReplyError,
    StreamDecodeError,
    TerminalStatusError,
    TransportError,
)
from reply_stream.events.bus import EventBus
from reply_stream.flags import ReasoningFlag
from reply_stream.stream.accumulator import DeltaObserver, StreamAccumulator
from reply_stream.stream.deltas import DeltaExtractor
from reply_stream.transport import Transport, TransportResponse
from reply_stream.types import (
    DeltaEvent,
    EventType,
    PlaceholderMessage,
    ReplyEvent,
    ReplyRequest,
    ReplyResult,
    ReplyState,
)

_logger = logging.getLogger(__name__)

QUOTA_STATUS = 402
MAX_QUOTA_RETRIES = 1
MAX_FALLBACKS = 1
MAX_ATTEMPTS = 2

QUOTA_NOTICE = (
    "Extended reasoning is not available on the current plan. "
    "It has been turned off and the reply was retried without it."
)

_RECOVERABLE = (TransportError, StreamDecodeError)


def new_placeholder_id() -> str:
    return f"pending-{uuid.uuid4().hex}"


def _error_detail(raw: bytes, limit: int = 500) -> str:
    """Best-effort error message from an error response body."""
    text = raw.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text)
    except ValueError:
        return text[:limit]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            err = err.get("message")
        if isinstance(err, str) and err:
            return err[:limit]
    return text[:limit]


class ResponseCoordinator:
    """Produce one :class:`ReplyResult` for one :class:`ReplyRequest`.

    Single use: create a new coordinator per reply.  The coordinator owns
    the placeholder for the duration of the request; the observer only sees
    fragments.
    """

    def __init__(
        self,
        transport: Transport,
        flags: ReasoningFlag,
        bus: EventBus | None = None,
        extractor: DeltaExtractor | None = None,
        empty_reply_text: str = EMPTY_REPLY_TEXT,
        placeholder: PlaceholderMessage | None = None,
    ) -> None:
        self._transport = transport
        self._flags = flags
        self._bus = bus
        self._extractor = extractor or DeltaExtractor()
        self._accumulator = StreamAccumulator(self._extractor)
        self._empty_reply_text = empty_reply_text

        self.placeholder = placeholder
        self.state = ReplyState.IDLE
        self.history: list[ReplyState] = [ReplyState.IDLE]
        self.attempts = 0
        self.quota_retries = 0
        self.fallbacks = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def issue_reply(
        self,
        request: ReplyRequest,
        on_delta: DeltaObserver | None = None,
    ) -> ReplyResult:
        """Run the request to a result or a surfaced :class:`ReplyError`."""
        if self.state is not ReplyState.IDLE:
            raise RuntimeError("ResponseCoordinator instances are single-use")

        if self.placeholder is None:
            self.placeholder = PlaceholderMessage(
                id=new_placeholder_id(),
                conversation_id=request.conversation_id,
                model=request.model,
            )
        placeholder = self.placeholder

        def observe(delta: DeltaEvent) -> None:
            placeholder.apply(delta)
            if on_delta is not None:
                on_delta(delta)

        await self._emit(
            EventType.REPLY_REQUESTED,
            conversation_id=request.conversation_id,
            model=request.model,
            stream=request.stream,
            reasoning=request.reasoning,
        )

        current = request
        while True:
            self._enter(ReplyState.REQUESTING)
            self.attempts += 1
            try:
                response = await self._transport.send(current)
            except _RECOVERABLE as e:
                if self._can_fall_back(current):
                    current = await self._fall_back(current, e)
                    continue
                await self._fail(e)
                raise

            if response.status_code == QUOTA_STATUS and self._can_retry_quota(current):
                await self._discard(response)
                current = await self._retry_without_reasoning(current)
                continue

            if not response.ok:
                error = await self._status_error(response)
                await self._fail(error)
                raise error

            try:
                if response.is_event_stream:
                    self._enter(ReplyState.STREAMING)
                    outcome = await self._accumulator.run(response.body, observe)
                    content, reasoning, model = (
                        outcome.content, outcome.reasoning, outcome.model,
                    )
                else:
                    self._enter(ReplyState.NON_STREAMING)
                    delta = await self._read_document(response)
                    content, reasoning, model = (
                        delta.content, delta.reasoning, delta.model,
                    )
            except _RECOVERABLE as e:
                if self._can_fall_back(current):
                    current = await self._fall_back(current, e)
                    continue
                await self._fail(e)
                raise

            result = self._normalize(
                content, reasoning, model or current.model,
                streamed=self.state is ReplyState.STREAMING,
            )
            await self._settle(result)
            return result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _enter(self, state: ReplyState) -> None:
        _logger.debug("Reply state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _can_retry_quota(self, request: ReplyRequest) -> bool:
        return (
            request.reasoning
            and request.retryable
            and self.quota_retries < MAX_QUOTA_RETRIES
            and self.attempts < MAX_ATTEMPTS
        )

    def _can_fall_back(self, request: ReplyRequest) -> bool:
        return (
            request.stream
            and self.fallbacks < MAX_FALLBACKS
            and self.attempts < MAX_ATTEMPTS
        )

    async def _retry_without_reasoning(self, request: ReplyRequest) -> ReplyRequest:
        self.quota_retries += 1
        _logger.warning(
            "Quota exhausted for model %s with reasoning; retrying without it",
            request.model,
        )
        if self._flags.get():
            self._flags.set(False)
        await self._emit(EventType.REPLY_QUOTA_RETRY, model=request.model)
        if self._bus is not None:
            await self._bus.notify(QUOTA_NOTICE, reason="quota")
        return request.without_reasoning()

    async def _fall_back(self, request: ReplyRequest, error: ReplyError) -> ReplyRequest:
        self.fallbacks += 1
        discarded = len(self.placeholder.content) if self.placeholder else 0
        _logger.warning(
            "Streaming failed (%s); retrying without streaming, "
            "discarding %d streamed chars", error, discarded,
        )
        await self._emit(
            EventType.REPLY_FALLBACK,
            error=str(error),
            discarded_chars=discarded,
        )
        return request.without_streaming()

    async def _settle(self, result: ReplyResult) -> None:
        self._enter(ReplyState.SETTLED)
        if self.placeholder is not None:
            self.placeholder.streaming = False
        await self._emit(
            EventType.REPLY_SETTLED,
            model=result.model,
            streamed=result.streamed,
            attempts=result.attempts,
            chars=len(result.content),
        )

    async def _fail(self, error: Exception) -> None:
        self._enter(ReplyState.FAILED)
        if self.placeholder is not None:
            self.placeholder.streaming = False
        _logger.error("Reply failed after %d attempt(s): %s", self.attempts, error)
        await self._emit(
            EventType.REPLY_FAILED,
            error=str(error),
            code=getattr(error, "code", type(error).__name__),
            attempts=self.attempts,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _read_document(self, response: TransportResponse) -> DeltaEvent:
        raw = await response.read()
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise StreamDecodeError(f"Unparsable response document: {e}") from e
        if not isinstance(data, dict):
            raise StreamDecodeError("Response document is not a JSON object")
        return self._extractor.extract_document(data)

    async def _status_error(self, response: TransportResponse) -> TerminalStatusError:
        detail = await self._discard(response)
        if response.status_code == QUOTA_STATUS:
            return QuotaExceededError(response.status_code, detail)
        return TerminalStatusError(response.status_code, detail)

    async def _discard(self, response: TransportResponse) -> str:
        """Drain an error response so the connection is released."""
        try:
            raw = await response.read()
        except ReplyError as e:
            _logger.debug("Could not read error body (HTTP %d): %s", response.status_code, e)
            return ""
        return _error_detail(raw)

    def _normalize(
        self,
        content: str | None,
        reasoning: str | None,
        model: str,
        streamed: bool,
    ) -> ReplyResult:
        if not content or not content.strip():
            content = self._empty_reply_text
        return ReplyResult(
            content=content,
            reasoning=reasoning or "",
            model=model,
            streamed=streamed,
            attempts=self.attempts,
        )

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._bus is not None:
            await self._bus.emit(ReplyEvent(type=event_type, data=data))


async def issue_reply(
    request: ReplyRequest,
    on_delta: DeltaObserver | None = None,
    *,
    transport: Transport,
    flags: ReasoningFlag,
    bus: EventBus | None = None,
) -> ReplyResult:
    """One-shot convenience around :class:`ResponseCoordinator`."""
    coordinator = ResponseCoordinator(transport, flags, bus=bus)
    return await coordinator.issue_reply(request, on_delta)

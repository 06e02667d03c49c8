"""Read loop over an event-stream body."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Union

from reply_stream.types import DeltaEvent
from reply_stream.stream.deltas import DeltaExtractor
from reply_stream.stream.frames import FrameDecoder

_logger = logging.getLogger(__name__)

DeltaObserver = Callable[[DeltaEvent], None]


async def _one_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


@dataclass
class StreamOutcome:
    """Cumulative result of one streamed attempt."""

    content: str = ""
    reasoning: str = ""
    model: str | None = None
    finished: bool = False  # sentinel seen
    records: int = 0
    skipped: int = 0


class StreamAccumulator:
    """Drive the read loop: frame-decode, extract, total, notify.

    The observer receives only the fragment of each non-empty delta and is
    called synchronously inside the loop, so it must not block.  Transport
    and decode errors propagate to the caller; the body is closed however
    the loop ends.
    """

    def __init__(self, extractor: DeltaExtractor | None = None) -> None:
        self._extractor = extractor or DeltaExtractor()

    async def run(
        self,
        body: Union[bytes, AsyncIterator[bytes]],
        on_delta: DeltaObserver | None = None,
    ) -> StreamOutcome:
        if isinstance(body, (bytes, bytearray)):
            # Buffered body that still carries event-stream framing
            body = _one_chunk(bytes(body))
        decoder = FrameDecoder()
        outcome = StreamOutcome()
        content_parts: list[str] = []
        reasoning_parts: list[str] = []

        try:
            async for chunk in body:
                for payload in decoder.feed(chunk):
                    self._consume(payload, outcome, content_parts, reasoning_parts, on_delta)
                if decoder.finished:
                    break
            else:
                decoder.flush()
        finally:
            aclose = getattr(body, "aclose", None)
            if aclose is not None:
                await aclose()

        outcome.finished = decoder.finished
        outcome.content = "".join(content_parts)
        outcome.reasoning = "".join(reasoning_parts)
        _logger.debug(
            "Stream ended (sentinel=%s, records=%d, skipped=%d, chars=%d)",
            outcome.finished, outcome.records, outcome.skipped, len(outcome.content),
        )
        return outcome

    def _consume(
        self,
        payload: str,
        outcome: StreamOutcome,
        content_parts: list[str],
        reasoning_parts: list[str],
        on_delta: DeltaObserver | None,
    ) -> None:
        outcome.records += 1
        delta = self._extractor.extract(payload)
        if delta is None:
            outcome.skipped += 1
            return
        if delta.model:
            outcome.model = delta.model
        if delta.is_empty:
            return
        if delta.content:
            content_parts.append(delta.content)
        if delta.reasoning:
            reasoning_parts.append(delta.reasoning)
        if on_delta is not None:
            on_delta(delta)

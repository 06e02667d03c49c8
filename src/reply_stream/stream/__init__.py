"""Event-stream decoding for reply-stream."""

from reply_stream.stream.accumulator import StreamAccumulator, StreamOutcome
from reply_stream.stream.deltas import DeltaExtractor, ExtractionRule
from reply_stream.stream.frames import SENTINEL, FrameDecoder

__all__ = [
    "DeltaExtractor",
    "ExtractionRule",
    "FrameDecoder",
    "SENTINEL",
    "StreamAccumulator",
    "StreamOutcome",
]

"""Incremental chat-reply streaming client."""

from reply_stream.coordinator import ResponseCoordinator, issue_reply
from reply_stream.errors import (
    QuotaExceededError,
    ReplyError,
    StreamDecodeError,
    TerminalStatusError,
    TransportError,
)
from reply_stream.transcript import Transcript, TranscriptReconciler
from reply_stream.types import DeltaEvent, PromptSegment, ReplyRequest, ReplyResult

__version__ = "0.1.0"

__all__ = [
    "DeltaEvent",
    "PromptSegment",
    "QuotaExceededError",
    "ReplyError",
    "ReplyRequest",
    "ReplyResult",
    "ResponseCoordinator",
    "StreamDecodeError",
    "TerminalStatusError",
    "Transcript",
    "TranscriptReconciler",
    "TransportError",
    "issue_reply",
]

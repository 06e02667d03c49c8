"""Shared data types for reply-stream."""

from __future__ import annotations

import dataclasses
import enum
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Model ids that take an explicit extended-thinking budget
_THINKING_BUDGET_MODELS = re.compile(r"claude|anthropic", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Request / response types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PromptSegment:
    """One role-tagged segment of the prompt."""

    role: str  # system, user, assistant
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ReplyRequest:
    """Everything needed for one reply.

    Immutable once issued: the retry edges build a new request through
    :meth:`without_reasoning` / :meth:`without_streaming`.
    """

    conversation_id: str
    model: str
    segments: tuple[PromptSegment, ...]
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    reasoning: bool = False
    stream: bool = True
    retryable: bool = True

    def without_reasoning(self) -> ReplyRequest:
        """Equivalent request with reasoning off, marked non-retryable."""
        return dataclasses.replace(self, reasoning=False, retryable=False)

    def without_streaming(self) -> ReplyRequest:
        return dataclasses.replace(self, stream=False)

    def to_payload(self) -> dict[str, Any]:
        """Build the chat-completion request body."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [s.to_message() for s in self.segments],
            "stream": self.stream,
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.top_p is not None:
            payload["top_p"] = self.top_p
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.reasoning:
            payload["reasoning"] = {"effort": "medium"}
            if _THINKING_BUDGET_MODELS.search(self.model):
                budget = self.max_tokens if self.max_tokens is not None else 1024
                payload["thinking"] = {
                    "type": "enabled",
                    "budget_tokens": max(256, min(1024, budget)),
                }
        return payload


@dataclass(frozen=True)
class DeltaEvent:
    """An incremental fragment of model output."""

    content: str | None = None
    reasoning: str | None = None
    model: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.reasoning


@dataclass(frozen=True)
class ReplyResult:
    """Final outcome of one logical reply."""

    content: str
    reasoning: str = ""
    model: str = ""
    streamed: bool = False
    attempts: int = 1


# ---------------------------------------------------------------------------
# Transcript types
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PlaceholderMessage:
    """In-flight transcript entry mirrored live from deltas.

    ``content`` and ``reasoning`` only ever grow while the request runs.
    """

    id: str
    conversation_id: str
    model: str = ""
    content: str = ""
    reasoning: str = ""
    streaming: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def apply(self, delta: DeltaEvent) -> None:
        if delta.content:
            self.content += delta.content
        if delta.reasoning:
            self.reasoning += delta.reasoning
        if delta.model:
            self.model = delta.model


@dataclass
class ChatMessage:
    """Durable transcript record."""

    id: str
    conversation_id: str
    role: str  # user, assistant, system
    content: str
    created_at: datetime
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def reasoning(self) -> str:
        return self.meta.get("reasoning", "") or ""

    def to_segment(self) -> PromptSegment:
        return PromptSegment(role=self.role, content=self.content)


# ---------------------------------------------------------------------------
# Coordinator state and events
# ---------------------------------------------------------------------------

class ReplyState(enum.Enum):
    """Lifecycle states of the response coordinator."""

    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    NON_STREAMING = "non_streaming"
    SETTLED = "settled"
    FAILED = "failed"


class EventType(enum.Enum):
    """Event types emitted while a reply is produced."""

    REPLY_REQUESTED = "reply.requested"
    REPLY_QUOTA_RETRY = "reply.quota_retry"
    REPLY_FALLBACK = "reply.fallback"
    REPLY_SETTLED = "reply.settled"
    REPLY_FAILED = "reply.failed"

    # User-visible notices
    NOTICE = "notice"


@dataclass
class ReplyEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

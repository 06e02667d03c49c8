"""Conversation session: user message -> placeholder -> reply -> transcript."""

from __future__ import annotations

import logging
from typing import Any

from reply_stream.config import ReplyStreamConfig, resolve_model_id
from reply_stream.coordinator import ResponseCoordinator, new_placeholder_id
from reply_stream.events.bus import EventBus
from reply_stream.flags import ReasoningFlag
from reply_stream.stream.accumulator import DeltaObserver
from reply_stream.transcript import Transcript, TranscriptReconciler, TranscriptStore
from reply_stream.transport import Transport
from reply_stream.types import ChatMessage, PlaceholderMessage, PromptSegment, ReplyRequest

_logger = logging.getLogger(__name__)


class ConversationSession:
    """One conversation and the collaborators needed to reply in it.

    Replies are issued one at a time; the caller disables its send action
    while :meth:`send` is running.
    """

    def __init__(
        self,
        conversation_id: str,
        transport: Transport,
        flags: ReasoningFlag,
        store: TranscriptStore,
        config: ReplyStreamConfig | None = None,
        bus: EventBus | None = None,
        reconciler: TranscriptReconciler | None = None,
        model: str | None = None,
    ) -> None:
        self.config = config or ReplyStreamConfig()
        self.transport = transport
        self.flags = flags
        self.bus = bus
        self.model = model
        self.reconciler = reconciler or TranscriptReconciler(store)
        self.transcript = Transcript(
            conversation_id, store.list_messages(conversation_id),
        )

    @property
    def conversation_id(self) -> str:
        return self.transcript.conversation_id

    def params(self) -> dict[str, Any]:
        defaults = self.config.defaults
        return {
            k: v for k, v in (
                ("temperature", defaults.temperature),
                ("top_p", defaults.top_p),
                ("max_tokens", defaults.max_tokens),
            )
            if v is not None
        }

    def build_request(
        self,
        model: str | None = None,
        stream: bool | None = None,
    ) -> ReplyRequest:
        """Request for the next assistant turn from the current transcript."""
        defaults = self.config.defaults
        segments: list[PromptSegment] = []
        if defaults.system_prompt.strip():
            segments.append(PromptSegment("system", defaults.system_prompt.strip()))
        segments.extend(self.transcript.to_segments(defaults.history_window))
        return ReplyRequest(
            conversation_id=self.conversation_id,
            model=resolve_model_id(self.config.endpoint.default_model, self.model, model),
            segments=tuple(segments),
            temperature=defaults.temperature,
            top_p=defaults.top_p,
            max_tokens=defaults.max_tokens,
            reasoning=self.flags.get(),
            stream=defaults.stream if stream is None else stream,
        )

    async def send(
        self,
        content: str,
        on_delta: DeltaObserver | None = None,
        *,
        model: str | None = None,
        stream: bool | None = None,
    ) -> ChatMessage:
        """Append the user's message and produce the assistant reply."""
        self.reconciler.append_user_message(self.transcript, content)
        request = self.build_request(model=model, stream=stream)

        placeholder = PlaceholderMessage(
            id=new_placeholder_id(),
            conversation_id=self.conversation_id,
            model=request.model,
        )
        self.transcript.add_placeholder(placeholder)
        coordinator = ResponseCoordinator(
            self.transport,
            self.flags,
            bus=self.bus,
            empty_reply_text=self.config.defaults.empty_reply_text,
            placeholder=placeholder,
        )
        try:
            result = await coordinator.issue_reply(request, on_delta)
            return self.reconciler.reconcile(
                self.transcript, placeholder, result, params=self.params(),
            )
        except BaseException:
            # The placeholder must not outlive an unfinished reply
            self.transcript.remove(placeholder.id)
            raise

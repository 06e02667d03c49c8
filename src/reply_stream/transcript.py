"""Conversation transcript, persistence and placeholder reconciliation."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Protocol, Union

from reply_stream.types import (
    ChatMessage,
    PlaceholderMessage,
    PromptSegment,
    ReplyResult,
    utcnow,
)

_logger = logging.getLogger(__name__)

# Smallest step representable by datetime
_TICK = timedelta(microseconds=1)

Entry = Union[ChatMessage, PlaceholderMessage]
Clock = Callable[[], datetime]


def new_message_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# In-memory transcript view
# ---------------------------------------------------------------------------

class Transcript:
    """Ordered entries of one conversation, placeholders included."""

    def __init__(
        self,
        conversation_id: str,
        messages: list[ChatMessage] | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self._entries: list[Entry] = list(messages or [])

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[Entry]:
        return list(self._entries)

    @property
    def messages(self) -> list[ChatMessage]:
        """Finalized messages only."""
        return [e for e in self._entries if isinstance(e, ChatMessage)]

    @property
    def placeholders(self) -> list[PlaceholderMessage]:
        return [e for e in self._entries if isinstance(e, PlaceholderMessage)]

    def latest_timestamp(self) -> datetime | None:
        stamps = [m.created_at for m in self.messages]
        return max(stamps) if stamps else None

    def add_message(self, message: ChatMessage) -> None:
        self._entries.append(message)

    def add_placeholder(self, placeholder: PlaceholderMessage) -> None:
        self._entries.append(placeholder)

    def index_of(self, entry_id: str) -> int:
        for idx, entry in enumerate(self._entries):
            if entry.id == entry_id:
                return idx
        raise KeyError(entry_id)

    def replace(self, entry_id: str, message: ChatMessage) -> None:
        """Put *message* where *entry_id* was."""
        self._entries[self.index_of(entry_id)] = message

    def remove(self, entry_id: str) -> bool:
        try:
            del self._entries[self.index_of(entry_id)]
        except KeyError:
            return False
        return True

    def to_segments(self, window: int = 0) -> list[PromptSegment]:
        """Finalized messages as prompt segments, the last *window* only."""
        messages = self.messages
        if window > 0:
            messages = messages[-window:]
        return [m.to_segment() for m in messages]


# ---------------------------------------------------------------------------
# Persistence collaborators
# ---------------------------------------------------------------------------

class TranscriptStore(Protocol):
    def append(self, conversation_id: str, message: ChatMessage) -> None:
        ...

    def list_messages(self, conversation_id: str) -> list[ChatMessage]:
        ...


class InMemoryTranscriptStore:
    def __init__(self) -> None:
        self._messages: dict[str, list[ChatMessage]] = {}

    def append(self, conversation_id: str, message: ChatMessage) -> None:
        self._messages.setdefault(conversation_id, []).append(message)

    def list_messages(self, conversation_id: str) -> list[ChatMessage]:
        return sorted(
            self._messages.get(conversation_id, []), key=lambda m: m.created_at,
        )


class SqliteTranscriptStore:
    """SQLite-backed transcript store."""

    def __init__(self, db_path: str = "~/.reply_stream/transcripts.db") -> None:
        if db_path == ":memory:":
            self.db_path = None
            self._conn = sqlite3.connect(":memory:")
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                meta TEXT DEFAULT '{}',
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_msg_conversation
                ON messages(conversation_id, created_at);
        """)
        self._conn.commit()

    def append(self, conversation_id: str, message: ChatMessage) -> None:
        self._conn.execute(
            "INSERT INTO messages (id, conversation_id, role, content, meta, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                message.id,
                conversation_id,
                message.role,
                message.content,
                json.dumps(message.meta, ensure_ascii=False),
                message.created_at.isoformat(timespec="microseconds"),
            ),
        )
        self._conn.commit()

    def list_messages(self, conversation_id: str) -> list[ChatMessage]:
        rows = self._conn.execute(
            "SELECT id, conversation_id, role, content, meta, created_at "
            "FROM messages WHERE conversation_id = ? ORDER BY created_at",
            (conversation_id,),
        ).fetchall()
        return [
            ChatMessage(
                id=row[0],
                conversation_id=row[1],
                role=row[2],
                content=row[3],
                meta=json.loads(row[4] or "{}"),
                created_at=datetime.fromisoformat(row[5]),
            )
            for row in rows
        ]

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class TranscriptReconciler:
    """Turn a placeholder plus a result into a durable, ordered message."""

    def __init__(
        self,
        store: TranscriptStore,
        clock: Clock = utcnow,
        provider: str = "openrouter",
    ) -> None:
        self._store = store
        self._clock = clock
        self._provider = provider

    def next_timestamp(self, transcript: Transcript) -> datetime:
        """Wall clock, unless it would not strictly follow the latest message."""
        now = self._clock()
        latest = transcript.latest_timestamp()
        if latest is not None and now <= latest:
            return latest + _TICK
        return now

    def append_user_message(self, transcript: Transcript, content: str) -> ChatMessage:
        message = ChatMessage(
            id=new_message_id(),
            conversation_id=transcript.conversation_id,
            role="user",
            content=content,
            created_at=self.next_timestamp(transcript),
        )
        self._store.append(transcript.conversation_id, message)
        transcript.add_message(message)
        return message

    def reconcile(
        self,
        transcript: Transcript,
        placeholder: PlaceholderMessage,
        result: ReplyResult,
        params: dict[str, Any] | None = None,
    ) -> ChatMessage:
        """Persist the final reply and splice it in place of *placeholder*."""
        transcript.index_of(placeholder.id)  # KeyError before anything is stored
        meta: dict[str, Any] = {
            "provider": self._provider,
            "model": result.model,
            "streaming": result.streamed,
        }
        if result.reasoning:
            meta["reasoning"] = result.reasoning
        if params:
            meta["params"] = dict(params)

        message = ChatMessage(
            id=new_message_id(),
            conversation_id=placeholder.conversation_id,
            role="assistant",
            content=result.content,
            created_at=self.next_timestamp(transcript),
            meta=meta,
        )
        self._store.append(placeholder.conversation_id, message)
        transcript.replace(placeholder.id, message)
        _logger.debug(
            "Reconciled placeholder %s -> message %s at %s",
            placeholder.id, message.id, message.created_at.isoformat(),
        )
        return message

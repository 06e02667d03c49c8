"""Event bus for reply lifecycle events and user notices."""

from reply_stream.events.bus import EventBus

__all__ = ["EventBus"]

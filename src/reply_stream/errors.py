"""Error taxonomy for reply-stream.

Every error surfaced to callers derives from :class:`ReplyError` so the UI
layer can render one failure state.  Recovered failures (one stream
fallback, one quota retry) never reach the caller.
"""

from __future__ import annotations

from typing import Any


class ReplyError(Exception):
    """Base class.

    Attributes:
        code: machine-readable error code (e.g. ``"TRANSPORT"``).
        message: human-readable message.
        extra: additional details (status code, model, ...).
    """

    code = "REPLY_ERROR"

    def __init__(self, message: str, **extra: Any) -> None:
        self.message = message
        self.extra = extra
        super().__init__(message)


class TransportError(ReplyError):
    """Connection failure or timeout raised by the transport."""

    code = "TRANSPORT"


class StreamDecodeError(ReplyError):
    """Catastrophic decode failure (invalid UTF-8, unparsable document).

    A single malformed event record is not one of these: it is logged and
    skipped by the delta extractor.
    """

    code = "DECODE"


class TerminalStatusError(ReplyError):
    """The endpoint answered with a non-2xx status that is not recovered."""

    code = "STATUS"

    def __init__(self, status_code: int, detail: str = "", **extra: Any) -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, status_code=status_code, **extra)


class QuotaExceededError(TerminalStatusError):
    """HTTP 402 that could not be recovered by retrying without reasoning."""

    code = "QUOTA"


class ConfigError(ReplyError):
    """Invalid configuration file."""

    code = "CONFIG"

"""Server-sent event framing.

Turns arbitrarily split byte chunks into complete event payloads.  A record
is only emitted once its blank-line delimiter has arrived; partial UTF-8
sequences and partial records are buffered across calls.
"""

from __future__ import annotations

import codecs
import logging

from reply_stream.errors import StreamDecodeError

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
SENTINEL = "[DONE]"
_DELIMITER = "\n\n"


def extract_payload(record: str) -> str:
    """Join the ``data:`` lines of one record, prefixes stripped."""
    lines = [
        line[len(DATA_PREFIX):].lstrip()
        for line in record.split("\n")
        if line.startswith(DATA_PREFIX)
    ]
    return "\n".join(lines)


class FrameDecoder:
    """Incremental SSE decoder.

    ``feed()`` returns the payloads completed by the chunk.  Once the
    ``[DONE]`` sentinel is seen, :attr:`finished` is set and nothing further
    is emitted.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._after_cr = False
        self.finished = False

    def feed(self, chunk: bytes | str) -> list[str]:
        if self.finished:
            return []
        if isinstance(chunk, bytes):
            try:
                text = self._decoder.decode(chunk)
            except UnicodeDecodeError as e:
                raise StreamDecodeError(f"Invalid UTF-8 in event stream: {e}") from e
        else:
            text = chunk

        text = self._normalize(text)
        # Only the new text (plus one carried "\n") can hold a new delimiter
        start = max(len(self._buffer) - 1, 0)
        self._buffer += text

        payloads: list[str] = []
        while True:
            end = self._buffer.find(_DELIMITER, start)
            if end < 0:
                break
            block = self._buffer[:end]
            self._buffer = self._buffer[end + len(_DELIMITER):]
            start = 0
            record = block.strip()
            if not record:
                continue
            payload = extract_payload(record)
            if not payload:
                continue  # comment or keep-alive
            if payload == SENTINEL:
                self.finished = True
                self._buffer = ""
                break
            payloads.append(payload)
        return payloads

    def _normalize(self, text: str) -> str:
        """Map CRLF and bare CR line endings to LF across chunk boundaries."""
        if not text:
            return text
        if self._after_cr and text.startswith("\n"):
            text = text[1:]  # second half of a split CRLF
        self._after_cr = text.endswith("\r")
        return text.replace("\r\n", "\n").replace("\r", "\n")

    def flush(self) -> list[str]:
        """End of stream: an unterminated trailing record is discarded."""
        pending = self._buffer.strip()
        self._buffer = ""
        if pending and not self.finished:
            _logger.debug(
                "Discarding unterminated trailing record (%d chars)", len(pending),
            )
        return []

    @property
    def pending(self) -> str:
        """Buffered text not yet terminated by a blank line."""
        return self._buffer

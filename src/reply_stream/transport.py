"""HTTP transport for chat-completion requests.

The coordinator only needs ``send(request) -> TransportResponse``; the body
is buffered bytes for non-streaming requests and an async byte iterator for
streaming ones.  ``HttpxTransport`` is the production implementation on top
of ``httpx.AsyncClient``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol, Union

import httpx

from reply_stream.config import EndpointSpec
from reply_stream.errors import StreamDecodeError, TransportError
from reply_stream.types import ReplyRequest

_logger = logging.getLogger(__name__)

Body = Union[bytes, AsyncIterator[bytes]]


@dataclass
class TransportResponse:
    """Status, lower-cased headers and body of one HTTP attempt."""

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Body = b""

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def is_event_stream(self) -> bool:
        return "text/event-stream" in self.content_type.lower()

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    async def read(self) -> bytes:
        """Drain the body, streamed or not."""
        if isinstance(self.body, (bytes, bytearray)):
            return bytes(self.body)
        chunks = [chunk async for chunk in self.body]
        return b"".join(chunks)


class Transport(Protocol):
    """What the coordinator needs from the network layer."""

    async def send(self, request: ReplyRequest) -> TransportResponse:
        ...


class HttpxTransport:
    """OpenAI-compatible ``/chat/completions`` over ``httpx``."""

    def __init__(
        self,
        endpoint: EndpointSpec,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        headers = {
            "Authorization": f"Bearer {endpoint.resolved_api_key()}",
            "Content-Type": "application/json",
        }
        headers.update(endpoint.extra_headers)
        self._client = client or httpx.AsyncClient(
            base_url=endpoint.url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(
                endpoint.timeout,
                connect=endpoint.connect_timeout,
                read=endpoint.read_timeout,
            ),
        )

    async def send(self, request: ReplyRequest) -> TransportResponse:
        payload = request.to_payload()
        _logger.debug(
            "POST /chat/completions model=%s stream=%s reasoning=%s",
            request.model, request.stream, request.reasoning,
        )
        http_request = self._client.build_request(
            "POST", "/chat/completions", json=payload,
        )
        try:
            resp = await self._client.send(http_request, stream=request.stream)
        except httpx.RequestError as e:
            raise TransportError(f"Request failed: {e!r}") from e

        headers = {k.lower(): v for k, v in resp.headers.items()}
        if request.stream:
            return TransportResponse(resp.status_code, headers, _iter_body(resp))
        return TransportResponse(resp.status_code, headers, resp.content)

    async def close(self) -> None:
        await self._client.aclose()


async def _iter_body(resp: httpx.Response) -> AsyncIterator[bytes]:
    """Yield raw bytes; the response is closed however iteration ends."""
    try:
        async for chunk in resp.aiter_bytes():
            yield chunk
    except httpx.DecodingError as e:
        raise StreamDecodeError(f"Undecodable response body: {e!r}") from e
    except httpx.RequestError as e:
        raise TransportError(f"Stream interrupted: {e!r}") from e
    finally:
        await resp.aclose()

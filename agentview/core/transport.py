"""
Transport primitives: HTTPS-only request dispatch, multipart encoding and
server-sent-event framing.

Nothing here interprets payload semantics; callers hand raw bytes to
agentview.core.parsing.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx

from agentview.errors import EmptyPayloadError, InsecureEndpointError, TransportError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class FilePart:
    """Binary part of a multipart upload."""

    name: str
    filename: str
    content_type: str
    data: bytes


@dataclass(frozen=True)
class TransportResponse:
    """Status and fully read body of a non-streamed request."""

    status_code: int
    content: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code <= 299


@dataclass
class StreamResponse:
    """Status and lazily read body of a streamed request."""

    status_code: int
    _response: httpx.Response

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code <= 299

    def aiter_lines(self) -> AsyncIterator[str]:
        return self._response.aiter_lines()

    async def read_limited(self, limit: int) -> bytes:
        """Read at most ``limit`` bytes of the body."""
        data = bytearray()
        async for chunk in self._response.aiter_bytes():
            data.extend(chunk)
            if len(data) >= limit:
                break
        return bytes(data[:limit])


def ensure_secure_url(url: str) -> None:
    """Reject any URL whose scheme is not https."""
    if urlsplit(url).scheme.lower() != "https":
        raise InsecureEndpointError(url)


def build_multipart_body(
    fields: Iterable[tuple[str, str]],
    file_part: FilePart,
    boundary: str | None = None,
) -> tuple[bytes, str]:
    """
    Encode text fields plus one file as ``multipart/form-data``.

    Fields are written in the order given, the file part last.

    Args:
        fields: Ordered (name, value) pairs
        file_part: The binary upload
        boundary: Boundary token (random when omitted)

    Returns:
        (body, content_type header value)

    Raises:
        EmptyPayloadError: If the file payload is empty
    """
    if not file_part.data:
        raise EmptyPayloadError(f"Upload '{file_part.filename}' is empty.")

    if boundary is None:
        boundary = f"Boundary-{uuid.uuid4()}"

    body = bytearray()
    for name, value in fields:
        body += f"--{boundary}\r\n".encode()
        body += f'Content-Disposition: form-data; name="{name}"\r\n\r\n'.encode()
        body += f"{value}\r\n".encode()

    body += f"--{boundary}\r\n".encode()
    body += (
        f'Content-Disposition: form-data; name="{file_part.name}"; '
        f'filename="{file_part.filename}"\r\n'
    ).encode()
    body += f"Content-Type: {file_part.content_type}\r\n\r\n".encode()
    body += file_part.data
    body += b"\r\n"
    body += f"--{boundary}--\r\n".encode()

    return bytes(body), f"multipart/form-data; boundary={boundary}"


def _translate_error(error: httpx.RequestError) -> TransportError:
    """Classify an httpx failure as transient or terminal."""
    # Timeouts, DNS/connect failures, dropped connections and being offline
    # all surface as TimeoutException or NetworkError subclasses.
    transient = isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError))
    kind = type(error).__name__
    return TransportError(f"{kind}: {error}" if str(error) else kind, transient=transient, original=error)


class Transport:
    """
    Thin wrapper around an httpx.AsyncClient.

    Every request is checked with ensure_secure_url before it reaches the
    client, and httpx errors are translated into TransportError.
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def send_request(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float = 60.0,
    ) -> TransportResponse:
        """Send a request and read the whole body."""
        ensure_secure_url(url)
        try:
            response = await self._client.request(
                method, url, headers=headers, content=body, timeout=timeout
            )
        except httpx.RequestError as e:
            raise _translate_error(e) from e
        return TransportResponse(status_code=response.status_code, content=response.content)

    @asynccontextmanager
    async def open_stream(
        self,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float = 120.0,
    ) -> AsyncIterator[StreamResponse]:
        """Send a request and expose the body as a stream."""
        ensure_secure_url(url)
        request = self._client.build_request(
            method, url, headers=headers, content=body, timeout=timeout
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.RequestError as e:
            raise _translate_error(e) from e
        try:
            yield StreamResponse(status_code=response.status_code, _response=response)
        except httpx.RequestError as e:
            raise _translate_error(e) from e
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _is_complete_payload(payload: str) -> bool:
    if payload == DONE_SENTINEL:
        return True
    try:
        data = json.loads(payload)
    except ValueError:
        return False
    # A bare scalar may be one line of a multi-line document
    return isinstance(data, (dict, list))


class SSEDecoder:
    """
    Line-fed server-sent-event decoder tolerant of two framings.

    Block mode (standard SSE): ``data:`` lines accumulate until a blank line
    dispatches them joined by newlines.

    Line mode (servers that never send blank lines): a ``data:`` line that
    holds a complete JSON object or ``[DONE]`` is an event on its own. If a
    block is pending when such a line arrives, the block is dispatched first,
    so one stray non-JSON line cannot swallow the rest of the stream.

    Both branches share one buffer, so a stream may mix them. ``[DONE]`` is
    never dispatched.
    """

    def __init__(self) -> None:
        self._block: list[str] = []

    @property
    def pending(self) -> bool:
        return bool(self._block)

    def feed(self, line: str) -> list[str]:
        """Consume one line (without its terminator); return dispatched payloads."""
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch_block()

        if not line.startswith("data:"):
            # event:, id:, retry: and ":" comments carry nothing we use
            return []

        payload = line[5:].strip()

        if payload and _is_complete_payload(payload):
            return self._dispatch_block() + self._emit(payload)

        self._block.append(payload)
        return []

    def flush(self) -> list[str]:
        """Dispatch whatever block is pending when the stream closes."""
        return self._dispatch_block()

    def _dispatch_block(self) -> list[str]:
        if not self._block:
            return []
        payload = "\n".join(self._block)
        self._block = []
        return self._emit(payload)

    @staticmethod
    def _emit(payload: str) -> list[str]:
        payload = payload.strip()
        if not payload or payload == DONE_SENTINEL:
            return []
        return [payload]


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Lazily turn a stream of text lines into SSE event payloads."""
    decoder = SSEDecoder()
    async for line in lines:
        for payload in decoder.feed(line):
            yield payload
    for payload in decoder.flush():
        yield payload

"""
Client for the hosted Responses API.

One logical model invocation per call, either instruct-and-wait (describe)
or instruct-and-stream (stream_response), with a bounded retry on transient
failures. Also covers audio transcription and API key validation.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from typing import Any, Literal

from agentview.core.parsing import (
    extract_continuation_token,
    extract_delta_text,
    extract_error_message,
    extract_output_text,
)
from agentview.core.transport import FilePart, Transport, build_multipart_body, ensure_secure_url, iter_sse
from agentview.errors import (
    AgentViewError,
    APIStatusError,
    EmptyPayloadError,
    NoDataFoundError,
    NoEventsReceivedError,
    NoParseableOutputError,
    NoTextProducedError,
    TransportError,
)
from agentview.models.settings import AppSettings
from agentview.models.thread import StreamingResult
from agentview.utils.media import compose_capture_text, wrap_with_image

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
DEFAULT_RETRY_DELAY = 0.6
MAX_ERROR_BODY_BYTES = 1_000_000
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

# Raw SSE events echoed to the debug channel per call
_DEBUG_EVENT_LIMIT = 6

StreamEvent = (
    tuple[Literal["debug"], str]
    | tuple[Literal["delta"], str]
    | tuple[Literal["done"], StreamingResult]
)


def is_retryable(error: Exception) -> bool:
    """True for transient transport failures and throttling / gateway statuses."""
    if isinstance(error, TransportError):
        return error.transient
    if isinstance(error, APIStatusError) and error.status_code in RETRYABLE_STATUS:
        return True
    text = str(error).lower()
    return any(f"http {code}" in text for code in RETRYABLE_STATUS)


def _server_message(data: bytes, status_code: int) -> str:
    try:
        return extract_error_message(data)
    except ValueError:
        return f"HTTP {status_code}"


class _StreamState:
    """Accumulated output of one streaming attempt."""

    def __init__(self) -> None:
        self.full = ""
        self.deltas = 0
        self.events = 0
        self.last_event: str | None = None
        self.token: str | None = None
        self.started = time.monotonic()

    def consume(self, payload: str) -> list[StreamEvent]:
        self.events += 1
        self.last_event = payload
        out: list[StreamEvent] = []

        if self.events <= _DEBUG_EVENT_LIMIT:
            out.append(("debug", f"SSE event {self.events} received"))

        try:
            if self.token is None:
                self.token = extract_continuation_token(payload)
            delta = extract_delta_text(payload)
        except ValueError:
            logger.debug("Skipping non-JSON SSE payload: %.80s", payload)
            return out

        if delta:
            self.full += delta
            self.deltas += 1
            if self.deltas == 1:
                out.append(("debug", f"Received first delta ({len(delta)} chars)"))
            out.append(("delta", delta))
            return out

        # A completion event with the whole text only counts while no deltas
        # have arrived, otherwise the output would be duplicated.
        if self.deltas == 0:
            try:
                self.full += extract_output_text(payload)
            except NoDataFoundError:
                pass
        return out

    def _last_event_token(self) -> str | None:
        if self.last_event is None:
            return None
        try:
            return extract_continuation_token(self.last_event)
        except ValueError:
            return None

    def finish(self) -> StreamingResult:
        text = self.full.strip()
        if text:
            return StreamingResult(text=text, continuation_token=self.token or self._last_event_token())

        if self.last_event is not None:
            try:
                recovered = extract_output_text(self.last_event).strip()
            except (NoDataFoundError, ValueError):
                recovered = ""
            if recovered:
                logger.debug("Recovered output_text from final event (chars=%d)", len(recovered))
                return StreamingResult(
                    text=recovered, continuation_token=self.token or self._last_event_token()
                )

        if self.events == 0:
            raise NoEventsReceivedError("No SSE events received from the model (streaming).")
        raise NoTextProducedError("No output text received from the model (streaming).")

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


async def maybe_await(value: Any) -> None:
    """Await ``value`` if a callback returned an awaitable."""
    if inspect.isawaitable(value):
        await value


class ResponsesClient:
    """
    Client for the Responses, transcription and models endpoints.

    Every request carries ``Authorization: Bearer <key>`` and is refused
    before dispatch if its URL is not https.
    """

    def __init__(
        self,
        api_key: str,
        settings: AppSettings | None = None,
        transport: Transport | None = None,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        """
        Initialize the client.

        Args:
            api_key: Provider API key, supplied per call site
            settings: Endpoints, models and timeouts (defaults if omitted)
            transport: HTTP transport (a fresh httpx-backed one if omitted)
            retry_delay: Pause before the second attempt, in seconds
        """
        self.api_key = api_key
        self.settings = settings or AppSettings()
        self.transport = transport or Transport()
        self.retry_delay = retry_delay

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self) -> ResponsesClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _headers(self, content_type: str | None = "application/json") -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def build_body(
        self,
        image_png: bytes | None,
        user_text: str,
        continuation_token: str | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """
        Assemble a Responses API request body.

        Image turns send one user message with the capture prompt, the user's
        context and the image inline. Follow-ups send the text as is.
        """
        body: dict[str, Any] = {"model": self.settings.model}
        if stream:
            body["stream"] = True
        if continuation_token:
            body["previous_response_id"] = continuation_token

        if image_png is not None:
            text = compose_capture_text(self.settings.capture_prompt, user_text)
            body["input"] = wrap_with_image(text, image_png)
        else:
            body["input"] = user_text
        return body

    async def describe(self, image_png: bytes, user_context: str = "") -> str:
        """
        Send a capture and wait for the complete answer.

        Returns:
            The output text

        Raises:
            APIStatusError: On a non-2xx response
            NoParseableOutputError: If the body carries no output text
        """
        url = self.settings.endpoint("responses")
        ensure_secure_url(url)
        payload = json.dumps(self.build_body(image_png, user_context)).encode()

        last_error: AgentViewError | None = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = await self.transport.send_request(
                    url, "POST", self._headers(), payload, timeout=self.settings.describe_timeout
                )
                if not response.ok:
                    raise APIStatusError(
                        response.status_code, _server_message(response.content, response.status_code)
                    )
                try:
                    return extract_output_text(response.content)
                except (NoDataFoundError, ValueError) as e:
                    raise NoParseableOutputError("Could not parse the model response.") from e
            except AgentViewError as e:
                last_error = e
                if attempt >= MAX_ATTEMPTS or not is_retryable(e):
                    raise
                logger.warning(
                    "Describe failed (attempt %d/%d): %s. Retrying in %.1fs...",
                    attempt,
                    MAX_ATTEMPTS,
                    e,
                    self.retry_delay,
                )
                await asyncio.sleep(self.retry_delay)

        raise last_error or NoParseableOutputError("Model request failed.")

    async def stream_response(
        self,
        image_png: bytes | None,
        user_text: str,
        continuation_token: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream one model turn.

        Yields ``("debug", line)`` progress notes, ``("delta", text)`` output
        fragments in arrival order, and finally ``("done", StreamingResult)``.

        A failed attempt is retried once when it is transient and no delta
        has been delivered yet; after the first delta a failure is raised
        as is, leaving already delivered text with the caller.

        Raises:
            APIStatusError: On a non-2xx response
            NoEventsReceivedError: If the stream closed without events
            NoTextProducedError: If events arrived but none carried text
            StreamError: If the stream carried an error object
        """
        url = self.settings.endpoint("responses")
        ensure_secure_url(url)
        body = self.build_body(image_png, user_text, continuation_token, stream=True)
        payload = json.dumps(body).encode()
        headers = self._headers()
        headers["Accept"] = "text/event-stream"

        previous = continuation_token or "<nil>"
        if image_png is not None:
            start_line = (
                f"Starting request (imageBytes={len(image_png)}, "
                f"userChars={len(user_text)}, previous={previous})"
            )
        else:
            start_line = f"Starting follow-up (userChars={len(user_text)}, previous={previous})"
        logger.debug("%s model=%s", start_line, self.settings.model)
        yield ("debug", start_line)

        for attempt in range(1, MAX_ATTEMPTS + 1):
            state = _StreamState()
            try:
                async with self.transport.open_stream(
                    url, "POST", headers, payload, timeout=self.settings.stream_timeout
                ) as response:
                    yield ("debug", f"HTTP status = {response.status_code}")
                    if not response.ok:
                        data = await response.read_limited(MAX_ERROR_BODY_BYTES)
                        message = _server_message(data, response.status_code)
                        yield ("debug", f"Non-2xx response: {message}")
                        raise APIStatusError(response.status_code, message)

                    async for event in iter_sse(response.aiter_lines()):
                        for item in state.consume(event):
                            yield item

                if state.deltas == 0:
                    yield ("debug", "Completed stream but got no text deltas.")
                result = state.finish()
            except AgentViewError as e:
                if attempt >= MAX_ATTEMPTS or state.deltas > 0 or not is_retryable(e):
                    raise
                logger.warning(
                    "Streaming request failed (attempt %d/%d): %s. Retrying in %.1fs...",
                    attempt,
                    MAX_ATTEMPTS,
                    e,
                    self.retry_delay,
                )
                yield ("debug", "Transient failure. Retrying request…")
                await asyncio.sleep(self.retry_delay)
                continue

            logger.debug(
                "Completed stream (deltas=%d, totalChars=%d, timeMs=%d)",
                state.deltas,
                len(result.text),
                state.elapsed_ms,
            )
            yield (
                "debug",
                f"Completed (deltas={state.deltas}, totalChars={len(result.text)}, timeMs={state.elapsed_ms})",
            )
            yield ("done", result)
            return

    async def capture_thread_streaming(
        self,
        image_png: bytes | None,
        user_text: str,
        continuation_token: str | None,
        on_delta: Callable[[str], Any],
        on_debug: Callable[[str], Any] | None = None,
    ) -> StreamingResult:
        """Callback front-end over stream_response. Callbacks may be sync or async."""
        result: StreamingResult | None = None
        async for kind, value in self.stream_response(image_png, user_text, continuation_token):
            if kind == "delta":
                await maybe_await(on_delta(value))
            elif kind == "debug":
                if on_debug is not None:
                    await maybe_await(on_debug(value))
            elif kind == "done":
                result = value
        if result is None:
            raise NoTextProducedError("Streaming ended without a result.")
        return result

    async def transcribe_audio(self, audio: bytes, filename: str = "voice.m4a") -> str:
        """
        Transcribe a recorded voice note. Single attempt.

        Raises:
            EmptyPayloadError: If ``audio`` is empty
            APIStatusError: On a non-2xx response
            NoParseableOutputError: If no text can be read from the response
        """
        url = self.settings.endpoint("audio/transcriptions")
        ensure_secure_url(url)
        if not audio:
            raise EmptyPayloadError("Voice note audio is empty.")

        body, content_type = build_multipart_body(
            [("model", self.settings.transcription_model), ("response_format", "json")],
            FilePart(name="file", filename=filename, content_type="audio/m4a", data=audio),
        )
        response = await self.transport.send_request(
            url, "POST", self._headers(content_type), body, timeout=self.settings.transcribe_timeout
        )
        if not response.ok:
            raise APIStatusError(response.status_code, _server_message(response.content, response.status_code))

        try:
            data = json.loads(response.content)
        except ValueError:
            data = None

        if isinstance(data, dict):
            text = data.get("text")
            if isinstance(text, str) and text.strip():
                return text.strip()

        # Plain-text response formats, or JSON without usable text
        raw = response.content.decode("utf-8", errors="replace").strip()
        if raw:
            return raw

        raise NoParseableOutputError("Could not parse transcription response.")

    async def validate_credentials(self) -> bool:
        """
        Check the API key with a lightweight authenticated GET.

        Raises:
            APIStatusError: If the server answers with a non-2xx status
        """
        url = self.settings.endpoint("models")
        response = await self.transport.send_request(
            url, "GET", self._headers(content_type=None), timeout=self.settings.validate_timeout
        )
        if not response.ok:
            raise APIStatusError(
                response.status_code,
                f"API key validation failed (HTTP {response.status_code}).",
            )
        return True

"""
Pytest fixtures for agentview tests.
"""

import json
import os
import tempfile
from pathlib import Path

import httpx
import pytest

from agentview.core.client import ResponsesClient
from agentview.core.transport import Transport
from agentview.models.settings import AppSettings

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-data"


@pytest.fixture(autouse=True)
def _clean_env():
    """Prevent environment variable pollution between tests.

    ConfigManager reads OPENAI_API_KEY from the environment before its
    encrypted store, so a developer's real key would leak into key tests.
    """
    original_env = os.environ.copy()
    os.environ.pop("OPENAI_API_KEY", None)
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    """Settings that keep all state inside the temp directory."""
    return AppSettings(data_dir=temp_dir / ".agentview")


@pytest.fixture
def png_bytes():
    return PNG_BYTES


def sse_body(events, framing="block", done=True):
    """
    Encode events as an SSE body.

    'block' separates events with blank lines; 'line' sends one data line
    per event and no blank lines at all.
    """
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}")
        if framing == "block":
            lines.append("")
    if done:
        lines.append("data: [DONE]")
        if framing == "block":
            lines.append("")
    return ("\n".join(lines) + "\n").encode()


def delta_events(*chunks, response_id="resp_abc123"):
    """A typical stream: created, N text deltas, completed."""
    events = [{"type": "response.created", "response": {"id": response_id}}]
    events += [{"type": "response.output_text.delta", "delta": chunk} for chunk in chunks]
    events.append(
        {
            "type": "response.completed",
            "response": {
                "id": response_id,
                "output": [{"content": [{"type": "output_text", "text": "".join(chunks)}]}],
            },
        }
    )
    return events


class RecordingHandler:
    """httpx.MockTransport handler that replays canned responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response

    def json_body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def make_transport(handler) -> Transport:
    return Transport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.fixture
def make_client(settings):
    """Build a ResponsesClient whose HTTP traffic goes to ``handler``."""

    def _make(handler, **kwargs):
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("retry_delay", 0)
        return ResponsesClient("sk-test", transport=make_transport(handler), **kwargs)

    return _make

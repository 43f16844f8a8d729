"""
Tests for agentview.utils.media.
"""

import base64

import pytest

from agentview.errors import EmptyPayloadError
from agentview.utils.media import (
    compose_capture_text,
    encode_png_to_data_url,
    make_image_content_part,
    make_text_content_part,
    wrap_with_image,
)


class TestEncoding:
    def test_data_url(self, png_bytes):
        url = encode_png_to_data_url(png_bytes)
        assert url.startswith("data:image/png;base64,")
        assert base64.b64decode(url.split(",", 1)[1]) == png_bytes

    def test_empty_rejected(self):
        with pytest.raises(EmptyPayloadError):
            encode_png_to_data_url(b"")


class TestContentParts:
    def test_text_part(self):
        assert make_text_content_part("hi") == {"type": "input_text", "text": "hi"}

    def test_image_part(self, png_bytes):
        part = make_image_content_part(png_bytes)
        assert part["type"] == "input_image"
        assert part["image_url"].startswith("data:image/png;base64,")

    def test_wrap_with_image(self, png_bytes):
        (message,) = wrap_with_image("describe", png_bytes)
        assert message["role"] == "user"
        assert [p["type"] for p in message["content"]] == ["input_text", "input_image"]

    def test_compose_capture_text(self):
        assert compose_capture_text("Prompt.", "") == "Prompt."
        assert compose_capture_text("Prompt.", "why?") == "Prompt.\n\nUser context:\nwhy?"

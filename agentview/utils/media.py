"""Media utilities for multimodal request content.

Builds Responses API content parts from raw capture bytes and renders
message content back to plain text.
"""

from __future__ import annotations

import base64
from typing import Any

from agentview.errors import EmptyPayloadError

# Text shown in place of a user bubble when only an image was sent
IMAGE_PLACEHOLDER = "[image]"

PNG_MIME = "image/png"


def encode_png_to_data_url(image_png: bytes) -> str:
    """Return a base64 data URL: ``data:image/png;base64,...``.

    Raises:
        EmptyPayloadError: If ``image_png`` is empty.
    """
    if not image_png:
        raise EmptyPayloadError("Captured image is empty.")
    b64 = base64.b64encode(image_png).decode("ascii")
    return f"data:{PNG_MIME};base64,{b64}"


def make_text_content_part(text: str) -> dict[str, Any]:
    """Create an ``input_text`` content part."""
    return {"type": "input_text", "text": text}


def make_image_content_part(image_png: bytes) -> dict[str, Any]:
    """Create an ``input_image`` content part carrying the PNG inline."""
    return {"type": "input_image", "image_url": encode_png_to_data_url(image_png)}


def compose_capture_text(prompt: str, user_context: str) -> str:
    """Capture prompt followed by the user's context, if any."""
    if not user_context:
        return prompt
    return f"{prompt}\n\nUser context:\n{user_context}"


def wrap_with_image(text: str, image_png: bytes) -> list[dict[str, Any]]:
    """Single-message ``input`` list with text and an image.

    Returns:
        ``[{"role": "user", "content": [input_text, input_image]}]``
    """
    return [
        {
            "role": "user",
            "content": [make_text_content_part(text), make_image_content_part(image_png)],
        }
    ]

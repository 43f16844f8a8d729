"""
Format-tolerant extraction from Responses API payloads.

Every function takes raw bytes (or text), never mutates anything, and raises
ValueError only when the payload is not JSON at all. A missing field is
signalled by NoDataFoundError (or an empty/None return where documented).
"""

from __future__ import annotations

import json
from typing import Any

from agentview.errors import NoDataFoundError, StreamError

TOKEN_PREFIX = "resp_"


def _load(raw: bytes | str) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)


def _render(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


def _message_from_error(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
        return _render(error)
    if isinstance(error, str) and error:
        return error
    return _render(error)


def extract_error_message(raw: bytes | str) -> str:
    """
    Best human-readable error message in a payload.

    Prefers ``error.message``, then a rendering of the ``error`` object, then a
    rendering of the whole payload.
    """
    data = _load(raw)
    if not isinstance(data, dict):
        return _render(data)
    if "error" in data and data["error"] is not None:
        return _message_from_error(data["error"])
    return _render(data)


def extract_output_text(raw: bytes | str) -> str:
    """
    Full output text of a response (or of a completion event).

    Raises:
        NoDataFoundError: If no text is present
    """
    data = _load(raw)
    if not isinstance(data, dict):
        raise NoDataFoundError("No output text found")

    # Some SDKs expose output_text directly
    output_text = data.get("output_text")
    if isinstance(output_text, str) and output_text:
        return output_text

    output = data.get("output")
    if isinstance(output, list):
        chunks: list[str] = []
        for item in output:
            if not isinstance(item, dict) or not isinstance(item.get("content"), list):
                continue
            for part in item["content"]:
                if not isinstance(part, dict):
                    continue
                text = part.get("text")
                if not (isinstance(text, str) and text):
                    text = part.get("output_text")
                if isinstance(text, str) and text:
                    chunks.append(text)

        joined = "\n".join(chunks).strip()
        if joined:
            return joined

    # Completion events wrap the whole response object
    response = data.get("response")
    if isinstance(response, dict):
        return extract_output_text(json.dumps(response))

    raise NoDataFoundError("No output text found")


def extract_delta_text(raw: bytes | str) -> str:
    """
    Incremental text carried by one streaming event.

    Returns an empty string for control and metadata events.

    Raises:
        StreamError: If the event carries an ``error`` object, even when a
            delta is present as well
    """
    data = _load(raw)
    if not isinstance(data, dict):
        return ""

    error = data.get("error")
    if isinstance(error, dict):
        raise StreamError(_message_from_error(error))

    event_type = data.get("type")
    event_type = event_type if isinstance(event_type, str) else ""
    delta = data.get("delta")

    # {"type": "response.output_text.delta", "delta": "..."}
    if "output_text.delta" in event_type and delta is not None:
        if isinstance(delta, str):
            return delta
        if isinstance(delta, dict) and isinstance(delta.get("text"), str):
            return delta["text"]

    # {"type": "response.delta", "delta": {"output_text": "..."}}
    if "response.delta" in event_type and isinstance(delta, dict):
        for key in ("output_text", "text"):
            if isinstance(delta.get(key), str):
                return delta[key]

    if isinstance(delta, str):
        return delta
    if isinstance(delta, dict) and isinstance(delta.get("text"), str):
        return delta["text"]
    return ""


def extract_continuation_token(raw: bytes | str) -> str | None:
    """Response id to chain the next turn, if the payload discloses one."""
    data = _load(raw)
    if not isinstance(data, dict):
        return None

    candidates: list[Any] = []
    response = data.get("response")
    if isinstance(response, dict):
        candidates.append(response.get("id"))
    candidates.append(data.get("id"))
    candidates.append(data.get("response_id"))

    for candidate in candidates:
        if isinstance(candidate, str) and candidate.startswith(TOKEN_PREFIX):
            return candidate
    return None

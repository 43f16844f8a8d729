"""Thread title helpers."""

from __future__ import annotations

import re

UNTITLED = "Untitled"
NEW_THREAD_TITLE = "New thread"

MAX_TITLE_CHARS = 44
MIN_SENTENCE_CHARS = 12

# Titles the app assigns on its own; these may be replaced by a derived title
_PLACEHOLDER_RE = re.compile(
    r"^\s*(new thread|untitled|thread(\s+#?\d+)?|capture|quick chat)\s*$",
    re.IGNORECASE,
)
_TERMINATORS = ".?!"


def is_placeholder_title(title: str | None) -> bool:
    """True if ``title`` is one of the generic auto-generated labels."""
    if title is None:
        return True
    return bool(_PLACEHOLDER_RE.match(title))


def _sentence_cut(text: str) -> str:
    """Cut after the first (or, if that is too short, second) sentence."""
    seen = 0
    for i, ch in enumerate(text):
        if ch not in _TERMINATORS:
            continue
        seen += 1
        prefix = text[: i + 1]
        if len(prefix) >= MIN_SENTENCE_CHARS:
            return prefix
        if seen == 2:
            break
    return text


def suggested_title(text: str) -> str:
    """
    Derive a short title from free text.

    Whitespace is collapsed, the text is cut after its first sentence when that
    sentence is at least 12 characters (the second sentence is tried when the
    first is shorter), and anything longer than 44 characters is truncated
    with an ellipsis.

    >>> suggested_title("Is this a good plan? Let's see what happens next.")
    'Is this a good plan?'
    >>> suggested_title("ok")
    'ok'
    >>> suggested_title("")
    'Untitled'
    """
    s = " ".join(text.split())
    s = _sentence_cut(s)
    if len(s) > MAX_TITLE_CHARS:
        s = s[:MAX_TITLE_CHARS].rstrip() + "…"
    return s or UNTITLED

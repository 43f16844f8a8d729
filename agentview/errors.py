"""
Exception hierarchy for the AgentView core.

Every error raised by the client, parser and registry derives from
AgentViewError so collaborators can present one human-readable message.
"""

from __future__ import annotations


class AgentViewError(Exception):
    """Base error with a user-facing message."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InsecureEndpointError(AgentViewError):
    """A request targeted a non-HTTPS URL. Raised before any network activity."""

    def __init__(self, url: str):
        self.url = url
        super().__init__("Only HTTPS endpoints are allowed.")


class EmptyPayloadError(AgentViewError):
    """A binary upload (image or audio) was empty."""


class TransportError(AgentViewError):
    """The request never produced an HTTP response."""

    def __init__(self, message: str, transient: bool = False, original: Exception | None = None):
        self.transient = transient
        self.original = original
        super().__init__(message)


class APIStatusError(AgentViewError):
    """The server answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str | None = None):
        self.status_code = status_code
        super().__init__(message or f"HTTP {status_code}")


class NoDataFoundError(AgentViewError):
    """A well-formed payload did not contain the requested field."""


class NoParseableOutputError(AgentViewError):
    """A complete response body carried no output text."""


class NoEventsReceivedError(AgentViewError):
    """A streaming response closed without a single SSE event."""


class NoTextProducedError(AgentViewError):
    """A streaming response delivered events but no output text."""


class StreamError(AgentViewError):
    """An error object arrived inside an otherwise successful SSE stream."""


class KeychainError(AgentViewError):
    """The API key store could not be read or written."""


class ConversationBusyError(AgentViewError):
    """A send was issued while a previous send for the same conversation is streaming."""

    def __init__(self, conversation_id: str | None):
        self.conversation_id = conversation_id
        super().__init__("A reply is still streaming for this thread. Wait for it to finish.")


class SettingsError(AgentViewError):
    """Settings file could not be parsed or validated."""

    def __init__(self, path: str, issues: list[str]):
        self.path = path
        self.issues = issues
        details = "\n".join(f"  - {issue}" for issue in issues)
        super().__init__(f"Invalid settings in '{path}':\n{details}")

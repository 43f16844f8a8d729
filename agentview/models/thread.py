"""
Thread models for persistent conversation history.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

MAX_MESSAGES_PER_THREAD = 200


def _utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


class Role(str, Enum):
    """Author of a message. Only two roles exist; anything else is rejected."""

    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """A single message in a thread. Assistant text grows in place while streaming."""

    role: Role
    text: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class ConversationSnapshot(BaseModel):
    """Durable record of one conversation."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = "New thread"
    updated_at: datetime = Field(default_factory=_utcnow)
    continuation_token: str | None = None
    messages: list[Message] = Field(default_factory=list)

    def truncate_messages(self, limit: int = MAX_MESSAGES_PER_THREAD) -> None:
        """Drop the oldest messages beyond ``limit``."""
        if len(self.messages) > limit:
            self.messages = self.messages[-limit:]

    def first_text(self) -> str:
        """Text of the first message with content, used to derive titles."""
        for message in self.messages:
            if message.text.strip():
                return message.text
        return ""


class ThreadEntry(BaseModel):
    """List projection of a snapshot, with live open state."""

    id: str
    title: str
    updated_at: datetime
    is_open: bool = False


class StreamingResult(BaseModel):
    """Outcome of one streamed model call."""

    text: str
    continuation_token: str | None = None


class SendResult(BaseModel):
    """Outcome of one conversation turn."""

    text: str
    conversation_id: str
    continuation_token: str | None = None

"""Data models for agentview."""

from agentview.models.settings import AppSettings, load_settings
from agentview.models.thread import (
    ConversationSnapshot,
    Message,
    Role,
    SendResult,
    StreamingResult,
    ThreadEntry,
)

__all__ = [
    "AppSettings",
    "ConversationSnapshot",
    "load_settings",
    "Message",
    "Role",
    "SendResult",
    "StreamingResult",
    "ThreadEntry",
]

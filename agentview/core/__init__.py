"""Core module for agentview."""

from agentview.core.client import ResponsesClient
from agentview.core.config import ConfigManager
from agentview.core.session import AgentViewService, SessionController
from agentview.core.thread_registry import ThreadRegistry
from agentview.core.transport import SSEDecoder, Transport, build_multipart_body, ensure_secure_url

__all__ = [
    "AgentViewService",
    "ConfigManager",
    "ResponsesClient",
    "SSEDecoder",
    "SessionController",
    "ThreadRegistry",
    "Transport",
    "build_multipart_body",
    "ensure_secure_url",
]

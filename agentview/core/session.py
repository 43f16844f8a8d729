"""
Per-conversation turn sequencing and the collaborator-facing service.

A SessionController owns one conversation while it is open: it appends the
user message and an assistant placeholder, streams deltas into the
placeholder, and records the continuation token once the reply completes.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from agentview.core.client import ResponsesClient, maybe_await
from agentview.core.thread_registry import ThreadRegistry
from agentview.core.transport import Transport
from agentview.errors import AgentViewError, ConversationBusyError, KeychainError
from agentview.models.settings import AppSettings
from agentview.models.thread import Message, Role, SendResult, StreamingResult, ThreadEntry
from agentview.utils.media import IMAGE_PLACEHOLDER
from agentview.utils.titles import NEW_THREAD_TITLE, suggested_title

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], ResponsesClient]


class SessionController:
    """
    Drives the turns of a single conversation.

    Sends are strictly sequential: a second send while one is streaming
    raises ConversationBusyError. Closing the controller only releases the
    thread's open state; a send already in flight still completes and its
    text still lands in the registry's snapshot.
    """

    def __init__(
        self,
        registry: ThreadRegistry,
        client_factory: ClientFactory,
        conversation_id: str | None = None,
    ):
        self.registry = registry
        self._client_factory = client_factory
        self.conversation_id = conversation_id
        self.pending_image: bytes | None = None
        self.last_image: bytes | None = None
        self._busy = False
        self._closed = False
        if conversation_id:
            registry.register_open(conversation_id)

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def continuation_token(self) -> str | None:
        snapshot = self._snapshot()
        return snapshot.continuation_token if snapshot else None

    @property
    def messages(self) -> list[Message]:
        snapshot = self._snapshot()
        return snapshot.messages if snapshot else []

    def _snapshot(self):
        if self.conversation_id is None:
            return None
        return self.registry.snapshot(self.conversation_id)

    def set_pending_image(self, image_png: bytes) -> None:
        """Attach a fresh capture to the next send."""
        self.pending_image = image_png

    def close(self) -> None:
        """Unbind from the thread. Does not cancel an in-flight send."""
        self._closed = True
        if self.conversation_id:
            self.registry.unregister_open(self.conversation_id)

    def image_for_next_send(self) -> bytes | None:
        """
        The image to attach to the next request.

        A pending capture always wins. Without one, if the thread has history
        but no continuation token (an earlier reply never disclosed one), the
        last image sent in this conversation is attached again so the model
        keeps its visual context.
        """
        if self.pending_image is not None:
            return self.pending_image
        if self.continuation_token is None and self.messages and self.last_image is not None:
            return self.last_image
        return None

    def _begin_turn(self, draft: str) -> Message:
        """Append the user message and an empty assistant placeholder."""
        user_message = Message(role=Role.USER, text=draft or IMAGE_PLACEHOLDER)
        placeholder = Message(role=Role.ASSISTANT, text="")

        is_new = self.conversation_id is None
        if is_new:
            self.conversation_id = uuid.uuid4().hex
        # Open before inserting so a full registry cannot evict this thread
        if not self._closed:
            self.registry.register_open(self.conversation_id)

        if is_new:
            title = suggested_title(draft) if draft else NEW_THREAD_TITLE
            self.registry.create_thread(
                title=title, messages=[user_message, placeholder], thread_id=self.conversation_id
            )
        else:
            self.registry.append_messages(self.conversation_id, [user_message, placeholder])
        return placeholder

    def _retained(self) -> bool:
        return self.conversation_id is not None and self.conversation_id in self.registry

    async def send(
        self,
        text: str,
        on_delta: Callable[[str], Any] | None = None,
        on_debug: Callable[[str], Any] | None = None,
    ) -> SendResult | None:
        """
        Send one turn.

        Args:
            text: The user's draft (may be empty when an image is pending)
            on_delta: Called with each text fragment as it arrives
            on_debug: Called with diagnostic lines

        Returns:
            The result, or None if there was nothing to send

        Raises:
            ConversationBusyError: If a send is already streaming
            AgentViewError: If the request fails; the placeholder then shows
                the error and the user message is kept
        """
        draft = text.strip()
        if not draft and self.pending_image is None:
            return None
        if self._busy:
            raise ConversationBusyError(self.conversation_id)

        self._busy = True
        try:
            image = self.image_for_next_send()
            image_was_pending = self.pending_image is not None
            token = self.continuation_token
            placeholder = self._begin_turn(draft)
            if image is not None:
                self.last_image = image

            result: StreamingResult | None = None
            try:
                async with self._client_factory() as client:
                    async for kind, value in client.stream_response(image, draft, token):
                        if kind == "delta":
                            placeholder.text += value
                            if on_delta is not None:
                                await maybe_await(on_delta(value))
                        elif kind == "debug":
                            if on_debug is not None:
                                await maybe_await(on_debug(value))
                        elif kind == "done":
                            result = value
            except AgentViewError as e:
                logger.warning("Send failed for thread %s: %s", self.conversation_id, e)
                partial = placeholder.text.rstrip()
                placeholder.text = f"{partial}\n\nError: {e}" if partial else f"Error: {e}"
                if self._retained():
                    self.registry.append_messages(self.conversation_id, [])
                raise

            if result is None:
                raise AgentViewError("Streaming ended without a result.")

            placeholder.text = result.text
            if image_was_pending:
                self.pending_image = None

            if self._retained():
                self.registry.append_messages(
                    self.conversation_id, [], continuation_token=result.continuation_token
                )
                self.registry.rename_if_auto_titled(self.conversation_id, draft or result.text)
            else:
                logger.debug("Thread %s no longer retained; reply kept in memory only", self.conversation_id)

            return SendResult(
                text=result.text,
                conversation_id=self.conversation_id,
                continuation_token=result.continuation_token,
            )
        finally:
            self._busy = False


class AgentViewService:
    """
    Entry point for collaborators (capture UI, quick chat, CLI).

    Holds the registry and one controller per open conversation, and builds
    a fresh client for each call with the API key supplied at call time.
    Conversations opened with ``open()`` stay open until ``close()``.
    """

    def __init__(
        self,
        registry: ThreadRegistry,
        api_key_provider: Callable[[], str | None],
        settings: AppSettings | None = None,
        transport_factory: Callable[[], Transport] | None = None,
        retry_delay: float | None = None,
    ):
        self.registry = registry
        self.settings = settings or AppSettings()
        self._api_key_provider = api_key_provider
        self._transport_factory = transport_factory
        self._retry_delay = retry_delay
        self._controllers: dict[str, SessionController] = {}

    def client(self) -> ResponsesClient:
        """A client for the current API key."""
        api_key = self._api_key_provider()
        if not api_key:
            raise KeychainError("Missing API key. Set it with 'agentview key set'.")
        kwargs: dict[str, Any] = {"settings": self.settings}
        if self._transport_factory is not None:
            kwargs["transport"] = self._transport_factory()
        if self._retry_delay is not None:
            kwargs["retry_delay"] = self._retry_delay
        return ResponsesClient(api_key, **kwargs)

    def open(self, conversation_id: str | None = None) -> SessionController:
        """Get (or create) the controller bound to a conversation."""
        if conversation_id and conversation_id in self._controllers:
            return self._controllers[conversation_id]
        controller = SessionController(self.registry, self.client, conversation_id)
        if conversation_id:
            self._controllers[conversation_id] = controller
        return controller

    def close(self, conversation_id: str) -> None:
        controller = self._controllers.pop(conversation_id, None)
        if controller is not None:
            controller.close()
        else:
            self.registry.unregister_open(conversation_id)

    @property
    def open_ids(self) -> list[str]:
        return list(self._controllers)

    async def send(
        self,
        conversation_id: str | None,
        image_png: bytes | None,
        text: str,
        on_delta: Callable[[str], Any] | None = None,
        on_debug: Callable[[str], Any] | None = None,
    ) -> SendResult | None:
        """
        Send a turn to a conversation, starting a new one when the id is None.

        A conversation that was not ``open()``-ed is held open only for the
        duration of the send. Open it first to keep it protected from
        eviction and to carry the image re-attach state across turns.

        Raises:
            KeychainError: If no API key is available
            ConversationBusyError: If the conversation is already streaming
            AgentViewError: If the request fails
        """
        if not self._api_key_provider():
            raise KeychainError("Missing API key. Set it with 'agentview key set'.")

        controller = self._controllers.get(conversation_id) if conversation_id else None
        transient = controller is None
        if transient:
            controller = SessionController(self.registry, self.client, conversation_id)
            if conversation_id:
                self._controllers[conversation_id] = controller

        if image_png is not None:
            controller.set_pending_image(image_png)
        try:
            return await controller.send(text, on_delta=on_delta, on_debug=on_debug)
        finally:
            if transient:
                if self._controllers.get(controller.conversation_id) is controller:
                    del self._controllers[controller.conversation_id]
                controller.close()

    def list_threads(self) -> list[ThreadEntry]:
        return self.registry.list()

    def clear_history(self) -> int:
        return self.registry.clear_history()

    async def describe(self, image_png: bytes, user_context: str = "") -> str:
        async with self.client() as client:
            return await client.describe(image_png, user_context)

    async def validate_credentials(self) -> bool:
        async with self.client() as client:
            return await client.validate_credentials()

    async def transcribe_audio(self, audio: bytes) -> str:
        async with self.client() as client:
            return await client.transcribe_audio(audio)

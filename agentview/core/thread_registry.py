"""
Thread registry: the single authoritative store of conversation snapshots.

Threads are persisted together in one JSON file:

    {"version": 1, "threads": [<snapshot>, ...]}   # newest first

Writes are debounced: mutations set a dirty flag and a background task
flushes it every 200ms. Save failures are logged and never raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agentview.models.thread import (
    MAX_MESSAGES_PER_THREAD,
    ConversationSnapshot,
    Message,
    Role,
    ThreadEntry,
)
from agentview.utils.titles import NEW_THREAD_TITLE, is_placeholder_title, suggested_title

logger = logging.getLogger(__name__)

MAX_THREADS = 50
SAVE_INTERVAL = 0.2
FILE_VERSION = 1

# Passed to append_messages to leave the stored token unchanged
KEEP: Any = object()


class ThreadRegistry:
    """
    Persisted, size-bounded collection of conversation snapshots.

    Construct one per process and hand it to every consumer. Lifecycle:

        registry = ThreadRegistry(path)
        registry.load()
        registry.start()          # inside a running event loop
        ...
        await registry.aclose()   # stops the flusher and writes pending changes

    or simply ``async with ThreadRegistry(path) as registry: ...``.

    All methods must be called from the event loop thread.
    """

    def __init__(
        self,
        path: Path,
        max_threads: int = MAX_THREADS,
        max_messages: int = MAX_MESSAGES_PER_THREAD,
        save_interval: float = SAVE_INTERVAL,
    ):
        """
        Initialize the registry.

        Args:
            path: JSON file backing the registry
            max_threads: Capacity before least-recently-updated threads are evicted
            max_messages: Per-thread message cap (oldest dropped first)
            save_interval: Debounce interval for writes, in seconds
        """
        self.path = path
        self.max_threads = max_threads
        self.max_messages = max_messages
        self.save_interval = save_interval
        self._threads: dict[str, ConversationSnapshot] = {}
        self._open: set[str] = set()
        self._dirty = False
        self._last_stamp: datetime | None = None
        self._flusher: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ThreadRegistry:
        self.load()
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def load(self) -> int:
        """
        Load snapshots from disk, replacing in-memory state.

        Records that fail validation (for instance an unknown message role)
        are skipped. Placeholder titles are rederived from the first message;
        if any changed, a save is scheduled.

        Returns:
            Number of snapshots loaded
        """
        self._threads = {}
        if not self.path.exists():
            return 0

        try:
            with open(self.path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not read thread store %s: %s", self.path, e)
            return 0

        records = data.get("threads", []) if isinstance(data, dict) else data
        if not isinstance(records, list):
            logger.warning("Thread store %s has no thread list, ignoring", self.path)
            return 0

        migrated = False
        for record in records:
            try:
                snapshot = ConversationSnapshot.model_validate(record)
            except ValidationError as e:
                logger.warning("Skipping invalid thread record: %s", e.errors()[0]["msg"])
                continue

            snapshot.truncate_messages(self.max_messages)
            if is_placeholder_title(snapshot.title):
                derived = snapshot.first_text()
                if derived.strip():
                    snapshot.title = suggested_title(derived)
                    migrated = True
            self._threads[snapshot.id] = snapshot

        latest = max((s.updated_at for s in self._threads.values()), default=None)
        self._last_stamp = latest

        if migrated:
            self._mark_dirty()
        return len(self._threads)

    def start(self) -> None:
        """Launch the debounced save task on the running event loop."""
        if self._flusher is None or self._flusher.done():
            self._flusher = asyncio.get_running_loop().create_task(self._flush_loop())

    async def aclose(self) -> None:
        """Stop the save task and write any pending changes."""
        if self._flusher is not None:
            self._flusher.cancel()
            try:
                await self._flusher
            except asyncio.CancelledError:
                pass
            self._flusher = None
        self.flush()

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.save_interval)
            if self._dirty:
                self.flush()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def flush(self) -> bool:
        """
        Write the registry now if it has unsaved changes.

        Returns:
            True if a write happened and succeeded
        """
        if not self._dirty:
            return False
        self._dirty = False
        try:
            self._save()
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Could not save threads to %s: %s", self.path, e)
            return False
        return True

    def _save(self) -> None:
        records = [s.model_dump(mode="json") for s in self._sorted()]
        text = json.dumps({"version": FILE_VERSION, "threads": records}, indent=2, sort_keys=True)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".threads-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _mark_dirty(self) -> None:
        self._dirty = True

    # ------------------------------------------------------------------
    # Open-thread tracking
    # ------------------------------------------------------------------

    def register_open(self, thread_id: str) -> None:
        """Mark a thread as bound to a live session controller."""
        self._open.add(thread_id)

    def unregister_open(self, thread_id: str) -> None:
        self._open.discard(thread_id)

    def is_open(self, thread_id: str) -> bool:
        return thread_id in self._open

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._threads)

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._threads

    def snapshot(self, thread_id: str) -> ConversationSnapshot | None:
        """The live snapshot for ``thread_id`` (not a copy)."""
        return self._threads.get(thread_id)

    def resolve(self, id_or_prefix: str) -> str | None:
        """
        Resolve a full thread ID or an unambiguous ID prefix.

        Returns:
            The full ID, or None if nothing (or more than one thread) matches
        """
        if id_or_prefix in self._threads:
            return id_or_prefix
        matches = [tid for tid in self._threads if id_or_prefix and tid.startswith(id_or_prefix)]
        return matches[0] if len(matches) == 1 else None

    def _sorted(self) -> list[ConversationSnapshot]:
        return sorted(self._threads.values(), key=lambda s: s.updated_at, reverse=True)

    def list(self) -> list[ThreadEntry]:
        """Entries sorted by recency, newest first, with live open state."""
        return [
            ThreadEntry(id=s.id, title=s.title, updated_at=s.updated_at, is_open=s.id in self._open)
            for s in self._sorted()
        ]

    def search(self, query: str) -> list[ThreadEntry]:
        """Entries whose title contains ``query`` (case-insensitive)."""
        q = query.strip().lower()
        if not q:
            return self.list()
        return [e for e in self.list() if q in e.title.lower()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _stamp(self) -> datetime:
        """Strictly increasing timestamp, so recency order is total."""
        now = datetime.now(UTC)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    def _evict(self) -> None:
        """Drop least-recently-updated threads beyond capacity, never open ones."""
        excess = len(self._threads) - self.max_threads
        if excess <= 0:
            return
        for snapshot in reversed(self._sorted()):
            if excess <= 0:
                break
            if snapshot.id in self._open:
                continue
            del self._threads[snapshot.id]
            logger.debug("Evicted thread %s (%s)", snapshot.id, snapshot.title)
            excess -= 1

    def create_thread(
        self,
        title: str = NEW_THREAD_TITLE,
        continuation_token: str | None = None,
        messages: Iterable[Message] = (),
        thread_id: str | None = None,
    ) -> str:
        """
        Insert a new thread.

        Returns:
            The new thread id
        """
        kwargs: dict[str, Any] = {
            "title": title or NEW_THREAD_TITLE,
            "continuation_token": continuation_token or None,
            "messages": list(messages),
            "updated_at": self._stamp(),
        }
        if thread_id:
            kwargs["id"] = thread_id
        snapshot = ConversationSnapshot(**kwargs)
        snapshot.truncate_messages(self.max_messages)
        self._threads[snapshot.id] = snapshot
        self._evict()
        self._mark_dirty()
        return snapshot.id

    def append_messages(
        self,
        thread_id: str,
        messages: Iterable[Message],
        continuation_token: str | None = KEEP,
        title: str | None = None,
    ) -> str:
        """
        Append messages to a thread, creating it if ``thread_id`` is unknown.

        The title is only replaced when given. The token is replaced unless
        it is left at KEEP; passing None clears it.

        Returns:
            The thread id
        """
        snapshot = self._threads.get(thread_id)
        if snapshot is None:
            return self.create_thread(
                title=title or NEW_THREAD_TITLE,
                continuation_token=None if continuation_token is KEEP else continuation_token,
                messages=messages,
                thread_id=thread_id,
            )

        snapshot.messages.extend(messages)
        snapshot.truncate_messages(self.max_messages)
        if continuation_token is not KEEP:
            snapshot.continuation_token = continuation_token or None
        if title:
            snapshot.title = title
        snapshot.updated_at = self._stamp()
        self._evict()
        self._mark_dirty()
        return thread_id

    def rename_if_auto_titled(self, thread_id: str, candidate_text: str) -> bool:
        """
        Replace a placeholder title with one derived from ``candidate_text``.

        Returns:
            True if the title changed
        """
        snapshot = self._threads.get(thread_id)
        if snapshot is None or not is_placeholder_title(snapshot.title):
            return False
        if not candidate_text.strip():
            return False
        title = suggested_title(candidate_text)
        if title == snapshot.title:
            return False
        snapshot.title = title
        snapshot.updated_at = self._stamp()
        self._mark_dirty()
        return True

    def remove(self, thread_id: str) -> bool:
        """Delete one thread. Returns True if it existed."""
        if self._threads.pop(thread_id, None) is None:
            return False
        self._mark_dirty()
        return True

    def clear_history(self) -> int:
        """
        Delete every thread that is not currently open.

        Returns:
            Number of threads deleted
        """
        closed = [tid for tid in self._threads if tid not in self._open]
        for tid in closed:
            del self._threads[tid]
        if closed:
            self._mark_dirty()
        return len(closed)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export(self, thread_id: str, fmt: str = "markdown") -> str | None:
        """
        Render a thread transcript.

        Args:
            thread_id: Thread to export
            fmt: 'markdown' or 'json'

        Returns:
            Formatted string, or None if the thread is unknown
        """
        snapshot = self._threads.get(thread_id)
        if snapshot is None:
            return None

        if fmt == "json":
            return json.dumps(snapshot.model_dump(mode="json"), indent=2, sort_keys=True)

        lines = [
            f"# {snapshot.title}",
            "",
            f"**Thread:** {snapshot.id}  ",
            f"**Updated:** {snapshot.updated_at.strftime('%Y-%m-%d %H:%M')}",
            "",
            "---",
            "",
        ]
        for message in snapshot.messages:
            if message.role is Role.USER:
                lines.append(f"**You:** {message.text}\n")
            elif message.text.strip():
                lines.append(f"**Assistant:** {message.text}\n")
        return "\n".join(lines)

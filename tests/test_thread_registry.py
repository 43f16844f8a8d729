"""
Tests for agentview.core.thread_registry.
"""

import asyncio
import json

import pytest

from agentview.core.thread_registry import ThreadRegistry
from agentview.models.thread import Message, Role


@pytest.fixture
def threads_path(temp_dir):
    return temp_dir / "threads.json"


@pytest.fixture
def registry(threads_path):
    return ThreadRegistry(threads_path)


def _user(text):
    return Message(role=Role.USER, text=text)


def _assistant(text):
    return Message(role=Role.ASSISTANT, text=text)


class TestCreateAndList:
    def test_create_and_list(self, registry):
        tid = registry.create_thread(title="Chart question", messages=[_user("hi")])

        entries = registry.list()
        assert [e.id for e in entries] == [tid]
        assert entries[0].title == "Chart question"
        assert entries[0].is_open is False
        assert registry.dirty

    def test_newest_first(self, registry):
        first = registry.create_thread(title="one")
        second = registry.create_thread(title="two")
        registry.append_messages(first, [_user("bump")])

        assert [e.id for e in registry.list()] == [first, second]

    def test_timestamps_strictly_increase(self, registry):
        ids = [registry.create_thread(title=str(i)) for i in range(20)]
        stamps = [registry.snapshot(tid).updated_at for tid in ids]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

    def test_open_state_reported(self, registry):
        tid = registry.create_thread()
        registry.register_open(tid)
        assert registry.list()[0].is_open is True
        registry.unregister_open(tid)
        assert registry.list()[0].is_open is False

    def test_search(self, registry):
        registry.create_thread(title="Stack trace in pytest")
        registry.create_thread(title="Sales chart")

        assert [e.title for e in registry.search("CHART")] == ["Sales chart"]
        assert len(registry.search("  ")) == 2

    def test_resolve_prefix(self, registry):
        tid = registry.create_thread(thread_id="abc123")
        registry.create_thread(thread_id="abd999")

        assert registry.resolve("abc123") == tid
        assert registry.resolve("abc") == tid
        assert registry.resolve("ab") is None
        assert registry.resolve("zzz") is None


class TestAppendMessages:
    def test_unknown_id_creates_thread(self, registry):
        tid = registry.append_messages("fresh-id", [_user("hello")], continuation_token="resp_1")
        assert tid == "fresh-id"
        snapshot = registry.snapshot("fresh-id")
        assert snapshot.continuation_token == "resp_1"
        assert snapshot.title == "New thread"

    def test_token_kept_by_default_and_cleared_with_none(self, registry):
        tid = registry.create_thread(continuation_token="resp_1")

        registry.append_messages(tid, [_user("a")])
        assert registry.snapshot(tid).continuation_token == "resp_1"

        registry.append_messages(tid, [], continuation_token=None)
        assert registry.snapshot(tid).continuation_token is None

    def test_title_only_replaced_when_given(self, registry):
        tid = registry.create_thread(title="Keep me")
        registry.append_messages(tid, [_user("x")])
        assert registry.snapshot(tid).title == "Keep me"
        registry.append_messages(tid, [], title="Renamed")
        assert registry.snapshot(tid).title == "Renamed"

    def test_message_cap_drops_oldest(self, registry):
        tid = registry.create_thread()
        registry.append_messages(tid, [_user(f"m{i}") for i in range(205)])

        messages = registry.snapshot(tid).messages
        assert len(messages) == 200
        assert messages[0].text == "m5"
        assert messages[-1].text == "m204"


class TestEviction:
    def test_least_recent_evicted_beyond_capacity(self, registry):
        ids = [registry.create_thread(title=f"t{i}") for i in range(52)]

        assert len(registry) == 50
        assert ids[0] not in registry
        assert ids[1] not in registry
        assert ids[2] in registry

    def test_open_threads_exempt(self, registry):
        oldest = registry.create_thread(title="pinned")
        registry.register_open(oldest)
        for i in range(60):
            registry.create_thread(title=f"t{i}")

        assert oldest in registry
        assert len(registry) == 50

    def test_all_open_exceeds_capacity(self, threads_path):
        registry = ThreadRegistry(threads_path, max_threads=2)
        for tid in ("a", "b", "c"):
            registry.register_open(tid)
            registry.create_thread(thread_id=tid)
        assert len(registry) == 3


class TestRenameAndRemove:
    def test_rename_if_auto_titled(self, registry):
        tid = registry.create_thread(title="Quick chat")
        assert registry.rename_if_auto_titled(tid, "Why is the build red? It passed yesterday.")
        assert registry.snapshot(tid).title == "Why is the build red?"

    def test_rename_if_auto_titled_keeps_custom_title(self, registry):
        tid = registry.create_thread(title="My notes")
        assert not registry.rename_if_auto_titled(tid, "Something else entirely")
        assert registry.snapshot(tid).title == "My notes"

    def test_rename_if_auto_titled_ignores_blank_text(self, registry):
        tid = registry.create_thread(title="New thread")
        assert not registry.rename_if_auto_titled(tid, "   ")

    def test_remove(self, registry):
        tid = registry.create_thread()
        assert registry.remove(tid)
        assert not registry.remove(tid)
        assert len(registry) == 0

    def test_clear_history_spares_open_threads(self, registry):
        kept = registry.create_thread(title="open")
        registry.register_open(kept)
        registry.create_thread(title="closed 1")
        registry.create_thread(title="closed 2")

        assert registry.clear_history() == 2
        assert [e.id for e in registry.list()] == [kept]


class TestPersistence:
    def test_round_trip(self, registry, threads_path):
        tid = registry.create_thread(
            title="Persisted",
            continuation_token="resp_7",
            messages=[_user("question"), _assistant("answer")],
        )
        assert registry.flush()
        assert not registry.dirty

        reloaded = ThreadRegistry(threads_path)
        assert reloaded.load() == 1
        snapshot = reloaded.snapshot(tid)
        assert snapshot.title == "Persisted"
        assert snapshot.continuation_token == "resp_7"
        assert [(m.role, m.text) for m in snapshot.messages] == [
            (Role.USER, "question"),
            (Role.ASSISTANT, "answer"),
        ]
        assert snapshot.updated_at == registry.snapshot(tid).updated_at

    def test_file_format(self, registry, threads_path):
        older = registry.create_thread(title="older")
        newer = registry.create_thread(title="newer")
        registry.flush()

        data = json.loads(threads_path.read_text())
        assert data["version"] == 1
        assert [t["id"] for t in data["threads"]] == [newer, older]

    def test_flush_without_changes_is_noop(self, registry, threads_path):
        assert not registry.flush()
        assert not threads_path.exists()

    def test_missing_file(self, registry):
        assert registry.load() == 0

    def test_corrupt_file(self, registry, threads_path):
        threads_path.write_text("{not json")
        assert registry.load() == 0

    def test_invalid_records_skipped(self, registry, threads_path):
        threads_path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "threads": [
                        {"id": "good", "title": "Fine", "updated_at": "2025-01-01T00:00:00Z", "messages": []},
                        {
                            "id": "bad",
                            "title": "Broken",
                            "updated_at": "2025-01-01T00:00:00Z",
                            "messages": [{"role": "system", "text": "nope"}],
                        },
                    ],
                }
            )
        )
        assert registry.load() == 1
        assert "good" in registry
        assert "bad" not in registry

    def test_placeholder_titles_migrated_on_load(self, registry, threads_path):
        threads_path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "threads": [
                        {
                            "id": "t1",
                            "title": "Thread #3",
                            "updated_at": "2025-01-01T00:00:00Z",
                            "messages": [{"role": "user", "text": "Explain this diagram please."}],
                        },
                        {
                            "id": "t2",
                            "title": "Capture",
                            "updated_at": "2025-01-02T00:00:00Z",
                            "messages": [],
                        },
                    ],
                }
            )
        )

        registry.load()

        assert registry.snapshot("t1").title == "Explain this diagram please."
        assert registry.snapshot("t2").title == "Capture"
        assert registry.dirty

    def test_unwritable_path_logged_not_raised(self, temp_dir, caplog):
        blocker = temp_dir / "blocker"
        blocker.write_text("a file, not a directory")
        registry = ThreadRegistry(blocker / "threads.json")
        registry.create_thread()

        assert registry.flush() is False
        assert "Could not save threads" in caplog.text


class TestDebouncedSave:
    @pytest.mark.asyncio
    async def test_background_flush(self, threads_path):
        registry = ThreadRegistry(threads_path, save_interval=0.01)
        registry.start()
        try:
            registry.create_thread(title="saved by the flusher")
            for _ in range(100):
                if threads_path.exists():
                    break
                await asyncio.sleep(0.01)
            assert threads_path.exists()
            assert not registry.dirty
        finally:
            await registry.aclose()

    @pytest.mark.asyncio
    async def test_context_manager_flushes_on_exit(self, threads_path):
        async with ThreadRegistry(threads_path, save_interval=60) as registry:
            tid = registry.create_thread(title="on exit")
            assert not threads_path.exists()

        reloaded = ThreadRegistry(threads_path)
        reloaded.load()
        assert tid in reloaded

"""Tests for the SQLite message store."""

from datetime import datetime, timezone

import pytest

from agent_logs.models import CanonicalEntry, TextPart, TokenUsage, ToolCallPart
from agent_logs.store import SQLiteMessageStore, compute_entry_key


def entry(text, message_id="", role="user"):
    return CanonicalEntry(
        role=role,
        provider="claude",
        timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
        message_id=message_id,
        parts=[TextPart(text=text)],
    )


@pytest.fixture
def store(tmp_path):
    store = SQLiteMessageStore(tmp_path / "db" / "messages.db")
    store.initialize()
    yield store
    store.close()


class TestComputeEntryKey:
    def test_uses_message_id(self):
        assert compute_entry_key(entry("x", "u1")) == "u1"

    def test_content_hash_without_id(self):
        key = compute_entry_key(entry("x"))
        assert key.startswith("sha1:")
        assert len(key) == len("sha1:") + 16
        assert key == compute_entry_key(entry("x"))
        assert key != compute_entry_key(entry("y"))


class TestSQLiteMessageStore:
    def test_creates_database_directory(self, tmp_path):
        store = SQLiteMessageStore(tmp_path / "nested" / "dir" / "m.db")
        store.initialize()
        assert (tmp_path / "nested" / "dir" / "m.db").exists()
        store.close()

    def test_upsert_and_read_back(self, store):
        tool_entry = entry("running", "a1", role="assistant")
        tool_entry.parts.append(ToolCallPart(id="t1", name="Bash", input={"command": "ls"}, output="ok"))
        tool_entry.tokens = TokenUsage(input=10, output=2)

        assert store.upsert_entries("claude", "sess-1", [entry("hi", "u1"), tool_entry]) == 2

        rows = store.get_messages("sess-1")
        assert [(r.message_id, r.sequence) for r in rows] == [("u1", 0), ("a1", 1)]
        assert rows[0].content == "hi"
        assert rows[0].timestamp == 1735689600000
        assert rows[1].parts[1] == {"type": "tool_call", "content": {
            "id": "t1", "name": "Bash", "input": {"command": "ls"}, "output": "ok",
            "status": "", "title": "", "diff": "",
        }}
        assert rows[1].tokens["input"] == 10

    def test_reinsert_does_not_duplicate(self, store):
        store.upsert_entries("claude", "sess-1", [entry("hi", "u1")])
        assert store.upsert_entries("claude", "sess-1", [entry("hi again", "u1"), entry("new", "u2")]) == 1

        rows = store.get_messages("sess-1")
        assert [(r.message_id, r.content, r.sequence) for r in rows] == [
            ("u1", "hi again", 0),
            ("u2", "new", 2),
        ]

    def test_sessions_and_providers_isolated(self, store):
        store.upsert_entries("claude", "sess-1", [entry("a", "m1")])
        store.upsert_entries("codex", "sess-1", [entry("b", "m1")])
        store.upsert_entries("claude", "sess-2", [entry("c", "m1")])

        assert store.count_messages() == 3
        assert store.count_messages("sess-1") == 2
        assert store.count_messages("sess-1", provider="codex") == 1
        assert [r.content for r in store.get_messages("sess-1", provider="claude")] == ["a"]

    def test_empty_upsert(self, store):
        assert store.upsert_entries("claude", "sess-1", []) == 0

    def test_offsets_only_move_forward(self, store):
        store.save_offset("claude", "sess-1", 100, transcript_path="/t.jsonl", last_message_id="u1")
        store.save_offset("claude", "sess-1", 50)

        state = store.get_extraction_state("claude", "sess-1")
        assert state.offset == 100
        assert state.last_message_id == "u1"
        assert store.load_offsets() == {("claude", "sess-1"): 100}

        store.save_offset("claude", "sess-1", 200, transcript_path="/t.jsonl", last_message_id="u5")
        assert store.get_extraction_state("claude", "sess-1").last_message_id == "u5"
        assert store.load_offsets()[("claude", "sess-1")] == 200

    def test_unknown_extraction_state(self, store):
        assert store.get_extraction_state("claude", "nope") is None

    def test_state_survives_reopen(self, tmp_path):
        path = tmp_path / "m.db"
        first = SQLiteMessageStore(path)
        first.upsert_entries("claude", "sess-1", [entry("hi", "u1")])
        first.save_offset("claude", "sess-1", 42)
        first.close()

        second = SQLiteMessageStore(path)
        assert second.count_messages("sess-1") == 1
        assert second.load_offsets() == {("claude", "sess-1"): 42}
        second.close()

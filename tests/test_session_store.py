"""Tests for persisted session metadata."""

import json
import time

from pushtocode.server.services.session_store import SessionMetadataStore


class TestSessionMetadataStore:
    """JSON-backed conversation id persistence."""

    def test_upsert_and_get(self, tmp_path):
        """Entries round-trip through the file."""
        store = SessionMetadataStore(tmp_path / "sessions.json")
        store.upsert("s1", project_path="/work")
        store.upsert("s1", agent_conversation_id="conv-1")
        meta = SessionMetadataStore(tmp_path / "sessions.json").get("s1")
        assert meta.agent_conversation_id == "conv-1"
        assert meta.project_path == "/work"

    def test_file_is_private(self, tmp_path):
        """The store is written with owner-only permissions."""
        path = tmp_path / "sessions.json"
        SessionMetadataStore(path).upsert("s1")
        assert path.stat().st_mode & 0o777 == 0o600

    def test_remove(self, tmp_path):
        """remove reports whether something was removed."""
        store = SessionMetadataStore(tmp_path / "sessions.json")
        store.upsert("s1")
        assert store.remove("s1") is True
        assert store.remove("s1") is False
        assert store.get("s1") is None

    def test_list_most_recent_first(self, tmp_path):
        """list orders by last activity."""
        store = SessionMetadataStore(tmp_path / "sessions.json")
        store.upsert("a")
        time.sleep(0.01)
        store.upsert("b")
        assert [m.session_id for m in store.list()] == ["b", "a"]

    def test_expired_entries_dropped(self, tmp_path):
        """Entries older than the TTL are not loaded and are purged."""
        path = tmp_path / "sessions.json"
        old = time.time() - 10 * 24 * 3600
        path.write_text(json.dumps({"sessions": [
            {"session_id": "old", "created_at": old, "last_activity_at": old},
            {"session_id": "fresh", "agent_conversation_id": "c"},
        ]}))
        store = SessionMetadataStore(path, ttl_days=7)
        assert store.get("old") is None
        assert store.get("fresh").agent_conversation_id == "c"
        assert store.purge_expired() == 1
        assert len(json.loads(path.read_text())["sessions"]) == 1

    def test_corrupt_file(self, tmp_path):
        """A corrupt file reads as empty and is replaced on the next write."""
        path = tmp_path / "sessions.json"
        path.write_text("{oops")
        store = SessionMetadataStore(path)
        assert store.list() == []
        store.upsert("s1")
        assert store.get("s1") is not None

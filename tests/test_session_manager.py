"""Tests for the session registry and the in-flight initialization guard."""

import threading
import time
from pathlib import Path

from pushtocode.server.services.session_manager import InitGuard, SessionRegistry


class TestSessionRegistry:
    """Registry bookkeeping."""

    def test_get_or_create(self):
        """The first call creates, later calls return the same session."""
        registry = SessionRegistry()
        session, created = registry.get_or_create("s1", Path("/tmp"))
        again, created_again = registry.get_or_create("s1", Path("/other"))
        assert created and not created_again
        assert again is session
        assert session.project_path == Path("/tmp")
        assert session.channel.session_id == "s1"
        assert registry.count() == 1

    def test_remove(self):
        """Removing returns the session once."""
        registry = SessionRegistry()
        registry.get_or_create("s1", Path("/tmp"))
        assert registry.remove("s1") is not None
        assert registry.remove("s1") is None
        assert not registry.contains("s1")

    def test_idle_sessions(self):
        """Sessions idle beyond the timeout are reported."""
        registry = SessionRegistry()
        old, _ = registry.get_or_create("old", Path("/tmp"))
        registry.get_or_create("new", Path("/tmp"))
        old.last_activity_at -= 100
        assert registry.idle_sessions(50) == ["old"]

    def test_touch(self):
        """touch bumps the activity time."""
        registry = SessionRegistry()
        session, _ = registry.get_or_create("s1", Path("/tmp"))
        session.last_activity_at = 0
        registry.touch("s1")
        assert session.last_activity_at > 0
        registry.touch("unknown")

    def test_iteration_tolerates_concurrent_removal(self):
        """ids() is a snapshot that survives concurrent destroy calls."""
        registry = SessionRegistry()
        for i in range(200):
            registry.get_or_create(f"s{i}", Path("/tmp"))

        def remove_all():
            for i in range(200):
                registry.remove(f"s{i}")

        remover = threading.Thread(target=remove_all)
        remover.start()
        seen = 0
        for sid in registry.ids():
            registry.get(sid)
            seen += 1
        remover.join()
        assert registry.count() == 0
        assert seen <= 200

    def test_no_process_by_default(self):
        """A new session has no process and detaching is a no-op."""
        registry = SessionRegistry()
        session, _ = registry.get_or_create("s1", Path("/tmp"))
        assert not session.is_running
        assert not session.has_interactive_process
        assert session.detach_process() is None


class TestInitGuard:
    """Debouncing re-entrant initialization."""

    def test_begin_is_exclusive(self):
        """A second begin for the same session fails while the first is in flight."""
        guard = InitGuard(timeout=5, settle=5)
        assert guard.begin("s1")
        assert not guard.begin("s1")
        assert guard.begin("s2")
        assert guard.in_flight("s1")

    def test_marker_expires_after_settle(self):
        """end() releases the marker after the settle delay."""
        guard = InitGuard(timeout=5, settle=0.05)
        guard.begin("s1")
        guard.end("s1")
        assert guard.in_flight("s1")
        time.sleep(0.3)
        assert not guard.in_flight("s1")
        assert guard.begin("s1")

    def test_marker_times_out_without_end(self):
        """A stuck initialization does not block forever."""
        guard = InitGuard(timeout=0.05, settle=5)
        guard.begin("s1")
        time.sleep(0.3)
        assert not guard.in_flight("s1")

    def test_clear(self):
        """clear releases immediately."""
        guard = InitGuard(timeout=5)
        guard.begin("s1")
        guard.clear("s1")
        assert not guard.in_flight("s1")
        guard.end("s1")
        assert guard.begin("s1")

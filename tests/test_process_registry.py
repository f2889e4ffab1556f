"""Tests for the spawned-process registry."""

import subprocess
import sys
import threading
import time

from pushtocode.util.process_registry import ProcessRegistry


def spawn_sleeper(ignore_term: bool = False) -> subprocess.Popen:
    code = "import signal, time\n"
    if ignore_term:
        code += "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    code += "time.sleep(60)\n"
    proc = subprocess.Popen([sys.executable, "-c", code], start_new_session=True)
    # Reap in the background so the pid disappears once it dies
    threading.Thread(target=proc.wait, daemon=True).start()
    time.sleep(0.2)
    return proc


class TestProcessRegistry:
    """Tracking and terminating agent processes."""

    def test_register_writes_pidfile(self, tmp_path):
        """Registered pids are recorded on disk and removed on unregister."""
        registry = ProcessRegistry(pidfile=tmp_path / "p.pid")
        proc = spawn_sleeper()
        try:
            registry.register(proc.pid, "sleeper")
            assert str(proc.pid) in (tmp_path / "p.pid").read_text()
            assert registry.tracked_pids() == [proc.pid]
            registry.unregister(proc.pid)
            assert str(proc.pid) not in (tmp_path / "p.pid").read_text()
        finally:
            proc.kill()

    def test_terminate_escalates_to_kill(self, tmp_path):
        """A process ignoring SIGTERM is killed after the timeout."""
        registry = ProcessRegistry(pidfile=tmp_path / "p.pid")
        proc = spawn_sleeper(ignore_term=True)
        registry.register(proc.pid)
        assert registry.terminate(proc.pid, timeout=0.3) is True
        assert proc.wait(2) is not None
        assert registry.tracked_pids() == []

    def test_terminate_all(self, tmp_path):
        """terminate_all stops everything tracked."""
        registry = ProcessRegistry(pidfile=tmp_path / "p.pid")
        procs = [spawn_sleeper(), spawn_sleeper()]
        for proc in procs:
            registry.register(proc.pid)
        assert registry.terminate_all() == []
        for proc in procs:
            assert proc.wait(2) is not None

    def test_cleanup_stale_kills_orphans(self, tmp_path):
        """Entries from a previous run are killed on startup."""
        pidfile = tmp_path / "p.pid"
        proc = spawn_sleeper()
        pidfile.write_text(f"{proc.pid}:{time.time() - 3600}\n999999999:{time.time()}")
        registry = ProcessRegistry(pidfile=pidfile)
        assert registry.cleanup_stale() == [proc.pid]
        assert proc.wait(2) is not None
        assert pidfile.read_text() == ""

"""Tracking of spawned agent processes so none outlive the server.

Every agent child is recorded both in memory and in a pidfile guarded by a
file lock. On shutdown everything still tracked is terminated; on startup
entries left behind by a crashed server are reaped.
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from filelock import FileLock

logger = logging.getLogger(__name__)


@dataclass
class TrackedProcess:
    """A child process recorded in the registry."""

    pid: int
    pgid: int | None
    started_at: float
    description: str


@dataclass
class ProcessRegistry:
    """In-memory plus pidfile record of live agent processes.

    Termination escalates SIGTERM -> wait -> SIGKILL and signals the whole
    process group, since agent CLIs spawn their own helpers.
    """

    pidfile: Path = field(default_factory=lambda: Path("/tmp/pushtocode_processes.pid"))
    max_age_seconds: float = 0.0
    _processes: dict[int, TrackedProcess] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _atexit_registered: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        self.pidfile = Path(self.pidfile)
        self.pidfile.parent.mkdir(parents=True, exist_ok=True)
        self._file_lock = FileLock(str(self.pidfile) + ".lock", timeout=10)

    def register(self, pid: int, description: str = "") -> TrackedProcess:
        """Record a freshly spawned process."""
        pgid = None
        try:
            pgid = os.getpgid(pid)
        except (ProcessLookupError, OSError):
            pass

        tracked = TrackedProcess(
            pid=pid,
            pgid=pgid,
            started_at=time.time(),
            description=description,
        )
        with self._lock:
            self._processes[pid] = tracked
            self._write_to_pidfile(pid, tracked.started_at)

        self._ensure_atexit_registered()
        return tracked

    def unregister(self, pid: int) -> None:
        """Forget a process (after it has exited)."""
        with self._lock:
            self._processes.pop(pid, None)
            self._remove_from_pidfile(pid)

    def tracked_pids(self) -> list[int]:
        with self._lock:
            return list(self._processes)

    def terminate(self, pid: int, timeout: float = 2.0) -> bool:
        """Terminate a process with SIGTERM, escalating to SIGKILL after ``timeout``.

        Returns:
            True if the process is confirmed gone
        """
        with self._lock:
            tracked = self._processes.get(pid)
        pgid = tracked.pgid if tracked else None

        if not self._signal(pid, pgid, signal.SIGTERM):
            self.unregister(pid)
            return True

        deadline = time.time() + timeout
        while time.time() < deadline:
            if not self._is_running(pid):
                self.unregister(pid)
                return True
            time.sleep(0.1)

        logger.warning("Process %s ignored SIGTERM, sending SIGKILL", pid)
        if not self._signal(pid, pgid, signal.SIGKILL):
            self.unregister(pid)
            return True

        time.sleep(0.2)
        if not self._is_running(pid):
            self.unregister(pid)
            return True
        return False

    def terminate_all(self) -> list[int]:
        """Terminate every tracked process.

        Returns:
            PIDs that could not be terminated
        """
        failed = []
        for pid in self.tracked_pids():
            if not self.terminate(pid):
                failed.append(pid)
        return failed

    def cleanup_stale(self) -> list[int]:
        """Kill pidfile entries left by a previous server run.

        Entries older than ``max_age_seconds`` that are not tracked by this
        registry instance are considered orphans.

        Returns:
            PIDs that were killed
        """
        killed = []
        now = time.time()
        with self._lock:
            live = set(self._processes)

        with self._file_lock:
            remaining = []
            for pid, started_at in self._read_pidfile_entries():
                if not self._is_running(pid):
                    continue
                if pid in live or now - started_at < self.max_age_seconds:
                    remaining.append((pid, started_at))
                    continue
                logger.info("Reaping orphaned agent process %s", pid)
                try:
                    os.kill(pid, signal.SIGKILL)
                    killed.append(pid)
                except (ProcessLookupError, PermissionError, OSError):
                    pass
            self._write_pidfile_entries(remaining)

        return killed

    @staticmethod
    def _signal(pid: int, pgid: int | None, sig: int) -> bool:
        """Send ``sig`` to the process group (or pid). Returns False if already gone."""
        try:
            if pgid:
                os.killpg(pgid, sig)
            else:
                os.kill(pid, sig)
            return True
        except (ProcessLookupError, PermissionError, OSError):
            return False

    @staticmethod
    def _is_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
            return True
        except (ProcessLookupError, PermissionError, OSError):
            return False

    def _read_pidfile_entries(self) -> list[tuple[int, float]]:
        """Read entries (call with file lock held)."""
        if not self.pidfile.exists():
            return []
        try:
            entries = []
            for line in self.pidfile.read_text().strip().split("\n"):
                if line:
                    parts = line.split(":")
                    if len(parts) == 2:
                        entries.append((int(parts[0]), float(parts[1])))
            return entries
        except (ValueError, OSError):
            return []

    def _write_pidfile_entries(self, entries: list[tuple[int, float]]) -> None:
        """Write entries (call with file lock held)."""
        try:
            self.pidfile.write_text("\n".join(f"{pid}:{ts}" for pid, ts in entries))
        except OSError:
            logger.warning("Could not write pidfile %s", self.pidfile)

    def _write_to_pidfile(self, pid: int, started_at: float) -> None:
        with self._file_lock:
            entries = self._read_pidfile_entries()
            entries.append((pid, started_at))
            self._write_pidfile_entries(entries)

    def _remove_from_pidfile(self, pid: int) -> None:
        with self._file_lock:
            entries = [(p, t) for p, t in self._read_pidfile_entries() if p != pid]
            self._write_pidfile_entries(entries)

    def _ensure_atexit_registered(self) -> None:
        if not self._atexit_registered:
            atexit.register(self.terminate_all)
            self._atexit_registered = True

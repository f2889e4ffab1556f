"""Tests for the cancel-and-reschedule timer."""

import threading
import time

from pushtocode.util.debounce import Debouncer


class TestDebouncer:
    """Debouncer behavior."""

    def test_fires_once_after_delay(self):
        """A scheduled callback runs once with its arguments."""
        calls = []
        done = threading.Event()
        debouncer = Debouncer()
        debouncer.schedule(0.05, lambda x: (calls.append(x), done.set()), 42)
        assert debouncer.pending
        assert done.wait(2)
        assert calls == [42]
        assert not debouncer.pending

    def test_reschedule_replaces_pending(self):
        """Rescheduling does not stack callbacks."""
        calls = []
        debouncer = Debouncer()
        for i in range(5):
            debouncer.schedule(0.1, calls.append, i)
        time.sleep(0.4)
        assert calls == [4]

    def test_cancel(self):
        """A cancelled callback never runs."""
        calls = []
        debouncer = Debouncer()
        debouncer.schedule(0.05, calls.append, 1)
        assert debouncer.cancel() is True
        time.sleep(0.2)
        assert calls == []
        assert debouncer.cancel() is False

"""Cancel-and-reschedule timer primitive shared by buffer sync and init tracking."""

from __future__ import annotations

import threading
from typing import Any, Callable


class Debouncer:
    """Runs a callback once after a delay.

    Scheduling again before the timer fires replaces the pending callback
    instead of stacking a second one. Callbacks run on a daemon timer thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._generation = 0

    def schedule(self, delay: float, callback: Callable[..., Any], *args: Any) -> None:
        """Schedule ``callback(*args)`` after ``delay`` seconds, replacing any pending run."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = threading.Timer(
                max(delay, 0.0),
                self._fire,
                args=(self._generation, callback, args),
            )
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self) -> bool:
        """Cancel the pending callback.

        Returns:
            True if a callback was pending
        """
        with self._lock:
            pending = self._timer is not None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            return pending

    @property
    def pending(self) -> bool:
        """Whether a callback is scheduled and has not fired yet."""
        with self._lock:
            return self._timer is not None

    def _fire(self, generation: int, callback: Callable[..., Any], args: tuple) -> None:
        with self._lock:
            # A cancel/reschedule raced with the timer thread
            if generation != self._generation:
                return
            self._timer = None
        callback(*args)

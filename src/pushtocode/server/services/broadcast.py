"""Per-session event fan-out.

Producers (PTY reader threads, timers, the supervisor) publish SessionEvents
onto a SessionChannel. Each WebSocket connection holds a Subscription: a
thread-safe queue it drains from the event loop. Revoking a subscription is
an explicit ``close()`` on the handle.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

logger = logging.getLogger(__name__)

EventType = Literal[
    "started",
    "output",
    "error",
    "auth_required",
    "auth_success",
    "auth_failed",
    "exit",
    "terminal_buffer",
    "destroyed",
]

ExitReason = Literal["normal", "stopped"]

SUBSCRIBER_QUEUE_SIZE = 5000
POLL_INTERVAL = 0.02


@dataclass
class SessionEvent:
    """Something that happened to a session, before it is framed for the wire."""

    type: EventType
    session_id: str
    content: str = ""
    output_type: str = "text"
    is_final: bool = False
    auth_url: str | None = None
    exit_code: int | None = None
    reason: ExitReason = "normal"
    buffer: dict[str, Any] | None = None
    code: str | None = None


@dataclass(eq=False)
class Subscription:
    """A subscriber's handle on a channel.

    Events are queued from any thread. Iterate with ``async for`` on the event
    loop; iteration ends once the subscription is closed and drained.
    """

    channel: "SessionChannel"
    id: int
    _queue: queue.Queue = field(default_factory=lambda: queue.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE))
    closed: bool = False

    def put(self, event: SessionEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            # Keep the newest state: drop the oldest queued event
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            logger.warning("Subscriber %s on session %s is lagging, dropped an event",
                           self.id, self.channel.session_id)
            self._queue.put_nowait(event)

    def get_nowait(self) -> SessionEvent | None:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def close(self) -> None:
        """Revoke this subscription. Already queued events can still be drained."""
        self.closed = True
        self.channel._remove(self)

    async def __aiter__(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = self.get_nowait()
            if event is not None:
                yield event
                if event.type == "destroyed":
                    return
                continue
            if self.closed:
                return
            await asyncio.sleep(POLL_INTERVAL)


class SessionChannel:
    """Broadcast channel for one session."""

    _ids = itertools.count(1)

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        subscription = Subscription(channel=self, id=next(self._ids))
        with self._lock:
            if self._closed:
                subscription.closed = True
            else:
                self._subscribers.append(subscription)
        return subscription

    def publish(self, event: SessionEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.put(event)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        """Revoke every subscription. Later subscribe() calls get a closed handle."""
        with self._lock:
            self._closed = True
            subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription.closed = True

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

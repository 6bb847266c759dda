"""Change-detection broadcaster: one poll loop, many stream subscribers.

A timer rebuilds the full dashboard state on a fixed interval, whether or
not anyone is listening. The canonical serialization is compared with the
cached one, and only a real change is pushed to subscribers. Subscribers
are explicit ``Subscription`` handles owned by the broadcaster; attaching
and detaching are the only external operations on the fan-out set.

Ordering: the rebuild and the publish decision run under a single
``asyncio.Lock``, so scans never overlap and a subscriber never sees an
older snapshot after a newer one, nor the same snapshot twice in a row.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agentboard.errors import SubscriberWriteError
from agentboard.snapshot import serialize_state, state_signature

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = float(os.environ.get("AGENTBOARD_POLL_INTERVAL", "1.0"))
DEFAULT_KEEPALIVE_INTERVAL = float(os.environ.get("AGENTBOARD_KEEPALIVE_INTERVAL", "15.0"))
SUBSCRIBER_QUEUE_SIZE = 64

PHASE_IDLE = "idle"
PHASE_STREAMING = "streaming"


@dataclass(frozen=True)
class Event:
    """One message queued for a subscriber."""

    name: str
    data: str = ""


KEEPALIVE = Event("keepalive")
CLOSED = Event("closed")

_subscription_ids = itertools.count(1)


class Subscription:
    """A single stream subscriber's bounded inbox."""

    __slots__ = ("id", "_queue", "_closed")

    def __init__(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self.id = next(_subscription_ids)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: Event) -> None:
        """Queue *event* without blocking; a full or closed inbox is a write failure."""
        if self._closed:
            raise SubscriberWriteError(f"subscription {self.id} is closed")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull as e:
            raise SubscriberWriteError(f"subscription {self.id} is not draining") from e

    async def get(self) -> Event:
        if self._closed and self._queue.empty():
            return CLOSED
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake a reader blocked in get(); a full inbox means it is not reading.
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(CLOSED)


class StateBroadcaster:
    """Polls the queue state and fans distinct snapshots out to subscribers."""

    def __init__(
        self,
        build: Callable[[], dict[str, Any]],
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        queue_size: int = SUBSCRIBER_QUEUE_SIZE,
    ) -> None:
        self._build = build
        self._poll_interval = poll_interval
        self._keepalive_interval = keepalive_interval
        self._queue_size = queue_size

        self._subscribers: set[Subscription] = set()
        self._lock = asyncio.Lock()
        # (serialized, signature); replaced as a whole by the locked refresh path.
        self._current: tuple[str, str] | None = None
        self._tasks: list[asyncio.Task[None]] = []

    # -- Introspection ----------------------------------------------------

    @property
    def phase(self) -> str:
        return PHASE_STREAMING if self._subscribers else PHASE_IDLE

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def current(self) -> str | None:
        """Last serialized state, or ``None`` before the first build."""
        current = self._current
        return current[0] if current else None

    # -- Refresh / publish ------------------------------------------------

    async def refresh(self) -> str:
        """Rebuild the state and publish it if it changed.

        Returns the serialized current state either way.
        """
        async with self._lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> str:
        state = await asyncio.to_thread(self._build)
        serialized = serialize_state(state)
        signature = state_signature(serialized)
        current = self._current
        if current is not None and current[1] == signature:
            return current[0]
        self._current = (serialized, signature)
        if current is not None:
            log.debug("State changed; publishing to %d subscriber(s)", len(self._subscribers))
        self._publish(Event("state", serialized))
        return serialized

    def _publish(self, event: Event) -> None:
        for sub in list(self._subscribers):
            try:
                sub.push(event)
            except SubscriberWriteError as e:
                log.debug("Dropping subscriber: %s", e)
                self._remove(sub)

    # -- Subscribers ------------------------------------------------------

    async def subscribe(self) -> Subscription:
        """Attach a subscriber; it receives the current state immediately."""
        sub = Subscription(self._queue_size)
        async with self._lock:
            current = self._current
            serialized = current[0] if current else await self._refresh_locked()
            sub.push(Event("state", serialized))
            was_idle = not self._subscribers
            self._subscribers.add(sub)
        if was_idle:
            log.info("Broadcaster %s -> %s", PHASE_IDLE, PHASE_STREAMING)
        log.info("Subscriber %d attached (total: %d)", sub.id, len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub not in self._subscribers:
            sub.close()
            return
        self._remove(sub)
        log.info("Subscriber %d detached (total: %d)", sub.id, len(self._subscribers))

    def _remove(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)
        sub.close()
        if not self._subscribers:
            log.info("Broadcaster %s -> %s", PHASE_STREAMING, PHASE_IDLE)

    # -- Timers -----------------------------------------------------------

    def send_keepalive(self) -> None:
        self._publish(KEEPALIVE)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.refresh()
            except Exception:
                log.exception("State refresh failed; retrying next tick")

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            self.send_keepalive()

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._poll_loop()),
            asyncio.create_task(self._keepalive_loop()),
        ]
        log.info(
            "Broadcaster started (poll %.1fs, keep-alive %.1fs)",
            self._poll_interval,
            self._keepalive_interval,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        for sub in list(self._subscribers):
            self._remove(sub)
        log.info("Broadcaster stopped")

"""Tests for the change-detection broadcaster.

Uses a real queue tree in tmp_path and drives ``refresh()`` directly instead
of waiting on the timer, except where the timer itself is under test.
"""

from __future__ import annotations

import asyncio
import functools
import json

import pytest

from agentboard.broadcaster import (
    CLOSED,
    KEEPALIVE,
    PHASE_IDLE,
    PHASE_STREAMING,
    Event,
    StateBroadcaster,
    Subscription,
)
from agentboard.errors import SubscriberWriteError
from agentboard.snapshot import build_state


def _broadcaster(queue, **kwargs) -> StateBroadcaster:
    return StateBroadcaster(functools.partial(build_state, queue.paths, "webui"), **kwargs)


def _drain(sub: Subscription) -> list[Event]:
    """Everything queued for *sub* so far, without blocking."""
    events: list[Event] = []
    while not sub._queue.empty():
        events.append(sub._queue.get_nowait())
    return events


def _states(events: list[Event]) -> list[dict]:
    return [json.loads(e.data) for e in events if e.name == "state"]


class TestSubscription:
    @pytest.mark.asyncio
    async def test_full_inbox_is_a_write_error(self) -> None:
        sub = Subscription(maxsize=1)
        sub.push(Event("state", "{}"))
        with pytest.raises(SubscriberWriteError):
            sub.push(Event("state", "{}"))

    @pytest.mark.asyncio
    async def test_closed_subscription_rejects_and_wakes(self) -> None:
        sub = Subscription()
        sub.close()
        with pytest.raises(SubscriberWriteError):
            sub.push(KEEPALIVE)
        assert await sub.get() == CLOSED
        assert await sub.get() == CLOSED


class TestChangeDetection:
    @pytest.mark.asyncio
    async def test_unchanged_queue_causes_no_broadcast(self, queue) -> None:
        queue.enqueue("t1", created="2024-01-01T00:00:00Z")
        broadcaster = _broadcaster(queue)
        sub = await broadcaster.subscribe()
        assert len(_states(_drain(sub))) == 1

        first = await broadcaster.refresh()
        second = await broadcaster.refresh()

        assert first == second
        assert _drain(sub) == []

    @pytest.mark.asyncio
    async def test_one_status_change_one_broadcast(self, queue) -> None:
        queue.enqueue("t1", created="2024-01-01T00:00:00Z")
        queue.enqueue("t2", created="2024-01-02T00:00:00Z")
        broadcaster = _broadcaster(queue)
        sub = await broadcaster.subscribe()
        (initial,) = _states(_drain(sub))

        queue.start("t1")
        await broadcaster.refresh()
        await broadcaster.refresh()

        (update,) = _states(_drain(sub))
        before = {c["id"]: c for c in initial["chains"]}
        after = {c["id"]: c for c in update["chains"]}
        changed = [cid for cid in after if after[cid] != before.get(cid)]
        assert changed == ["manual:t1"]
        assert after["manual:t1"]["status"] == "working"

    @pytest.mark.asyncio
    async def test_every_subscriber_gets_the_update(self, queue) -> None:
        broadcaster = _broadcaster(queue)
        subs = [await broadcaster.subscribe() for _ in range(3)]
        for sub in subs:
            _drain(sub)

        queue.enqueue("t1")
        await broadcaster.refresh()

        for sub in subs:
            (state,) = _states(_drain(sub))
            assert [c["id"] for c in state["chains"]] == ["manual:t1"]


class TestSubscribers:
    @pytest.mark.asyncio
    async def test_attach_pushes_current_state_once(self, queue) -> None:
        queue.enqueue("t1")
        broadcaster = _broadcaster(queue)
        await broadcaster.refresh()
        early = await broadcaster.subscribe()
        _drain(early)

        late = await broadcaster.subscribe()

        events = _drain(late)
        assert len(events) == 1
        assert events[0].data == broadcaster.current
        assert _drain(early) == []

    @pytest.mark.asyncio
    async def test_phase_follows_subscriber_count(self, queue) -> None:
        broadcaster = _broadcaster(queue)
        assert broadcaster.phase == PHASE_IDLE

        sub = await broadcaster.subscribe()
        assert broadcaster.phase == PHASE_STREAMING

        broadcaster.unsubscribe(sub)
        assert broadcaster.phase == PHASE_IDLE
        assert sub.closed
        # Detaching twice is harmless.
        broadcaster.unsubscribe(sub)

    @pytest.mark.asyncio
    async def test_stalled_subscriber_dropped_others_unaffected(self, queue) -> None:
        broadcaster = _broadcaster(queue, queue_size=1)
        stalled = await broadcaster.subscribe()
        healthy = await broadcaster.subscribe()
        _drain(healthy)

        queue.enqueue("t1")
        await broadcaster.refresh()

        assert broadcaster.subscriber_count == 1
        assert stalled.closed
        assert len(_states(_drain(healthy))) == 1

    @pytest.mark.asyncio
    async def test_keepalive_is_not_a_state_event(self, queue) -> None:
        broadcaster = _broadcaster(queue)
        sub = await broadcaster.subscribe()
        _drain(sub)

        broadcaster.send_keepalive()

        assert _drain(sub) == [KEEPALIVE]
        assert KEEPALIVE.name != "state"


class TestTimers:
    @pytest.mark.asyncio
    async def test_poll_loop_publishes_changes(self, queue) -> None:
        broadcaster = _broadcaster(queue, poll_interval=0.01, keepalive_interval=60)
        sub = await broadcaster.subscribe()
        await sub.get()
        await broadcaster.start()
        try:
            queue.enqueue("t1")
            event = await asyncio.wait_for(sub.get(), timeout=5)
        finally:
            await broadcaster.stop()

        assert event.name == "state"
        assert json.loads(event.data)["chains"][0]["id"] == "manual:t1"
        assert broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_poll_loop_survives_build_errors(self, queue) -> None:
        calls = 0

        def flaky_build() -> dict:
            nonlocal calls
            calls += 1
            if calls == 2:
                raise RuntimeError("boom")
            return {"calls": calls}

        broadcaster = StateBroadcaster(flaky_build, poll_interval=0.01, keepalive_interval=60)
        sub = await broadcaster.subscribe()
        await sub.get()
        await broadcaster.start()
        try:
            event = await asyncio.wait_for(sub.get(), timeout=5)
        finally:
            await broadcaster.stop()

        assert json.loads(event.data)["calls"] >= 3

    @pytest.mark.asyncio
    async def test_keepalive_loop(self, queue) -> None:
        broadcaster = _broadcaster(queue, poll_interval=60, keepalive_interval=0.01)
        sub = await broadcaster.subscribe()
        await sub.get()
        await broadcaster.start()
        try:
            event = await asyncio.wait_for(sub.get(), timeout=5)
        finally:
            await broadcaster.stop()

        assert event == KEEPALIVE

    @pytest.mark.asyncio
    async def test_stop_closes_subscribers(self, queue) -> None:
        broadcaster = _broadcaster(queue, poll_interval=60, keepalive_interval=60)
        sub = await broadcaster.subscribe()
        await sub.get()
        await broadcaster.start()

        await broadcaster.stop()

        assert await sub.get() == CLOSED

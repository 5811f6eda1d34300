import asyncio
import threading

import pytest

from voipfix.core.event_bus import EventBus
from voipfix.core.events import CallStateChanged, PollTick, ProximityChanged, RoutingChanged
from voipfix.core.timer import LoopTimer


@pytest.mark.asyncio
async def test_events_dispatched_in_publish_order():
    received = []
    bus = EventBus(received.append, poll_interval_ms=60_000)
    await bus.start()
    try:
        bus.publish(CallStateChanged(active=True))
        bus.publish(RoutingChanged())
        bus.publish(ProximityChanged(near=True))
        await bus.drain()
    finally:
        await bus.stop()

    assert received == [CallStateChanged(active=True), RoutingChanged(), ProximityChanged(near=True)]
    assert bus.dispatched == 3


@pytest.mark.asyncio
async def test_publish_from_foreign_thread():
    received = []
    bus = EventBus(received.append, poll_interval_ms=60_000)
    await bus.start()
    try:
        worker = threading.Thread(target=lambda: bus.publish(ProximityChanged(near=False)))
        worker.start()
        worker.join()
        await asyncio.sleep(0)
        await bus.drain()
    finally:
        await bus.stop()

    assert received == [ProximityChanged(near=False)]


@pytest.mark.asyncio
async def test_handler_failure_does_not_stop_dispatch():
    received = []

    def handler(event):
        if isinstance(event, RoutingChanged):
            raise RuntimeError("boom")
        received.append(event)

    bus = EventBus(handler, poll_interval_ms=60_000)
    await bus.start()
    try:
        bus.publish(RoutingChanged())
        bus.publish(CallStateChanged(active=False))
        await bus.drain()
        assert bus.running
    finally:
        await bus.stop()

    assert received == [CallStateChanged(active=False)]


@pytest.mark.asyncio
async def test_poll_tick_published_periodically():
    received = []
    bus = EventBus(received.append, poll_interval_ms=10)
    await bus.start()
    try:
        await asyncio.sleep(0.1)
        await bus.drain()
    finally:
        await bus.stop()

    assert any(isinstance(e, PollTick) for e in received)


@pytest.mark.asyncio
async def test_publish_after_stop_is_dropped():
    received = []
    bus = EventBus(received.append)
    await bus.start()
    await bus.stop()

    bus.publish(RoutingChanged())

    assert not bus.running
    assert received == []


@pytest.mark.asyncio
async def test_loop_timer_fires_on_event_loop():
    timer = LoopTimer()
    fired = asyncio.Event()
    start = timer.now_ms()

    timer.after(20, fired.set)
    await asyncio.wait_for(fired.wait(), timeout=1.0)

    assert timer.now_ms() - start >= 15


@pytest.mark.asyncio
async def test_loop_timer_handle_cancel():
    timer = LoopTimer()
    fired = []

    handle = timer.after(10, lambda: fired.append(True))
    handle.cancel()
    await asyncio.sleep(0.05)

    assert fired == []

"""
EventBus - serializes port notifications and the poll tick onto one loop.

Port callbacks may arrive from any thread; they are marshalled onto the
event loop with ``call_soon_threadsafe`` into a single asyncio.Queue. A
consumer task dispatches events one at a time, so the controller never sees
concurrent mutation. A handler failure is logged and the bus keeps running.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Callable, Optional

from voipfix.core.events import Event, PollTick
from voipfix.logging_config import get_logger

logger = get_logger(__name__)


class EventBus:
    def __init__(
        self,
        handler: Callable[[Event], None],
        poll_interval_ms: int = 500,
    ) -> None:
        self._handler = handler
        self.poll_interval_ms = poll_interval_ms

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None
        self.dispatched = 0

    @property
    def running(self) -> bool:
        return self._consumer is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self.running:
            logger.warning("Event bus already running")
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._consumer = self._loop.create_task(self._consume(), name="voipfix-event-bus")
        self._ticker = self._loop.create_task(self._tick(), name="voipfix-poll-tick")
        logger.info("Event bus started", poll_interval_ms=self.poll_interval_ms)

    async def stop(self) -> None:
        tasks = [t for t in (self._ticker, self._consumer) if t is not None]
        self._ticker = None
        self._consumer = None
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._queue = None
        self._loop = None
        logger.info("Event bus stopped", dispatched=self.dispatched)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def publish(self, event: Event) -> None:
        """Enqueue ``event``; safe to call from any thread."""
        loop, queue = self._loop, self._queue
        if loop is None or queue is None:
            logger.debug("Event dropped; bus not running", event_type=type(event).__name__)
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, event)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug("Event dropped; loop closed", event_type=type(event).__name__)

    async def drain(self) -> None:
        """Wait until every event published so far has been dispatched."""
        if self._queue is not None:
            # Let call_soon_threadsafe callbacks land in the queue first
            await asyncio.sleep(0)
            await self._queue.join()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _consume(self) -> None:
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                self._handler(event)
                self.dispatched += 1
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_type=type(event).__name__,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def _tick(self) -> None:
        interval = self.poll_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.publish(PollTick())

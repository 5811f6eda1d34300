"""Timer facility: a millisecond clock plus non-blocking delayed callbacks.

LoopTimer runs on the asyncio event loop, which is also where the event bus
dispatches, so timer callbacks and incoming events are totally ordered.
ManualTimer is a virtual clock for deterministic tests and simulations.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Callable, List, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timer(Protocol):
    def now_ms(self) -> float: ...

    def after(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopTimer:
    """Timer backed by ``loop.call_later``."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def now_ms(self) -> float:
        return self._loop.time() * 1000.0

    def after(self, delay_ms: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._loop.call_later(max(0.0, delay_ms) / 1000.0, callback)


class _ManualHandle:
    __slots__ = ("due", "seq", "callback", "cancelled")

    def __init__(self, due: float, seq: int, callback: Callable[[], None]) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: "_ManualHandle") -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class ManualTimer:
    """Virtual clock: time only moves when ``advance``/``advance_to`` is called.

    Callbacks due at the same instant run in registration order. A callback
    may register further callbacks; those still fire within the same advance
    if they fall inside the window.
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = start_ms
        self._heap: List[_ManualHandle] = []
        self._seq = itertools.count()

    def now_ms(self) -> float:
        return self._now

    def after(self, delay_ms: float, callback: Callable[[], None]) -> _ManualHandle:
        handle = _ManualHandle(self._now + max(0.0, delay_ms), next(self._seq), callback)
        heapq.heappush(self._heap, handle)
        return handle

    def advance(self, delta_ms: float) -> None:
        self.advance_to(self._now + delta_ms)

    def advance_to(self, target_ms: float) -> None:
        if target_ms < self._now:
            raise ValueError(f"Cannot move the clock backwards ({target_ms} < {self._now})")
        while self._heap and self._heap[0].due <= target_ms:
            handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            self._now = handle.due
            handle.callback()
        self._now = target_ms

    @property
    def pending(self) -> int:
        return sum(1 for h in self._heap if not h.cancelled)

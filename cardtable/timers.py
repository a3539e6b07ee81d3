from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Callable, Dict, List, Optional, Tuple

# Request expiry is the only time-driven transition. Schedulers only decide
# *when* a callback runs; the callback always re-enters the session through
# handle_action, so dispatch stays one action at a time.


class TimerHandle:
    def __init__(self, when: float) -> None:
        self.when = when
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        # Cancelling after the callback already ran is a no-op.
        self.cancelled = True


class ManualScheduler:
    """Clock-driven scheduler. Nothing fires until ``advance`` is called."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self._queue: List[Tuple[float, int, TimerHandle, Callable[[], None]]] = []
        self._counter = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now + delay)
        heapq.heappush(self._queue, (handle.when, next(self._counter), handle, callback))
        return handle

    def advance(self, seconds: float) -> int:
        """Move the clock forward and run every due callback. Returns how many ran."""
        self.now += seconds
        ran = 0
        while self._queue and self._queue[0][0] <= self.now:
            _, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            handle.fired = True
            callback()
            ran += 1
        return ran

    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)


class LoopScheduler:
    """Runs callbacks on an asyncio event loop via ``call_later``."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, callback)


class RequestTimers:
    """At most one live timer per request kind."""

    def __init__(self, scheduler) -> None:
        self.scheduler = scheduler
        self._handles: Dict[str, object] = {}

    def start(self, kind: str, delay: float, callback: Callable[[], None]) -> None:
        self.cancel(kind)
        if delay <= 0:
            return

        def fire() -> None:
            self._handles.pop(kind, None)
            callback()

        self._handles[kind] = self.scheduler.call_later(delay, fire)

    def cancel(self, kind: str) -> None:
        handle = self._handles.pop(kind, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for kind in list(self._handles):
            self.cancel(kind)

    def active(self) -> List[str]:
        return sorted(self._handles)

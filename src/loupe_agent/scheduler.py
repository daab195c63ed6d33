"""
Delivery scheduling: adaptive interval, timers and coalescing.

All callbacks run on the event loop thread. Timers are never interrupted;
a pending delivery timer is superseded by re-arming it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Protocol

from loguru import logger

from .metrics import DELIVERY_INTERVAL_MS

DEFAULT_INTERVAL_MS = 10
MAX_INTERVAL_MS = 960_000


class DeliveryInterval:
    """Delay before the next delivery attempt, tuned by attempt outcomes.

    Below 10s the interval moves by a factor of 10, above 30s by a factor
    of 2, capped at 16 minutes. A success at exactly 10s drops straight to
    1s rather than stepping through 30s.
    """

    def __init__(self) -> None:
        self._value = DEFAULT_INTERVAL_MS
        DELIVERY_INTERVAL_MS.set(self._value)

    @property
    def value(self) -> int:
        return self._value

    @property
    def is_default(self) -> bool:
        return self._value == DEFAULT_INTERVAL_MS

    def update(self, call_failed: bool) -> int:
        """Apply one completed attempt and return the new interval."""
        self._value = self._next(self._value, call_failed)
        DELIVERY_INTERVAL_MS.set(self._value)
        return self._value

    @staticmethod
    def _next(current: int, call_failed: bool) -> int:
        if not call_failed and current == DEFAULT_INTERVAL_MS:
            return current

        if current < 10_000:
            if call_failed:
                return current * 10
            return max(current // 10, DEFAULT_INTERVAL_MS)

        if current == 10_000:
            return 30_000 if call_failed else 1_000

        if not call_failed and current == 30_000:
            return 10_000

        if call_failed:
            if current < MAX_INTERVAL_MS:
                return min(current * 2, MAX_INTERVAL_MS)
            return current

        return current // 2

    def reset(self, interval: Optional[int]) -> int:
        """Lower the interval to ``interval`` (at least 10); never raises it."""
        new_interval = max(interval or DEFAULT_INTERVAL_MS, DEFAULT_INTERVAL_MS)
        if new_interval < self._value:
            self._value = new_interval
            DELIVERY_INTERVAL_MS.set(self._value)
        return self._value


class TaskHandle(Protocol):
    def cancel(self) -> None: ...

    def when(self) -> float: ...


class TaskScheduler(Protocol):
    """Schedule/cancel interface over the host's timer facility."""

    def time(self) -> float:
        """Current time in seconds on the scheduler's clock."""
        ...

    def call_later(self, delay_ms: float, callback: Callable[[], Any]) -> TaskHandle: ...


class AsyncioTaskScheduler:
    """TaskScheduler backed by an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()

    def time(self) -> float:
        return self._loop.time()

    def call_later(self, delay_ms: float, callback: Callable[[], Any]) -> TaskHandle:
        return self._loop.call_later(delay_ms / 1000.0, callback)


class CoalescingScheduler:
    """Debounce: only the last call in a burst runs, ``delay_ms`` after it.

    ``flush()`` runs the pending call immediately and must be called on
    teardown so the last update is not lost.
    """

    def __init__(self, tasks: TaskScheduler, delay_ms: float, func: Callable[..., Any]):
        self._tasks = tasks
        self._delay_ms = delay_ms
        self._func = func
        self._handle: Optional[TaskHandle] = None
        self._pending: Optional[tuple] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def __call__(self, *args: Any) -> None:
        self.cancel()
        if self._delay_ms <= 0:
            self._func(*args)
            return
        self._pending = args
        self._handle = self._tasks.call_later(self._delay_ms, self._fire)

    def _fire(self) -> None:
        args = self._pending
        self._handle = None
        self._pending = None
        if args is not None:
            self._func(*args)

    def flush(self) -> bool:
        """Run the pending call now. Returns False when nothing was pending."""
        if self._pending is None:
            return False
        if self._handle is not None:
            self._handle.cancel()
        self._fire()
        return True

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._pending = None


class DeliveryScheduler:
    """Keeps at most one delivery timer live.

    ``schedule()`` arms the timer after the current interval only when
    ``has_pending()`` reports queued work. A live timer that already fires
    no later than the new deadline is kept, so a stream of writes cannot
    postpone delivery indefinitely.
    """

    def __init__(
        self,
        interval: DeliveryInterval,
        has_pending: Callable[[], bool],
        on_fire: Callable[[], Any],
    ):
        self._interval = interval
        self._has_pending = has_pending
        self._on_fire = on_fire
        self._tasks: Optional[TaskScheduler] = None
        self._handle: Optional[TaskHandle] = None

    def bind(self, tasks: Optional[TaskScheduler]) -> None:
        self.cancel()
        self._tasks = tasks

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def schedule(self) -> bool:
        if self._tasks is None or not self._has_pending():
            return False

        deadline = self._tasks.time() + self._interval.value / 1000.0
        if self._handle is not None:
            if self._handle.when() <= deadline:
                return True
            self._handle.cancel()

        logger.debug(f"Delivery attempt scheduled in {self._interval.value}ms")
        self._handle = self._tasks.call_later(self._interval.value, self._fire)
        return True

    def _fire(self) -> None:
        self._handle = None
        self._on_fire()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

"""Clock and timer abstractions for stage timers, sweeps and heartbeats.

Production code runs on :class:`AsyncioScheduler`; tests and the replay CLI
use :class:`VirtualScheduler`, which only moves time when asked to.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Protocol

from octodoc.metrics.observability import get_logger

AsyncCallback = Callable[..., Awaitable[Any]]

_logger = get_logger("scheduling")


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current UTC time."""

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""


class TimerHandle(Protocol):
    def cancel(self) -> None:
        """Cancel the timer; a no-op once it has fired."""

    @property
    def cancelled(self) -> bool:
        """Whether ``cancel`` was called before the timer fired."""


class Scheduler(Clock, Protocol):
    def call_later(self, delay: float, callback: AsyncCallback, *args: Any) -> TimerHandle:
        """Run ``await callback(*args)`` after ``delay`` seconds."""

    def shutdown(self) -> None:
        """Cancel every pending timer."""


class _AsyncioTimer:
    def __init__(self, scheduler: "AsyncioScheduler") -> None:
        self._scheduler = scheduler
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[Any] | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._scheduler._timers.discard(self)


class AsyncioScheduler:
    """Scheduler backed by the running event loop."""

    def __init__(self) -> None:
        self._timers: set[_AsyncioTimer] = set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))

    def call_later(self, delay: float, callback: AsyncCallback, *args: Any) -> _AsyncioTimer:
        loop = asyncio.get_running_loop()
        timer = _AsyncioTimer(self)

        def _spawn() -> None:
            timer._handle = None
            task = loop.create_task(_run_callback(callback, args))
            timer._task = task
            task.add_done_callback(lambda _: self._timers.discard(timer))

        timer._handle = loop.call_later(max(0.0, delay), _spawn)
        self._timers.add(timer)
        return timer

    def pending(self) -> int:
        return len(self._timers)

    def shutdown(self) -> None:
        for timer in list(self._timers):
            timer.cancel()


class _VirtualTimer:
    def __init__(self, scheduler: "VirtualScheduler", due: float, callback: AsyncCallback, args: tuple[Any, ...]) -> None:
        self._scheduler = scheduler
        self.due = due
        self.callback = callback
        self.args = args
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class VirtualScheduler:
    """Deterministic virtual-time scheduler.

    Timers fire only inside :meth:`advance` / :meth:`run_until_idle`, in due-time
    order (ties broken by scheduling order). ``sleep`` moves virtual time forward
    without running timers so retry backoff never blocks a test.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._queue: list[tuple[float, int, _VirtualTimer]] = []
        self._sequence = itertools.count()
        self.slept: list[float] = []

    @property
    def elapsed(self) -> float:
        return self._elapsed

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.slept.append(seconds)
        self._elapsed += seconds

    def call_later(self, delay: float, callback: AsyncCallback, *args: Any) -> _VirtualTimer:
        timer = _VirtualTimer(self, self._elapsed + max(0.0, delay), callback, args)
        heapq.heappush(self._queue, (timer.due, next(self._sequence), timer))
        return timer

    def pending(self) -> int:
        return sum(1 for _, _, timer in self._queue if not timer.cancelled)

    async def advance(self, seconds: float) -> int:
        """Move time forward by ``seconds`` running every timer that falls due."""

        target = self._elapsed + max(0.0, seconds)
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._elapsed = max(self._elapsed, due)
            await _run_callback(timer.callback, timer.args)
            fired += 1
        self._elapsed = max(self._elapsed, target)
        return fired

    async def run_until_idle(self, *, limit: float = 3600.0) -> int:
        """Fire timers until none remain or ``limit`` virtual seconds have passed."""

        deadline = self._elapsed + limit
        fired = 0
        while True:
            live = [entry for entry in self._queue if not entry[2].cancelled]
            if not live:
                break
            due = min(entry[0] for entry in live)
            if due > deadline:
                break
            fired += await self.advance(due - self._elapsed)
        return fired

    def shutdown(self) -> None:
        for _, _, timer in self._queue:
            timer.cancel()
        self._queue.clear()


async def _run_callback(callback: AsyncCallback, args: tuple[Any, ...]) -> None:
    try:
        await callback(*args)
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001 - a timer must never take down the loop
        _logger.error("timer.callback_failed", callback=getattr(callback, "__qualname__", repr(callback)), error=str(exc))


__all__ = [
    "AsyncCallback",
    "AsyncioScheduler",
    "Clock",
    "Scheduler",
    "TimerHandle",
    "VirtualScheduler",
]

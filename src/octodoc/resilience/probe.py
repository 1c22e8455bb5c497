"""Background probe that lets tripped dependencies recover."""

from __future__ import annotations

from typing import Sequence

from octodoc.metrics.observability import get_logger
from octodoc.resilience.store import ResilientStore
from octodoc.scheduling import Scheduler, TimerHandle


class HealthProbe:
    """Ping real backends while degraded mode is active.

    Regular traffic is served by the fallback while degraded, so nothing else
    would ever record a success. The probe does, through the same tracker.
    An explicit override suppresses probing.
    """

    def __init__(self, stores: Sequence[ResilientStore], scheduler: Scheduler, *, interval_seconds: float = 15.0) -> None:
        if not stores:
            raise ValueError("HealthProbe needs at least one store")
        self.stores = tuple(stores)
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self._timer: TimerHandle | None = None
        self._logger = get_logger("probe")

    @property
    def running(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        if self._timer is None:
            self._timer = self.scheduler.call_later(self.interval_seconds, self._tick)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def probe_once(self) -> dict[str, bool]:
        """Ping every tracked dependency that is not healthy."""

        mode = self.stores[0].mode
        results: dict[str, bool] = {}
        if not mode.is_active() or mode.override:
            return results
        for store in self.stores:
            if store.tracker.health(store.dependency).consecutive_failures == 0:
                continue
            results[store.dependency] = await store.ping()
        if results:
            self._logger.info("probe.complete", results=results, mode_active=mode.is_active())
        return results

    async def _tick(self) -> None:
        try:
            await self.probe_once()
        finally:
            if self._timer is not None:
                self._timer = self.scheduler.call_later(self.interval_seconds, self._tick)


__all__ = ["HealthProbe"]

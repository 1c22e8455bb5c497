"""Failure tracking and the process-wide degraded-mode switch."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from octodoc.metrics.observability import PipelineMetrics, get_logger
from octodoc.models import DependencyHealth

ModeListener = Callable[["SystemMode"], None]


class SystemMode:
    """Degraded-mode state shared by every data-access call.

    ``active`` is true iff at least one tracked dependency is tripped or the
    explicit override is set. Only :class:`FailureTracker` and
    :meth:`set_override` change it.
    """

    def __init__(
        self,
        *,
        now: Callable[[], datetime] | None = None,
        override: bool = False,
        override_reason: str = "Degraded mode explicitly enabled",
    ) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._active = False
        self._reason = ""
        self._activated_at: datetime | None = None
        self._override = False
        self._tripped: dict[str, str] = {}
        self._failure_counts: dict[str, int] = {}
        self._threshold: int | None = None
        self._listeners: List[ModeListener] = []
        self._logger = get_logger("mode")
        if override:
            self.set_override(True, override_reason)

    def is_active(self) -> bool:
        return self._active

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def activated_at(self) -> datetime | None:
        return self._activated_at

    @property
    def override(self) -> bool:
        return self._override

    @property
    def failure_counts(self) -> Dict[str, int]:
        return dict(self._failure_counts)

    def add_listener(self, listener: ModeListener) -> None:
        self._listeners.append(listener)

    def set_override(self, enabled: bool, reason: str | None = None) -> None:
        self._override = enabled
        self._recompute(reason or ("Degraded mode explicitly enabled" if enabled else ""))

    def status(self) -> dict[str, Any]:
        return {
            "active": self._active,
            "reason": self._reason,
            "activated_at": self._activated_at.isoformat() if self._activated_at else None,
            "override": self._override,
            "threshold": self._threshold,
            "failure_counts": dict(self._failure_counts),
            "tripped": sorted(self._tripped),
        }

    def _sync(self, health: DependencyHealth, threshold: int, *, trip_reason: str | None = None) -> None:
        self._threshold = threshold
        self._failure_counts[health.name] = health.consecutive_failures
        if health.is_tripped:
            self._tripped.setdefault(health.name, trip_reason or f"{health.name} unavailable")
        else:
            self._tripped.pop(health.name, None)
        self._recompute(trip_reason)

    def _recompute(self, reason: str | None) -> None:
        should_be_active = self._override or bool(self._tripped)
        if should_be_active == self._active:
            if self._active and not self._override and self._reason not in self._tripped.values():
                self._reason = next(iter(self._tripped.values()))
            return
        self._active = should_be_active
        if should_be_active:
            self._reason = reason or next(iter(self._tripped.values()), "Degraded mode active")
            self._activated_at = self._now()
            self._logger.warning("mode.activated", reason=self._reason, failure_counts=self.failure_counts)
        else:
            self._logger.info("mode.recovered", previous_reason=self._reason, activated_at=str(self._activated_at))
            self._reason = ""
            self._activated_at = None
        PipelineMetrics.set_degraded(self._active)
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as exc:  # noqa: BLE001 - listeners must not break mode transitions
                self._logger.error("mode.listener_failed", error=str(exc))


class FailureTracker:
    """Per-dependency consecutive-failure counter driving :class:`SystemMode`."""

    def __init__(self, mode: SystemMode, *, threshold: int = 3) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.mode = mode
        self.threshold = threshold
        self._health: dict[str, DependencyHealth] = {}
        self._logger = get_logger("failure_tracker")

    def register(self, dependency: str) -> DependencyHealth:
        health = self._health.get(dependency)
        if health is None:
            health = DependencyHealth(name=dependency)
            self._health[dependency] = health
            self.mode._sync(health, self.threshold)
        return health

    def health(self, dependency: str) -> DependencyHealth:
        return self.register(dependency)

    def dependencies(self) -> list[DependencyHealth]:
        return [self._health[name] for name in sorted(self._health)]

    def record_failure(self, dependency: str, error: BaseException | str) -> DependencyHealth:
        health = self.register(dependency)
        health.consecutive_failures += 1
        health.last_error = str(error)
        health.last_failure_at = self.mode._now()
        trip_reason = None
        if not health.is_tripped and health.consecutive_failures >= self.threshold:
            health.is_tripped = True
            trip_reason = (
                f"{dependency} unavailable after {health.consecutive_failures} consecutive failures: {health.last_error}"
            )
            self._logger.warning("dependency.tripped", dependency=dependency, failures=health.consecutive_failures)
        else:
            self._logger.info(
                "dependency.failure",
                dependency=dependency,
                failures=health.consecutive_failures,
                threshold=self.threshold,
                error=health.last_error,
            )
        self.mode._sync(health, self.threshold, trip_reason=trip_reason)
        return health

    def record_success(self, dependency: str) -> DependencyHealth:
        health = self.register(dependency)
        was_failing = health.consecutive_failures > 0 or health.is_tripped
        health.consecutive_failures = 0
        health.is_tripped = False
        health.last_success_at = self.mode._now()
        if was_failing:
            self._logger.info("dependency.recovered", dependency=dependency)
            self.mode._sync(health, self.threshold)
        return health

    def snapshot(self) -> dict[str, Any]:
        status = self.mode.status()
        status["threshold"] = self.threshold
        status["dependencies"] = [health.to_dict() for health in self.dependencies()]
        return status


__all__ = ["FailureTracker", "ModeListener", "SystemMode"]

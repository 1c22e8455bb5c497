from __future__ import annotations

from typing import Any, Callable, Mapping, Sequence

import pytest

from octodoc.config import Settings
from octodoc.engine import IntakeEngine, build_engine
from octodoc.errors import RetryableDependencyError
from octodoc.scheduling import VirtualScheduler
from octodoc.storage.backends import MemoryRecordBackend, Record


class FlakyBackend(MemoryRecordBackend):
    """Memory backend that can be told to fail its next calls."""

    def __init__(self, name: str = "flaky", *, now: Callable[[], Any] | None = None) -> None:
        super().__init__(name, now=now)
        self.calls = 0
        self.failures_remaining = 0
        self.error: BaseException = RetryableDependencyError(name, "connection refused")

    def fail_next(self, count: int, error: BaseException | None = None) -> None:
        self.failures_remaining = count
        if error is not None:
            self.error = error

    def fail_always(self, error: BaseException | None = None) -> None:
        self.fail_next(10**9, error)

    def recover(self) -> None:
        self.failures_remaining = 0

    def _maybe_fail(self) -> None:
        self.calls += 1
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise self.error

    async def get(self, kind: str, key: str) -> Record | None:
        self._maybe_fail()
        return await super().get(kind, key)

    async def put(self, kind: str, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None) -> None:
        self._maybe_fail()
        await super().put(kind, key, value, ttl_seconds=ttl_seconds)

    async def delete(self, kind: str, key: str) -> bool:
        self._maybe_fail()
        return await super().delete(kind, key)

    async def list(self, kind: str, *, session_id: str | None = None) -> Sequence[Record]:
        self._maybe_fail()
        return await super().list(kind, session_id=session_id)

    async def ping(self) -> None:
        self._maybe_fail()


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "environment": "test",
        "stage_failure_probability": 0.0,
        "pipeline_seed": 7,
        "primary_store_url": None,
        "cache_url": None,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture
def primary_backend(scheduler: VirtualScheduler) -> FlakyBackend:
    return FlakyBackend("primary-store", now=scheduler.now)


@pytest.fixture
def cache_backend(scheduler: VirtualScheduler) -> FlakyBackend:
    return FlakyBackend("cache", now=scheduler.now)


@pytest.fixture
def make_engine(
    scheduler: VirtualScheduler,
    primary_backend: FlakyBackend,
    cache_backend: FlakyBackend,
) -> Callable[..., IntakeEngine]:
    def factory(**overrides: Any) -> IntakeEngine:
        return build_engine(
            make_settings(**overrides),
            scheduler=scheduler,
            primary_backend=primary_backend,
            cache_backend=cache_backend,
        )

    return factory


@pytest.fixture
def engine(make_engine: Callable[..., IntakeEngine]) -> IntakeEngine:
    return make_engine()

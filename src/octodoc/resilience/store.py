"""Resilient access to a backing store with retry, timeout and fallback."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Mapping

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.stop import stop_base

from octodoc.errors import (
    DependencyError,
    NonRetryableDependencyError,
    OctodocError,
    RetryableDependencyError,
    ValidationError,
)
from octodoc.metrics.observability import PipelineMetrics, get_logger
from octodoc.models import StoreResult
from octodoc.resilience.mode import FailureTracker, SystemMode
from octodoc.storage.backends import RecordBackend

Sleep = Callable[[float], Awaitable[None]]

SOURCE_PRIMARY = "primary"
SOURCE_FALLBACK = "fallback"


class _stop_when_degraded(stop_base):
    """Stop retrying as soon as the shared mode flips to degraded."""

    def __init__(self, tracker: FailureTracker) -> None:
        self._tracker = tracker

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self._tracker.mode.is_active()


class ResilientStore:
    """Routes every call to the real backend or the fallback, never both.

    The route is chosen once per call: while the shared mode is active the
    fallback answers immediately. Otherwise the real backend is tried under a
    per-attempt timeout and retried with exponential backoff; every failed
    attempt is reported to the tracker. Once retries are exhausted (or a
    non-retryable error occurs) the fallback answers and the result is tagged
    ``source="fallback"``. Dependency errors never leave this class.
    """

    def __init__(
        self,
        dependency: str,
        real: RecordBackend,
        fallback: RecordBackend,
        tracker: FailureTracker,
        *,
        max_retries: int = 3,
        base_delay: float = 0.2,
        max_delay: float = 2.0,
        timeout: float = 10.0,
        sleep: Sleep | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.dependency = dependency
        self.real = real
        self.fallback = fallback
        self.tracker = tracker
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._sleep = sleep or asyncio.sleep
        self._logger = get_logger("store").bind(dependency=dependency)
        tracker.register(dependency)

    @property
    def mode(self) -> SystemMode:
        return self.tracker.mode

    async def get(self, kind: str, key: str) -> StoreResult:
        _check_name("kind", kind)
        _check_name("key", key)
        return await self._call("get", lambda backend: backend.get(kind, key))

    async def put(
        self,
        kind: str,
        key: str,
        value: Mapping[str, Any],
        *,
        ttl_seconds: int | None = None,
    ) -> StoreResult:
        _check_name("kind", kind)
        _check_name("key", key)
        if not isinstance(value, Mapping):
            raise ValidationError("value must be a mapping", details={"kind": kind, "key": key})
        if ttl_seconds is not None and (not isinstance(ttl_seconds, int) or ttl_seconds <= 0):
            raise ValidationError("ttl_seconds must be a positive integer", details={"ttl_seconds": ttl_seconds})
        try:
            json.dumps(dict(value))
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                "value must be JSON serializable",
                code="INVALID_VALUE",
                details={"kind": kind, "key": key, "error": str(exc)},
            ) from exc
        return await self._call("put", lambda backend: backend.put(kind, key, value, ttl_seconds=ttl_seconds))

    async def delete(self, kind: str, key: str) -> StoreResult:
        _check_name("kind", kind)
        _check_name("key", key)
        return await self._call("delete", lambda backend: backend.delete(kind, key))

    async def list(self, kind: str, *, session_id: str | None = None) -> StoreResult:
        _check_name("kind", kind)
        if session_id is not None:
            _check_name("session_id", session_id)
        return await self._call("list", lambda backend: backend.list(kind, session_id=session_id))

    async def ping(self) -> bool:
        """Probe the real backend once, bypassing the mode switch.

        Outcomes are reported to the tracker; returns whether the ping succeeded.
        """

        try:
            await self._attempt(lambda backend: backend.ping())
        except DependencyError:
            return False
        return True

    async def close(self) -> None:
        await self.real.close()

    async def _call(self, op: str, invoke: Callable[[RecordBackend], Awaitable[Any]]) -> StoreResult:
        if self.mode.is_active():
            return await self._serve_fallback(op, invoke, reason=self.mode.reason, outcome="degraded")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries) | _stop_when_degraded(self.tracker),
            wait=wait_exponential(multiplier=self.base_delay, min=0, max=self.max_delay),
            retry=retry_if_exception_type(RetryableDependencyError),
            sleep=self._sleep,
            before_sleep=self._before_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    value = await self._attempt(invoke)
        except DependencyError as exc:
            return await self._serve_fallback(op, invoke, reason=str(exc), outcome="error")
        PipelineMetrics.observe_store_call(self.dependency, SOURCE_PRIMARY, "ok")
        return StoreResult(value=value, source=SOURCE_PRIMARY, dependency=self.dependency)

    async def _attempt(self, invoke: Callable[[RecordBackend], Awaitable[Any]]) -> Any:
        try:
            async with asyncio.timeout(self.timeout):
                value = await invoke(self.real)
        except OctodocError:
            raise
        except DependencyError as exc:
            self.tracker.record_failure(self.dependency, exc)
            raise
        except (TimeoutError, OSError) as exc:
            error = RetryableDependencyError(self.dependency, str(exc) or exc.__class__.__name__)
            self.tracker.record_failure(self.dependency, error)
            raise error from exc
        except Exception as exc:
            error = NonRetryableDependencyError(self.dependency, f"{exc.__class__.__name__}: {exc}")
            self.tracker.record_failure(self.dependency, error)
            raise error from exc
        self.tracker.record_success(self.dependency)
        return value

    def _before_retry(self, retry_state: RetryCallState) -> None:
        PipelineMetrics.observe_retry(self.dependency)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self._logger.info(
            "store.retry",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_retries,
            error=str(exc),
        )

    async def _serve_fallback(
        self,
        op: str,
        invoke: Callable[[RecordBackend], Awaitable[Any]],
        *,
        reason: str,
        outcome: str,
    ) -> StoreResult:
        self._logger.warning("store.fallback", op=op, reason=reason, mode_active=self.mode.is_active())
        value = await invoke(self.fallback)
        PipelineMetrics.observe_store_call(self.dependency, SOURCE_FALLBACK, outcome)
        return StoreResult(value=value, source=SOURCE_FALLBACK, dependency=self.dependency)


def _check_name(field: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string", details={field: value})


__all__ = ["ResilientStore", "SOURCE_FALLBACK", "SOURCE_PRIMARY"]

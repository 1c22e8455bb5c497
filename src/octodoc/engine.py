"""Wiring of the intake engine components from settings."""

from __future__ import annotations

from dataclasses import dataclass

from octodoc.config import Settings
from octodoc.metrics.observability import get_logger
from octodoc.pipeline.service import DocumentPipeline, PipelineConfig
from octodoc.pipeline.validation import ValidationConfig, ValidationEngine
from octodoc.resilience.mode import FailureTracker, SystemMode
from octodoc.resilience.probe import HealthProbe
from octodoc.resilience.store import ResilientStore
from octodoc.scheduling import AsyncioScheduler, Scheduler
from octodoc.sessions.registry import SessionRegistry
from octodoc.storage.backends import RecordBackend, build_backend
from octodoc.storage.fallback import StaticFallbackProvider
from octodoc.streaming.progress import ProgressStream

PRIMARY_STORE = "primary-store"
CACHE = "cache"


@dataclass(frozen=True)
class IntakeEngine:
    settings: Settings
    scheduler: Scheduler
    mode: SystemMode
    tracker: FailureTracker
    primary: ResilientStore
    cache: ResilientStore
    sessions: SessionRegistry
    pipeline: DocumentPipeline
    stream: ProgressStream
    probe: HealthProbe

    def start(self) -> None:
        self.sessions.start_sweeper()
        self.probe.start()

    async def shutdown(self) -> None:
        self.probe.stop()
        self.sessions.stop()
        self.pipeline.shutdown()
        self.stream.shutdown()
        self.scheduler.shutdown()
        await self.primary.close()
        await self.cache.close()


def build_engine(
    settings: Settings,
    *,
    scheduler: Scheduler | None = None,
    primary_backend: RecordBackend | None = None,
    cache_backend: RecordBackend | None = None,
) -> IntakeEngine:
    scheduler = scheduler or AsyncioScheduler()
    mode = SystemMode(
        now=scheduler.now,
        override=settings.degraded_mode_override,
        override_reason=settings.degraded_mode_reason,
    )
    tracker = FailureTracker(mode, threshold=settings.failure_threshold)
    fallback = StaticFallbackProvider(now=scheduler.now)

    def _store(name: str, backend: RecordBackend) -> ResilientStore:
        return ResilientStore(
            name,
            backend,
            fallback,
            tracker,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            timeout=settings.call_timeout_seconds,
            sleep=scheduler.sleep,
        )

    primary = _store(
        PRIMARY_STORE,
        primary_backend or build_backend(settings.primary_store_url, name=PRIMARY_STORE, now=scheduler.now),
    )
    cache = _store(CACHE, cache_backend or build_backend(settings.cache_url, name=CACHE, now=scheduler.now))
    sessions = SessionRegistry(
        primary,
        cache,
        scheduler,
        ttl_seconds=settings.session_ttl_seconds,
        sweep_interval_seconds=settings.sweep_interval_seconds,
    )
    pipeline = DocumentPipeline(
        sessions,
        primary,
        cache,
        scheduler,
        engine=ValidationEngine(
            ValidationConfig(
                ocr_confidence_threshold=settings.ocr_confidence_threshold,
                min_size_bytes=settings.min_document_size_bytes,
            ),
        ),
        config=PipelineConfig(
            max_upload_size_bytes=settings.max_upload_size_bytes,
            max_jobs_per_session=settings.max_jobs_per_session,
            stage_failure_probability=settings.stage_failure_probability,
            seed=settings.pipeline_seed,
            record_ttl_seconds=settings.session_ttl_seconds,
        ),
    )
    stream = ProgressStream(
        pipeline,
        sessions,
        mode,
        scheduler,
        heartbeat_seconds=settings.heartbeat_seconds,
        queue_size=settings.subscriber_queue_size,
    )
    probe = HealthProbe((primary, cache), scheduler, interval_seconds=settings.probe_interval_seconds)
    get_logger("engine").info(
        "engine.built",
        primary=getattr(primary.real, "name", PRIMARY_STORE),
        cache=getattr(cache.real, "name", CACHE),
        degraded=mode.is_active(),
    )
    return IntakeEngine(
        settings=settings,
        scheduler=scheduler,
        mode=mode,
        tracker=tracker,
        primary=primary,
        cache=cache,
        sessions=sessions,
        pipeline=pipeline,
        stream=stream,
        probe=probe,
    )


__all__ = ["CACHE", "IntakeEngine", "PRIMARY_STORE", "build_engine"]

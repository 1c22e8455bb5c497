from __future__ import annotations

import pytest

from conftest import make_settings
from octodoc.engine import build_engine
from octodoc.errors import NotFoundError, PayloadTooLargeError, ValidationError
from octodoc.models import FileMeta, Stage
from octodoc.pipeline.service import job_status, stage_progress
from octodoc.scheduling import VirtualScheduler
from octodoc.storage.backends import MemoryRecordBackend

ALL_STAGES = ["ingest", "threat_scan", "ocr", "policy", "ai_review", "complete"]


def app_form(size: int = 20_000) -> FileMeta:
    return FileMeta(original_name="application.pdf", size_bytes=size, mime_type="application/pdf", document_type="app_form")


def isolated_engine(**overrides):
    scheduler = VirtualScheduler()
    engine = build_engine(
        make_settings(**overrides),
        scheduler=scheduler,
        primary_backend=MemoryRecordBackend("primary-store", now=scheduler.now),
        cache_backend=MemoryRecordBackend("cache", now=scheduler.now),
    )
    return engine, scheduler


async def run_one(engine, scheduler, meta: FileMeta, *, seed: int | None = None) -> dict:
    session = await engine.sessions.start("504", applicant_name="Ada")
    job = await engine.pipeline.submit(session.id, meta, seed=seed)
    await scheduler.run_until_idle()
    history = engine.pipeline.history(job.id)
    snapshot = engine.pipeline.status(job.id)
    return {
        "stages": [transition.stage.value for transition in history],
        "offsets": [(transition.at - history[0].at).total_seconds() for transition in history],
        "result": snapshot.result.to_dict() if snapshot.result else None,
    }


def test_progress_and_status_mapping():
    assert [stage_progress(stage) for stage in Stage] == [44, 58, 72, 86, 95, 100, 100]
    assert job_status(Stage.INGEST) == "queued"
    assert job_status(Stage.OCR) == "processing"
    assert job_status(Stage.COMPLETE) == "done"
    assert job_status(Stage.FAILED) == "failed"


@pytest.mark.asyncio
async def test_job_walks_every_stage_in_order(engine, scheduler):
    session = await engine.sessions.start("504")
    job = await engine.pipeline.submit(session.id, app_form())

    queued = engine.pipeline.status(job.id)
    assert queued.status == "queued"
    assert queued.progress == 44

    await scheduler.run_until_idle()

    done = engine.pipeline.status(job.id)
    assert done.status == "done"
    assert done.progress == 100
    assert done.result is not None
    history = engine.pipeline.history(job.id)
    assert [transition.stage.value for transition in history] == ALL_STAGES
    total = (history[-1].at - history[0].at).total_seconds()
    assert 1.6 <= total <= 4.4
    assert engine.pipeline.extraction(job.id).declared_type == "app_form"


@pytest.mark.asyncio
async def test_listeners_see_monotonic_snapshots(engine, scheduler):
    seen: list[tuple[str, str]] = []
    engine.pipeline.add_listener(lambda session_id, snapshot: seen.append((session_id, snapshot.stage.value)))
    session = await engine.sessions.start("504")

    await engine.pipeline.submit(session.id, app_form())
    await scheduler.run_until_idle()

    assert [stage for _, stage in seen] == ALL_STAGES
    assert {session_id for session_id, _ in seen} == {session.id}


@pytest.mark.asyncio
async def test_status_reads_are_idempotent(engine, scheduler):
    session = await engine.sessions.start("504")
    job = await engine.pipeline.submit(session.id, app_form())
    await scheduler.advance(0.1)

    assert engine.pipeline.status(job.id) == engine.pipeline.status(job.id)


@pytest.mark.asyncio
async def test_same_seed_replays_identically():
    first_engine, first_scheduler = isolated_engine(pipeline_seed=1234)
    second_engine, second_scheduler = isolated_engine(pipeline_seed=1234)

    first = await run_one(first_engine, first_scheduler, app_form())
    second = await run_one(second_engine, second_scheduler, app_form())

    assert first == second
    assert first["stages"] == ALL_STAGES


@pytest.mark.asyncio
async def test_explicit_job_seed_overrides_pipeline_seed():
    first_engine, first_scheduler = isolated_engine(pipeline_seed=1)
    second_engine, second_scheduler = isolated_engine(pipeline_seed=2)

    first = await run_one(first_engine, first_scheduler, app_form(), seed=99)
    second = await run_one(second_engine, second_scheduler, app_form(), seed=99)

    assert first == second


@pytest.mark.asyncio
async def test_stage_failure_ends_job_in_failed(make_engine, scheduler):
    engine = make_engine(stage_failure_probability=1.0)
    session = await engine.sessions.start("504")
    job = await engine.pipeline.submit(session.id, app_form())

    await scheduler.run_until_idle()

    snapshot = engine.pipeline.status(job.id)
    assert snapshot.stage is Stage.FAILED
    assert snapshot.status == "failed"
    assert snapshot.progress == 100
    assert snapshot.failure_reason == "File could not be read"
    assert snapshot.result is None
    views = engine.pipeline.document_views(session.id)
    assert views[0].status == "failed"


@pytest.mark.asyncio
async def test_submit_rejects_bad_uploads(make_engine):
    engine = make_engine(max_upload_size_mb=1)
    session = await engine.sessions.start("504")

    with pytest.raises(ValidationError) as missing:
        await engine.pipeline.submit(session.id, FileMeta(original_name="", size_bytes=100))
    with pytest.raises(ValidationError) as empty:
        await engine.pipeline.submit(session.id, FileMeta(original_name="empty.pdf", size_bytes=0))
    with pytest.raises(PayloadTooLargeError) as too_large:
        await engine.pipeline.submit(session.id, FileMeta(original_name="huge.pdf", size_bytes=1024 * 1024 + 1))
    with pytest.raises(NotFoundError):
        await engine.pipeline.submit("unknown", app_form())

    assert missing.value.code == "FILE_REQUIRED"
    assert empty.value.code == "EMPTY_FILE"
    assert too_large.value.code == "FILE_TOO_LARGE"
    assert engine.pipeline.document_views(session.id) == []


@pytest.mark.asyncio
async def test_in_flight_jobs_are_capped_per_session(make_engine, scheduler):
    engine = make_engine(max_jobs_per_session=2)
    session = await engine.sessions.start("504")
    await engine.pipeline.submit(session.id, app_form())
    await engine.pipeline.submit(session.id, app_form())

    with pytest.raises(ValidationError) as excinfo:
        await engine.pipeline.submit(session.id, app_form())
    assert excinfo.value.code == "TOO_MANY_JOBS"

    await scheduler.run_until_idle()
    await engine.pipeline.submit(session.id, app_form())


@pytest.mark.asyncio
async def test_revalidate_starts_a_new_job(engine, scheduler):
    session = await engine.sessions.start("504")
    job = await engine.pipeline.submit(session.id, app_form())
    await scheduler.run_until_idle()

    again = await engine.pipeline.revalidate(job.document_id)

    assert again.id != job.id
    assert again.document_id == job.document_id
    views = engine.pipeline.document_views(session.id)
    assert len(views) == 1
    assert views[0].latest_job_id == again.id
    assert views[0].status == "processing"

    await scheduler.run_until_idle()
    assert engine.pipeline.status(again.id).status == "done"

    with pytest.raises(NotFoundError) as excinfo:
        await engine.pipeline.revalidate("missing")
    assert excinfo.value.code == "DOCUMENT_NOT_FOUND"


@pytest.mark.asyncio
async def test_find_status_reads_through_persisted_jobs(make_engine, scheduler):
    first = make_engine()
    session = await first.sessions.start("504")
    job = await first.pipeline.submit(session.id, app_form())
    await scheduler.run_until_idle()

    second = make_engine()
    snapshot = await second.pipeline.find_status(job.id)

    assert snapshot.stage is Stage.COMPLETE
    assert snapshot.result == first.pipeline.status(job.id).result
    with pytest.raises(NotFoundError) as excinfo:
        await second.pipeline.find_status("missing")
    assert excinfo.value.code == "JOB_NOT_FOUND"


@pytest.mark.asyncio
async def test_documents_fall_back_to_persisted_records(make_engine, scheduler):
    first = make_engine()
    session = await first.sessions.start("504")
    job = await first.pipeline.submit(session.id, app_form())
    await scheduler.run_until_idle()

    second = make_engine()
    views = await second.pipeline.documents(session.id)

    assert [view.document_id for view in views] == [job.document_id]
    assert views[0].stage is Stage.COMPLETE
    assert views[0].status in {"accepted", "needs_attention"}


@pytest.mark.asyncio
async def test_discarding_a_session_cancels_its_timers(engine, scheduler):
    session = await engine.sessions.start("504")
    job = await engine.pipeline.submit(session.id, app_form())

    await engine.pipeline.discard_session(session.id)

    assert scheduler.pending() == 0
    assert engine.pipeline.jobs_for_session(session.id) == []
    with pytest.raises(NotFoundError):
        engine.pipeline.status(job.id)


@pytest.mark.asyncio
async def test_jobs_complete_while_primary_store_is_down(engine, scheduler, primary_backend):
    session = await engine.sessions.start("504")
    primary_backend.fail_always()

    job = await engine.pipeline.submit(session.id, app_form())
    await scheduler.run_until_idle()

    assert engine.mode.is_active()
    assert engine.pipeline.status(job.id).status == "done"
    assert [view.document_id for view in await engine.pipeline.documents(session.id)] == [job.document_id]


class DiscardOnStageBackend(MemoryRecordBackend):
    """Discards the owning session right after a job record reaches ``stage``."""

    def __init__(self, name: str, *, stage: str, now) -> None:
        super().__init__(name, now=now)
        self.stage = stage
        self.on_stage = None

    async def put(self, kind, key, value, *, ttl_seconds=None) -> None:
        await super().put(kind, key, value, ttl_seconds=ttl_seconds)
        if kind == "job" and value.get("stage") == self.stage and self.on_stage is not None:
            callback, self.on_stage = self.on_stage, None
            await callback(value["session_id"])


@pytest.mark.asyncio
async def test_discard_during_a_transition_leaves_no_job_records():
    scheduler = VirtualScheduler()
    primary = DiscardOnStageBackend("primary-store", stage="policy", now=scheduler.now)
    cache = MemoryRecordBackend("cache", now=scheduler.now)
    engine = build_engine(make_settings(), scheduler=scheduler, primary_backend=primary, cache_backend=cache)
    primary.on_stage = engine.pipeline.discard_session
    session = await engine.sessions.start("504")
    job = await engine.pipeline.submit(session.id, app_form())

    await scheduler.run_until_idle()

    assert primary.on_stage is None
    assert await primary.get("job", job.id) is None
    assert await cache.get("job", job.id) is None
    assert await primary.get("document", job.document_id) is None
    with pytest.raises(NotFoundError):
        await engine.pipeline.find_status(job.id)


@pytest.mark.asyncio
async def test_review_without_extraction_fails_the_job(engine, scheduler, monkeypatch):
    monkeypatch.setattr(engine.pipeline, "_draw_extraction", lambda runtime: None)
    session = await engine.sessions.start("504")
    job = await engine.pipeline.submit(session.id, app_form())

    await scheduler.run_until_idle()

    snapshot = engine.pipeline.status(job.id)
    assert snapshot.status == "failed"
    assert snapshot.stage is Stage.FAILED
    assert snapshot.result is None
    assert snapshot.failure_reason == "No extracted content was available for review"
    assert [transition.stage.value for transition in engine.pipeline.history(job.id)] == ALL_STAGES[:5] + ["failed"]

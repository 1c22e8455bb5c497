from __future__ import annotations

from datetime import datetime, timezone

import pytest

from octodoc.errors import NotFoundError, ValidationError
from octodoc.models import FileMeta, LoanType
from octodoc.pipeline.service import DOCUMENT_KIND, JOB_KIND
from octodoc.sessions.registry import CHECKLIST_KIND, PICKUP_KIND, SESSION_KIND


@pytest.mark.asyncio
async def test_start_returns_session_with_program_checklist(engine, primary_backend, cache_backend):
    session = await engine.sessions.start("504", applicant_name="Ada Borrower", email="ada@example.com")

    assert len(session.id) == 32
    int(session.id, 16)
    assert session.loan_type is LoanType.SBA_504
    assert (session.expires_at - session.created_at).total_seconds() == 1800
    assert [item.id for item in session.required_checklist] == ["app_form", "business_plan", "financials", "ownership"]
    assert await primary_backend.get(SESSION_KIND, session.id) is not None
    assert await cache_backend.get(SESSION_KIND, session.id) is not None
    assert (await primary_backend.get(CHECKLIST_KIND, "504"))["loan_type"] == "504"


@pytest.mark.asyncio
async def test_session_ids_are_unique(engine):
    ids = {(await engine.sessions.start("5a")).id for _ in range(20)}

    assert len(ids) == 20


@pytest.mark.asyncio
async def test_checklist_prefers_stored_records(engine, primary_backend):
    await primary_backend.put(
        CHECKLIST_KIND,
        "5a",
        {"id": "5a", "loan_type": "5a", "items": [{"id": "tax_returns", "title": "Taxes", "required": True}]},
    )

    session = await engine.sessions.start(LoanType.SBA_7A)

    assert [item.title for item in session.required_checklist] == ["Taxes"]


@pytest.mark.asyncio
async def test_invalid_loan_type_is_rejected(engine):
    with pytest.raises(ValidationError) as excinfo:
        await engine.sessions.start("7b")

    assert excinfo.value.code == "INVALID_LOAN_TYPE"
    assert engine.sessions.active_count() == 0


@pytest.mark.asyncio
async def test_unknown_session_raises_not_found(engine):
    with pytest.raises(NotFoundError) as excinfo:
        await engine.sessions.get("does-not-exist")

    assert excinfo.value.code == "SESSION_NOT_FOUND"


@pytest.mark.asyncio
async def test_session_expires_after_ttl(engine, scheduler):
    session = await engine.sessions.start("504")

    await scheduler.advance(1799)
    assert (await engine.sessions.get(session.id)).id == session.id

    await scheduler.advance(1)
    with pytest.raises(NotFoundError):
        await engine.sessions.get(session.id)
    assert engine.sessions.active_count() == 0


@pytest.mark.asyncio
async def test_touch_extends_expiry(engine, scheduler):
    session = await engine.sessions.start("504")

    await scheduler.advance(1000)
    touched = await engine.sessions.touch(session.id)
    await scheduler.advance(1000)

    assert (touched.expires_at - touched.created_at).total_seconds() == 2800
    assert (await engine.sessions.get(session.id)).id == session.id


@pytest.mark.asyncio
async def test_sweeper_removes_expired_sessions_and_notifies_listeners(engine, scheduler):
    removed: list[str] = []

    async def on_removed(session_id: str) -> None:
        removed.append(session_id)

    engine.sessions.add_expiry_listener(on_removed)
    session = await engine.sessions.start("504")
    engine.sessions.start_sweeper()

    await scheduler.advance(1860)

    assert removed == [session.id]
    assert engine.sessions.active_count() == 0
    engine.sessions.stop()
    assert scheduler.pending() == 0


@pytest.mark.asyncio
async def test_sessions_rehydrate_from_stores(make_engine):
    first = make_engine()
    session = await first.sessions.start("5a", applicant_name="Grace")

    second = make_engine()
    loaded = await second.sessions.get(session.id)

    assert loaded.applicant_name == "Grace"
    assert loaded.loan_type is LoanType.SBA_7A
    assert second.sessions.peek(session.id) is loaded


@pytest.mark.asyncio
async def test_end_removes_session_and_its_jobs(engine, scheduler, primary_backend):
    session = await engine.sessions.start("504")
    job = await engine.pipeline.submit(session.id, FileMeta("app.pdf", 20_000, document_type="app_form"))

    await engine.sessions.end(session.id)

    with pytest.raises(NotFoundError):
        await engine.sessions.get(session.id)
    with pytest.raises(NotFoundError):
        engine.pipeline.status(job.id)
    assert await primary_backend.get(SESSION_KIND, session.id) is None
    assert scheduler.pending() == 0
    with pytest.raises(NotFoundError):
        await engine.pipeline.find_status(job.id)


@pytest.mark.asyncio
async def test_end_deletes_persisted_job_and_document_records(engine, scheduler, primary_backend, cache_backend):
    session = await engine.sessions.start("504")
    job = await engine.pipeline.submit(session.id, FileMeta("app.pdf", 20_000, document_type="app_form"))
    await scheduler.run_until_idle()
    assert (await engine.pipeline.find_status(job.id)).status == "done"

    await engine.sessions.end(session.id)

    with pytest.raises(NotFoundError) as excinfo:
        await engine.pipeline.find_status(job.id)
    assert excinfo.value.code == "JOB_NOT_FOUND"
    for backend in (primary_backend, cache_backend):
        assert await backend.get(JOB_KIND, job.id) is None
        assert await backend.get(DOCUMENT_KIND, job.document_id) is None
        assert await backend.list(JOB_KIND, session_id=session.id) == []


@pytest.mark.asyncio
async def test_expiry_deletes_persisted_jobs_from_a_previous_process(make_engine, scheduler, primary_backend):
    first = make_engine()
    session = await first.sessions.start("504")
    job = await first.pipeline.submit(session.id, FileMeta("app.pdf", 20_000, document_type="app_form"))
    await scheduler.run_until_idle()

    second = make_engine()
    await second.sessions.get(session.id)
    await scheduler.advance(1799)
    assert await primary_backend.get(JOB_KIND, job.id) is not None
    with pytest.raises(NotFoundError):
        await second.sessions.get(session.id)

    with pytest.raises(NotFoundError):
        await second.pipeline.find_status(job.id)
    assert await primary_backend.list(DOCUMENT_KIND, session_id=session.id) == []


@pytest.mark.asyncio
async def test_schedule_pickup_defaults_to_next_day(engine, scheduler, primary_backend):
    session = await engine.sessions.start("504")

    pickup = await engine.sessions.schedule_pickup(session.id, contact_phone="555-0100")

    assert pickup["scheduled_at"] == datetime(2024, 1, 2, tzinfo=timezone.utc)
    record = await primary_backend.get(PICKUP_KIND, pickup["confirmation_id"])
    assert record["session_id"] == session.id
    assert record["contact_phone"] == "555-0100"


@pytest.mark.asyncio
async def test_schedule_pickup_parses_iso_dates(engine):
    session = await engine.sessions.start("504")

    pickup = await engine.sessions.schedule_pickup(session.id, "2024-03-01")

    assert pickup["scheduled_at"] == datetime(2024, 3, 1, tzinfo=timezone.utc)
    with pytest.raises(ValidationError):
        await engine.sessions.schedule_pickup(session.id, "next tuesday")


@pytest.mark.asyncio
async def test_start_succeeds_while_primary_is_down(engine, primary_backend):
    primary_backend.fail_always()

    session = await engine.sessions.start("504")

    assert engine.mode.is_active()
    assert [item.id for item in session.required_checklist][:3] == ["app_form", "business_plan", "financials"]
    assert (await engine.sessions.get(session.id)).id == session.id

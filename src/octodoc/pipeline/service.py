"""Timer-driven document processing pipeline."""

from __future__ import annotations

import itertools
import random
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping
from uuid import uuid4

from octodoc.errors import NotFoundError, PayloadTooLargeError, PipelineFailure, ValidationError
from octodoc.metrics.observability import PipelineMetrics, get_logger
from octodoc.models import (
    Document,
    DocumentView,
    FileMeta,
    Job,
    JobSnapshot,
    SimulatedExtraction,
    Stage,
    StageTransition,
    ValidationResult,
)
from octodoc.pipeline.validation import KNOWN_DOCUMENT_TYPES, ValidationEngine
from octodoc.resilience.store import ResilientStore
from octodoc.scheduling import Scheduler, TimerHandle
from octodoc.sessions.registry import SessionRegistry

JOB_KIND = "job"
DOCUMENT_KIND = "document"

STAGE_DURATIONS: Mapping[Stage, tuple[float, float]] = {
    Stage.INGEST: (0.2, 0.5),
    Stage.THREAT_SCAN: (0.3, 0.8),
    Stage.OCR: (0.5, 1.5),
    Stage.POLICY: (0.2, 0.6),
    Stage.AI_REVIEW: (0.4, 1.0),
}

STAGE_FAILURE_REASONS: Mapping[Stage, str] = {
    Stage.INGEST: "File could not be read",
    Stage.THREAT_SCAN: "Threat scan quarantined the file",
    Stage.OCR: "OCR engine could not process the document",
    Stage.POLICY: "Policy check service rejected the document",
    Stage.AI_REVIEW: "AI review did not complete",
}
MISSING_EXTRACTION_REASON = "No extracted content was available for review"

JobListener = Callable[[str, JobSnapshot], None]


@dataclass(frozen=True)
class PipelineConfig:
    max_upload_size_bytes: int = 25 * 1024 * 1024
    max_jobs_per_session: int = 20
    stage_failure_probability: float = 0.05
    seed: int | None = None
    record_ttl_seconds: int = 30 * 60


@dataclass
class _JobRuntime:
    job: Job
    rng: random.Random
    applicant_name: str | None = None
    timer: TimerHandle | None = None


def job_status(stage: Stage) -> str:
    if stage is Stage.INGEST:
        return "queued"
    if stage is Stage.COMPLETE:
        return "done"
    if stage is Stage.FAILED:
        return "failed"
    return "processing"


def stage_progress(stage: Stage) -> int:
    if stage.is_terminal:
        return 100
    return min(30 + (stage.index + 1) * 14, 95)


def document_status(stage: Stage | None, result: ValidationResult | None) -> str:
    if stage is Stage.FAILED:
        return "failed"
    if stage is Stage.COMPLETE and result is not None:
        return "accepted" if result.accepted else "needs_attention"
    return "processing"


class DocumentPipeline:
    """Advance jobs through ``ingest → … → complete`` on scheduler timers.

    In-memory maps own the live jobs and documents; every transition is
    written through to the primary store and the cache. Transitions of one job
    are strictly sequential: the next stage timer is scheduled only after the
    previous transition has been persisted and published.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        primary: ResilientStore,
        cache: ResilientStore,
        scheduler: Scheduler,
        *,
        engine: ValidationEngine | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self.sessions = sessions
        self.primary = primary
        self.cache = cache
        self.scheduler = scheduler
        self.engine = engine or ValidationEngine()
        self.config = config or PipelineConfig()
        self._base_seed = self.config.seed if self.config.seed is not None else secrets.randbits(32)
        self._ordinal = itertools.count()
        self._jobs: dict[str, _JobRuntime] = {}
        self._documents: dict[str, Document] = {}
        self._listeners: list[JobListener] = []
        self._logger = get_logger("pipeline")
        sessions.add_expiry_listener(self.discard_session)

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    async def submit(self, session_id: str, file_meta: FileMeta, *, seed: int | None = None) -> Job:
        session = await self.sessions.get(session_id)
        if not file_meta.original_name or not file_meta.original_name.strip():
            raise ValidationError("A file with a name is required", code="FILE_REQUIRED")
        if file_meta.size_bytes <= 0:
            raise ValidationError(
                "Uploaded file is empty",
                code="EMPTY_FILE",
                details={"fileName": file_meta.original_name},
            )
        if file_meta.size_bytes > self.config.max_upload_size_bytes:
            raise PayloadTooLargeError(
                f"File too large (>{self.config.max_upload_size_bytes} bytes)",
                details={"fileName": file_meta.original_name, "maxBytes": self.config.max_upload_size_bytes},
            )
        self._check_capacity(session_id)

        document = Document(
            id=uuid4().hex,
            session_id=session_id,
            original_name=file_meta.original_name,
            size_bytes=file_meta.size_bytes,
            uploaded_at=self.scheduler.now(),
            mime_type=file_meta.mime_type,
            document_type=file_meta.document_type,
        )
        self._documents[document.id] = document
        await self.sessions.touch(session_id)
        job = await self._start_job(document, applicant_name=session.applicant_name, seed=seed)
        self._logger.info(
            "document.uploaded",
            session_id=session_id,
            document_id=document.id,
            job_id=job.id,
            file_name=document.original_name,
        )
        return job

    async def revalidate(self, document_id: str, *, seed: int | None = None) -> Job:
        document = self._documents.get(document_id)
        if document is None:
            raise NotFoundError("document", document_id)
        session = await self.sessions.get(document.session_id)
        self._check_capacity(document.session_id)
        job = await self._start_job(document, applicant_name=session.applicant_name, seed=seed)
        self._logger.info("document.revalidation_started", document_id=document_id, job_id=job.id)
        return job

    def status(self, job_id: str) -> JobSnapshot:
        runtime = self._jobs.get(job_id)
        if runtime is None:
            raise NotFoundError("job", job_id)
        return _snapshot(runtime.job)

    async def find_status(self, job_id: str) -> JobSnapshot:
        """``status`` with read-through to persisted job records."""

        if job_id in self._jobs:
            return self.status(job_id)
        for store in (self.cache, self.primary):
            record = (await store.get(JOB_KIND, job_id)).value
            if record is not None:
                return _snapshot_from_record(record)
        raise NotFoundError("job", job_id)

    def jobs_for_session(self, session_id: str) -> list[JobSnapshot]:
        return [_snapshot(runtime.job) for runtime in self._jobs.values() if runtime.job.session_id == session_id]

    def extraction(self, job_id: str) -> SimulatedExtraction | None:
        runtime = self._jobs.get(job_id)
        if runtime is None:
            raise NotFoundError("job", job_id)
        return runtime.job.extraction

    def history(self, job_id: str) -> list[StageTransition]:
        runtime = self._jobs.get(job_id)
        if runtime is None:
            raise NotFoundError("job", job_id)
        return list(runtime.job.history)

    def document_views(self, session_id: str) -> list[DocumentView]:
        return [self._view(document) for document in self._documents.values() if document.session_id == session_id]

    async def documents(self, session_id: str) -> list[DocumentView]:
        await self.sessions.get(session_id)
        owned = self.document_views(session_id)
        if owned:
            return owned
        # Nothing live for this session; fall back to persisted records.
        records = (await self.primary.list(DOCUMENT_KIND, session_id=session_id)).value or []
        views: list[DocumentView] = []
        for record in records:
            job_record = None
            if record.get("latest_job_id"):
                job_record = (await self.primary.get(JOB_KIND, str(record["latest_job_id"]))).value
            views.append(_view_from_records(record, job_record))
        return views

    async def discard_session(self, session_id: str) -> None:
        dropped = [job_id for job_id, runtime in self._jobs.items() if runtime.job.session_id == session_id]
        for job_id in dropped:
            runtime = self._jobs.pop(job_id)
            if runtime.timer is not None:
                runtime.timer.cancel()
        documents = [doc_id for doc_id, doc in self._documents.items() if doc.session_id == session_id]
        for document_id in documents:
            self._documents.pop(document_id, None)

        keys = {JOB_KIND: set(dropped), DOCUMENT_KIND: set(documents)}
        for store in (self.primary, self.cache):
            for record in (await store.list(DOCUMENT_KIND, session_id=session_id)).value or []:
                keys[DOCUMENT_KIND].add(str(record["id"]))
                if record.get("latest_job_id"):
                    keys[JOB_KIND].add(str(record["latest_job_id"]))
            for record in (await store.list(JOB_KIND, session_id=session_id)).value or []:
                keys[JOB_KIND].add(str(record["id"]))
        for store in (self.primary, self.cache):
            for kind, ids in keys.items():
                for record_id in sorted(ids):
                    await store.delete(kind, record_id)
        self._logger.info(
            "pipeline.session_discarded",
            session_id=session_id,
            jobs=len(keys[JOB_KIND]),
            documents=len(keys[DOCUMENT_KIND]),
        )

    def shutdown(self) -> None:
        for runtime in self._jobs.values():
            if runtime.timer is not None:
                runtime.timer.cancel()
                runtime.timer = None

    def _check_capacity(self, session_id: str) -> None:
        in_flight = sum(
            1
            for runtime in self._jobs.values()
            if runtime.job.session_id == session_id and not runtime.job.stage.is_terminal
        )
        if in_flight >= self.config.max_jobs_per_session:
            raise ValidationError(
                "Too many documents are already processing for this session",
                code="TOO_MANY_JOBS",
                details={"limit": self.config.max_jobs_per_session},
            )

    async def _start_job(self, document: Document, *, applicant_name: str | None, seed: int | None) -> Job:
        ordinal = next(self._ordinal)
        job_seed = seed if seed is not None else self._base_seed * 1_000_003 + ordinal
        now = self.scheduler.now()
        job = Job(
            id=uuid4().hex,
            document_id=document.id,
            session_id=document.session_id,
            original_name=document.original_name,
            size_bytes=document.size_bytes,
            created_at=now,
            updated_at=now,
            history=[StageTransition(Stage.INGEST, now)],
        )
        runtime = _JobRuntime(job=job, rng=random.Random(job_seed), applicant_name=applicant_name)
        self._jobs[job.id] = runtime
        document.latest_job_id = job.id
        PipelineMetrics.observe_transition(Stage.INGEST.value)
        await self._persist(runtime)
        self._publish(job)
        self._schedule_stage(runtime)
        return job

    def _schedule_stage(self, runtime: _JobRuntime) -> None:
        low, high = STAGE_DURATIONS[runtime.job.stage]
        duration = runtime.rng.uniform(low, high)
        runtime.timer = self.scheduler.call_later(duration, self._complete_stage, runtime.job.id)

    async def _complete_stage(self, job_id: str) -> None:
        runtime = self._jobs.get(job_id)
        if runtime is None or runtime.job.stage.is_terminal:
            return
        runtime.timer = None
        job = runtime.job
        try:
            self._simulate_stage(runtime)
        except PipelineFailure as failure:
            job.failure_reason = failure.reason
            await self._transition(runtime, Stage.FAILED)
            PipelineMetrics.observe_outcome("failed")
            self._logger.warning("job.failed", job_id=job.id, stage=failure.stage, reason=failure.reason)
            return

        target = job.stage.next()
        await self._transition(runtime, target)
        result = job.result
        if target is Stage.COMPLETE:
            if result is not None:
                outcome = "accepted" if result.accepted else "needs_attention"
                PipelineMetrics.observe_outcome(outcome, result.confidence)
                self._logger.info(
                    "job.completed",
                    job_id=job.id,
                    accepted=result.accepted,
                    confidence=result.confidence,
                )
        elif job_id in self._jobs:
            self._schedule_stage(runtime)

    def _simulate_stage(self, runtime: _JobRuntime) -> None:
        stage = runtime.job.stage
        if runtime.rng.random() < self.config.stage_failure_probability:
            raise PipelineFailure(stage.value, STAGE_FAILURE_REASONS[stage])
        if stage is Stage.OCR:
            runtime.job.extraction = self._draw_extraction(runtime)
        elif stage is Stage.AI_REVIEW:
            if runtime.job.extraction is None:
                raise PipelineFailure(stage.value, MISSING_EXTRACTION_REASON)
            runtime.job.result = self.engine.validate(runtime.job.extraction)

    def _draw_extraction(self, runtime: _JobRuntime) -> SimulatedExtraction:
        rng = runtime.rng
        document = self._documents.get(runtime.job.document_id)
        declared = document.document_type.strip().lower() if document and document.document_type else None
        known = sorted(KNOWN_DOCUMENT_TYPES)
        roll = rng.random()
        if declared and roll < 0.85:
            detected: str | None = declared
        elif roll < 0.95:
            detected = rng.choice(known)
        else:
            detected = None
        ocr_confidence = round(rng.uniform(0.35, 0.99), 2)
        signature_present = rng.random() > 0.2
        page_count = rng.randint(1, 12)
        fields: dict[str, Any] = {
            "borrowerName": runtime.applicant_name or "Demo Borrower",
            "tin_present": rng.random() > 0.3,
            "page_count": page_count,
        }
        if detected:
            fields["document_type"] = detected
        return SimulatedExtraction(
            declared_type=declared,
            detected_type=detected,
            ocr_confidence=ocr_confidence,
            signature_present=signature_present,
            size_bytes=runtime.job.size_bytes,
            page_count=page_count,
            fields=fields,
        )

    async def _transition(self, runtime: _JobRuntime, target: Stage) -> None:
        job = runtime.job
        if target is not Stage.FAILED and target.index <= job.stage.index:
            raise ValueError(f"illegal transition {job.stage.value} -> {target.value}")
        now = self.scheduler.now()
        previous = job.stage
        job.stage = target
        job.updated_at = now
        job.history.append(StageTransition(target, now))
        PipelineMetrics.observe_transition(target.value)
        self._logger.info("job.stage_advanced", job_id=job.id, previous=previous.value, stage=target.value)
        await self._persist(runtime)
        self._publish(job)

    async def _persist(self, runtime: _JobRuntime) -> None:
        job = runtime.job
        ttl = self.config.record_ttl_seconds
        record = job.to_record()
        # A discarded session's jobs must not be written back, even mid-persist.
        for store in (self.primary, self.cache):
            if job.id not in self._jobs:
                return
            await store.put(JOB_KIND, job.id, record, ttl_seconds=ttl)
        document = self._documents.get(job.document_id)
        if document is not None and job.id in self._jobs:
            await self.primary.put(DOCUMENT_KIND, document.id, document.to_record(), ttl_seconds=ttl)

    def _publish(self, job: Job) -> None:
        if job.id not in self._jobs:
            return
        snapshot = _snapshot(job)
        for listener in list(self._listeners):
            listener(job.session_id, snapshot)

    def _view(self, document: Document) -> DocumentView:
        runtime = self._jobs.get(document.latest_job_id or "")
        job = runtime.job if runtime else None
        return DocumentView(
            document_id=document.id,
            session_id=document.session_id,
            original_name=document.original_name,
            size_bytes=document.size_bytes,
            uploaded_at=document.uploaded_at,
            status=document_status(job.stage if job else None, job.result if job else None),
            document_type=document.document_type,
            mime_type=document.mime_type,
            latest_job_id=document.latest_job_id,
            stage=job.stage if job else None,
            progress=stage_progress(job.stage) if job else 0,
            validation=job.result if job else None,
            failure_reason=job.failure_reason if job else None,
        )


def _snapshot(job: Job) -> JobSnapshot:
    return JobSnapshot(
        job_id=job.id,
        document_id=job.document_id,
        session_id=job.session_id,
        original_name=job.original_name,
        stage=job.stage,
        status=job_status(job.stage),
        progress=stage_progress(job.stage),
        updated_at=job.updated_at,
        result=job.result,
        failure_reason=job.failure_reason,
    )


def _snapshot_from_record(record: Mapping[str, Any]) -> JobSnapshot:
    stage = Stage(str(record.get("stage", Stage.INGEST.value)))
    result = ValidationResult.from_dict(record["result"]) if record.get("result") else None
    updated_at = record.get("updated_at")
    return JobSnapshot(
        job_id=str(record["id"]),
        document_id=str(record.get("document_id", "")),
        session_id=str(record.get("session_id", "")),
        original_name=str(record.get("original_name", "")),
        stage=stage,
        status=job_status(stage),
        progress=stage_progress(stage),
        updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        result=result,
        failure_reason=record.get("failure_reason"),
    )


def _view_from_records(document: Mapping[str, Any], job: Mapping[str, Any] | None) -> DocumentView:
    snapshot = _snapshot_from_record(job) if job else None
    return DocumentView(
        document_id=str(document["id"]),
        session_id=str(document["session_id"]),
        original_name=str(document.get("original_name", "")),
        size_bytes=int(document.get("size_bytes", 0)),
        uploaded_at=datetime.fromisoformat(str(document["uploaded_at"])),
        status=document_status(snapshot.stage if snapshot else None, snapshot.result if snapshot else None),
        document_type=document.get("document_type"),
        mime_type=document.get("mime_type"),
        latest_job_id=document.get("latest_job_id"),
        stage=snapshot.stage if snapshot else None,
        progress=snapshot.progress if snapshot else 0,
        validation=snapshot.result if snapshot else None,
        failure_reason=snapshot.failure_reason if snapshot else None,
    )


__all__ = [
    "DOCUMENT_KIND",
    "DocumentPipeline",
    "JOB_KIND",
    "JobListener",
    "PipelineConfig",
    "STAGE_DURATIONS",
    "STAGE_FAILURE_REASONS",
    "document_status",
    "job_status",
    "stage_progress",
]

"""Static fallback dataset served while the application runs degraded."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple

from octodoc.storage.backends import Record

PROGRAM_CHECKLISTS: Mapping[str, Sequence[Mapping[str, Any]]] = {
    "504": (
        {"id": "app_form", "title": "Application Form", "required": True},
        {"id": "business_plan", "title": "Business Plan", "required": True},
        {"id": "financials", "title": "Financial Statements", "required": True},
        {"id": "ownership", "title": "Ownership Documents", "required": False},
    ),
    "5a": (
        {"id": "app_form", "title": "Application Form", "required": True},
        {"id": "tax_returns", "title": "Tax Returns (last 2 years)", "required": True},
        {"id": "personal_guarantee", "title": "Personal Guarantee", "required": True},
        {"id": "other", "title": "Supporting Documents", "required": False},
    ),
}

DEMO_SESSION_ID = "demo-504"
_EPOCH = "2024-01-01T00:00:00+00:00"
_FAR_FUTURE = "2099-01-01T00:00:00+00:00"


def program_checklist_records() -> List[Record]:
    """Checklist records as persisted in the ``checklist`` kind."""

    return [{"id": loan_type, "loan_type": loan_type, "items": [dict(item) for item in items]} for loan_type, items in PROGRAM_CHECKLISTS.items()]


def _canned_records() -> Dict[Tuple[str, str], Record]:
    records: Dict[Tuple[str, str], Record] = {}
    for record in program_checklist_records():
        records[("checklist", record["id"])] = record
    records[("session", DEMO_SESSION_ID)] = {
        "id": DEMO_SESSION_ID,
        "session_id": DEMO_SESSION_ID,
        "loan_type": "504",
        "applicant_name": "Demo Borrower",
        "email": "demo@octodoc.example",
        "created_at": _EPOCH,
        "expires_at": _FAR_FUTURE,
        "required_checklist": [dict(item) for item in PROGRAM_CHECKLISTS["504"]],
        "metadata": {"source": "fallback"},
    }
    demo_documents = (
        ("demo-doc-app-form", "demo-job-app-form", "application_form.pdf", "app_form", 2_097_152, True, 0.91, ()),
        (
            "demo-doc-financials",
            "demo-job-financials",
            "financial_statements.pdf",
            "financials",
            1_048_576,
            False,
            0.54,
            ("Low OCR confidence (54%)",),
        ),
    )
    for doc_id, job_id, name, doc_type, size, accepted, confidence, reasons in demo_documents:
        records[("document", doc_id)] = {
            "id": doc_id,
            "session_id": DEMO_SESSION_ID,
            "original_name": name,
            "size_bytes": size,
            "mime_type": "application/pdf",
            "document_type": doc_type,
            "uploaded_at": _EPOCH,
            "latest_job_id": job_id,
        }
        records[("job", job_id)] = {
            "id": job_id,
            "document_id": doc_id,
            "session_id": DEMO_SESSION_ID,
            "original_name": name,
            "size_bytes": size,
            "stage": "complete",
            "created_at": _EPOCH,
            "updated_at": _EPOCH,
            "result": {
                "accepted": accepted,
                "reasons": list(reasons),
                "confidence": confidence,
                "extracted_fields": {"borrowerName": "Demo Borrower", "document_type": doc_type},
            },
            "failure_reason": None,
            "history": [{"stage": stage, "at": _EPOCH} for stage in ("ingest", "threat_scan", "ocr", "policy", "ai_review", "complete")],
        }
    return records


class StaticFallbackProvider:
    """Deterministic substitute satisfying the record backend read contract.

    Writes are accepted into a process-local overlay and never reach a durable
    store; reads consult the overlay before the canned dataset.
    """

    def __init__(self, name: str = "static-fallback", *, now: Callable[[], datetime] | None = None) -> None:
        self.name = name
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._canned = _canned_records()
        self._overlay: Dict[Tuple[str, str], Tuple[Record, datetime | None]] = {}
        self._deleted: set[Tuple[str, str]] = set()

    def _overlay_value(self, kind: str, key: str) -> Record | None:
        entry = self._overlay.get((kind, key))
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            self._overlay.pop((kind, key), None)
            return None
        return value

    async def get(self, kind: str, key: str) -> Record | None:
        value = self._overlay_value(kind, key)
        if value is None and (kind, key) not in self._deleted:
            value = self._canned.get((kind, key))
        return _copy(value)

    async def put(self, kind: str, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None) -> None:
        expires_at = self._now() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._overlay[(kind, key)] = (_copy(dict(value)) or {}, expires_at)
        self._deleted.discard((kind, key))

    async def delete(self, kind: str, key: str) -> bool:
        existed = await self.get(kind, key) is not None
        self._overlay.pop((kind, key), None)
        if (kind, key) in self._canned:
            self._deleted.add((kind, key))
        return existed

    async def list(self, kind: str, *, session_id: str | None = None) -> Sequence[Record]:
        merged: Dict[str, Record] = {}
        for (record_kind, key), value in self._canned.items():
            if record_kind == kind and (record_kind, key) not in self._deleted:
                merged[key] = value
        for record_kind, key in list(self._overlay):
            if record_kind != kind:
                continue
            value = self._overlay_value(record_kind, key)
            if value is not None:
                merged[key] = value
        records = [_copy(value) for _, value in sorted(merged.items())]
        if session_id is not None:
            records = [record for record in records if record and record.get("session_id") == session_id]
        return [record for record in records if record is not None]

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        self._overlay.clear()
        self._deleted.clear()


def _copy(value: Record | None) -> Record | None:
    return json.loads(json.dumps(value)) if value is not None else None


__all__ = ["DEMO_SESSION_ID", "PROGRAM_CHECKLISTS", "StaticFallbackProvider", "program_checklist_records"]

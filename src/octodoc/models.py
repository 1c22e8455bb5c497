"""Shared domain models used across the OctoDoc intake engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Sequence


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoanType(str, Enum):
    SBA_504 = "504"
    SBA_7A = "5a"


class Stage(str, Enum):
    """Ordered processing stages; ``failed`` is absorbing and reachable from any stage."""

    INGEST = "ingest"
    THREAT_SCAN = "threat_scan"
    OCR = "ocr"
    POLICY = "policy"
    AI_REVIEW = "ai_review"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self) if self in STAGE_ORDER else len(STAGE_ORDER)

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.FAILED)

    def next(self) -> "Stage":
        if self.is_terminal:
            raise ValueError(f"{self.value} is terminal")
        return STAGE_ORDER[self.index + 1]


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.INGEST,
    Stage.THREAT_SCAN,
    Stage.OCR,
    Stage.POLICY,
    Stage.AI_REVIEW,
    Stage.COMPLETE,
)


@dataclass
class DependencyHealth:
    """Consecutive-failure bookkeeping for one backing dependency."""

    name: str
    consecutive_failures: int = 0
    last_error: str | None = None
    is_tripped: bool = False
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "is_tripped": self.is_tripped,
            "last_failure_at": _iso(self.last_failure_at),
            "last_success_at": _iso(self.last_success_at),
        }


@dataclass(frozen=True)
class ChecklistItem:
    id: str
    title: str
    required: bool

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "required": self.required}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChecklistItem":
        return cls(id=str(data["id"]), title=str(data.get("title", data["id"])), required=bool(data.get("required", False)))


@dataclass
class Session:
    """Bounded-lifetime grouping of documents for one intake interaction."""

    id: str
    loan_type: LoanType
    created_at: datetime
    expires_at: datetime
    applicant_name: str | None = None
    email: str | None = None
    required_checklist: Sequence[ChecklistItem] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.id,
            "loan_type": self.loan_type.value,
            "applicant_name": self.applicant_name,
            "email": self.email,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "required_checklist": [item.to_dict() for item in self.required_checklist],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Session":
        return cls(
            id=str(record["id"]),
            loan_type=LoanType(str(record["loan_type"])),
            created_at=datetime.fromisoformat(str(record["created_at"])),
            expires_at=datetime.fromisoformat(str(record["expires_at"])),
            applicant_name=record.get("applicant_name"),
            email=record.get("email"),
            required_checklist=tuple(ChecklistItem.from_dict(item) for item in record.get("required_checklist") or ()),
            metadata=dict(record.get("metadata") or {}),
        )


@dataclass(frozen=True)
class FileMeta:
    """Metadata of an uploaded file; content is never retained."""

    original_name: str
    size_bytes: int
    mime_type: str | None = None
    document_type: str | None = None


@dataclass
class Document:
    id: str
    session_id: str
    original_name: str
    size_bytes: int
    uploaded_at: datetime
    mime_type: str | None = None
    document_type: str | None = None
    latest_job_id: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "original_name": self.original_name,
            "size_bytes": self.size_bytes,
            "mime_type": self.mime_type,
            "document_type": self.document_type,
            "uploaded_at": self.uploaded_at.isoformat(),
            "latest_job_id": self.latest_job_id,
        }


@dataclass(frozen=True)
class SimulatedExtraction:
    """What the simulated OCR stage "saw" in a document."""

    declared_type: str | None
    detected_type: str | None
    ocr_confidence: float
    signature_present: bool
    size_bytes: int
    page_count: int = 1
    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationResult:
    accepted: bool
    reasons: tuple[str, ...]
    confidence: float
    extracted_fields: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reasons": list(self.reasons),
            "confidence": self.confidence,
            "extracted_fields": dict(self.extracted_fields),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValidationResult":
        return cls(
            accepted=bool(data["accepted"]),
            reasons=tuple(str(reason) for reason in data.get("reasons") or ()),
            confidence=float(data.get("confidence", 0.0)),
            extracted_fields={str(k): str(v) for k, v in (data.get("extracted_fields") or {}).items()},
        )


@dataclass(frozen=True)
class StageTransition:
    stage: Stage
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage.value, "at": self.at.isoformat()}


@dataclass
class Job:
    """One document's progress through the validation pipeline."""

    id: str
    document_id: str
    session_id: str
    original_name: str
    size_bytes: int
    created_at: datetime
    stage: Stage = Stage.INGEST
    updated_at: datetime | None = None
    result: ValidationResult | None = None
    failure_reason: str | None = None
    extraction: SimulatedExtraction | None = None
    history: list[StageTransition] = field(default_factory=list)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "session_id": self.session_id,
            "original_name": self.original_name,
            "size_bytes": self.size_bytes,
            "stage": self.stage.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": _iso(self.updated_at),
            "result": self.result.to_dict() if self.result else None,
            "failure_reason": self.failure_reason,
            "history": [transition.to_dict() for transition in self.history],
        }


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable view of a job returned by status reads."""

    job_id: str
    document_id: str
    session_id: str
    original_name: str
    stage: Stage
    status: str
    progress: int
    updated_at: datetime | None
    result: ValidationResult | None = None
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "document_id": self.document_id,
            "session_id": self.session_id,
            "original_name": self.original_name,
            "stage": self.stage.value,
            "status": self.status,
            "progress": self.progress,
            "updated_at": _iso(self.updated_at),
            "result": self.result.to_dict() if self.result else None,
            "failure_reason": self.failure_reason,
        }


@dataclass(frozen=True)
class StoreResult:
    """Value returned by a resilient store call, tagged with its source."""

    value: Any
    source: str
    dependency: str

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class DocumentView:
    """A document joined with the state of its latest job."""

    document_id: str
    session_id: str
    original_name: str
    size_bytes: int
    uploaded_at: datetime
    status: str
    document_type: str | None = None
    mime_type: str | None = None
    latest_job_id: str | None = None
    stage: Stage | None = None
    progress: int = 0
    validation: ValidationResult | None = None
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "session_id": self.session_id,
            "original_name": self.original_name,
            "size_bytes": self.size_bytes,
            "uploaded_at": self.uploaded_at.isoformat(),
            "status": self.status,
            "document_type": self.document_type,
            "mime_type": self.mime_type,
            "latest_job_id": self.latest_job_id,
            "stage": self.stage.value if self.stage else None,
            "progress": self.progress,
            "validation": self.validation.to_dict() if self.validation else None,
            "failure_reason": self.failure_reason,
        }

"""Pydantic models for the OctoDoc API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from octodoc.models import ChecklistItem, DocumentView, JobSnapshot, ValidationResult


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionRequest(CamelModel):
    loan_type: str = Field(..., description="Loan program: 504 or 5a")
    applicant_name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=320)


class ChecklistItemModel(CamelModel):
    id: str
    title: str
    required: bool

    @classmethod
    def from_item(cls, item: ChecklistItem) -> "ChecklistItemModel":
        return cls(id=item.id, title=item.title, required=item.required)


class SessionResponse(CamelModel):
    session_id: str
    expires_at: datetime
    loan_type: str
    required_checklist: List[ChecklistItemModel]
    degraded: bool = False


class UploadResponse(CamelModel):
    document_id: str
    job_id: str
    file_name: str
    size: int = Field(..., ge=0, description="Uploaded size in bytes")
    uploaded_at: datetime
    degraded: bool = False


class ValidationResultModel(CamelModel):
    accepted: bool
    reasons: List[str]
    confidence: float = Field(..., ge=0.0, le=1.0)
    extracted_fields: Dict[str, str]

    @classmethod
    def from_result(cls, result: ValidationResult | None) -> "ValidationResultModel | None":
        if result is None:
            return None
        return cls(
            accepted=result.accepted,
            reasons=list(result.reasons),
            confidence=result.confidence,
            extracted_fields=dict(result.extracted_fields),
        )


class DocumentModel(CamelModel):
    document_id: str
    session_id: str
    original_name: str
    size: int
    uploaded_at: datetime
    status: Literal["processing", "accepted", "needs_attention", "failed"]
    document_type: Optional[str] = None
    mime_type: Optional[str] = None
    latest_job_id: Optional[str] = None
    stage: Optional[str] = None
    progress: int = 0
    validation: Optional[ValidationResultModel] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_view(cls, view: DocumentView) -> "DocumentModel":
        return cls(
            document_id=view.document_id,
            session_id=view.session_id,
            original_name=view.original_name,
            size=view.size_bytes,
            uploaded_at=view.uploaded_at,
            status=view.status,  # type: ignore[arg-type]
            document_type=view.document_type,
            mime_type=view.mime_type,
            latest_job_id=view.latest_job_id,
            stage=view.stage.value if view.stage else None,
            progress=view.progress,
            validation=ValidationResultModel.from_result(view.validation),
            failure_reason=view.failure_reason,
        )


class DocumentsResponse(CamelModel):
    documents: List[DocumentModel]
    required_checklist: List[ChecklistItemModel]
    degraded: bool = False


class RevalidateResponse(CamelModel):
    job_id: str
    degraded: bool = False


class PickupRequest(CamelModel):
    preferred_date: Optional[str] = Field(default=None, description="ISO-8601 date or datetime")
    contact_phone: Optional[str] = Field(default=None, max_length=40)


class PickupResponse(CamelModel):
    confirmation_id: str
    scheduled_at: datetime
    degraded: bool = False


class JobStatusResponse(CamelModel):
    job_id: str
    stage: str
    status: Literal["queued", "processing", "done", "failed"]
    progress: int = Field(..., ge=0, le=100)
    result: Optional[ValidationResultModel] = None
    failure_reason: Optional[str] = None
    degraded: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: JobSnapshot, *, degraded: bool) -> "JobStatusResponse":
        return cls(
            job_id=snapshot.job_id,
            stage=snapshot.stage.value,
            status=snapshot.status,  # type: ignore[arg-type]
            progress=snapshot.progress,
            result=ValidationResultModel.from_result(snapshot.result),
            failure_reason=snapshot.failure_reason,
            degraded=degraded,
        )


class AnalyticsResponse(CamelModel):
    session_id: str
    total_documents: int
    accepted_documents: int
    needs_attention_documents: int
    failed_documents: int
    processing_documents: int
    stage_counts: Dict[str, int]
    average_confidence: Optional[float] = None
    risk_level: Literal["low", "medium", "high"]
    missing_required: List[ChecklistItemModel]
    recommended_actions: List[str]
    highlights: List[str]
    degraded: bool = False


class ModeOverrideRequest(CamelModel):
    enabled: bool
    reason: Optional[str] = Field(default=None, max_length=500)


class ModeStatusResponse(BaseModel):
    active: bool
    reason: str
    activated_at: Optional[str] = None
    override: bool
    threshold: Optional[int] = None
    failure_counts: Dict[str, int]
    tripped: List[str]
    dependencies: List[Dict[str, Any]] = Field(default_factory=list)
    degraded: bool = False


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    version: str
    environment: str
    mode: Dict[str, Any]
    degraded: bool = False


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    degraded: bool = False
    correlation_id: str

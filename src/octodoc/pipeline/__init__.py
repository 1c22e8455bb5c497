"""Document processing pipeline and validation heuristics."""

from .service import DocumentPipeline, PipelineConfig, document_status, job_status, stage_progress
from .validation import ValidationConfig, ValidationEngine

__all__ = [
    "DocumentPipeline",
    "PipelineConfig",
    "ValidationConfig",
    "ValidationEngine",
    "document_status",
    "job_status",
    "stage_progress",
]

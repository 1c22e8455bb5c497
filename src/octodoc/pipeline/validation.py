"""Heuristic validation of simulated document extractions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from octodoc.models import SimulatedExtraction, ValidationResult

SIGNATURE_REQUIRED_TYPES = frozenset({"app_form", "personal_guarantee", "tax_returns", "ownership"})
KNOWN_DOCUMENT_TYPES = frozenset(
    {"app_form", "business_plan", "financials", "ownership", "tax_returns", "personal_guarantee", "other"}
)


@dataclass(frozen=True)
class ValidationConfig:
    ocr_confidence_threshold: float = 0.6
    min_size_bytes: int = 10 * 1024
    missing_signature_confidence: float = 0.7
    small_file_confidence: float = 0.5
    type_mismatch_confidence: float = 0.6
    unknown_type_confidence_cap: float = 0.5


class ValidationEngine:
    """Pure function from a :class:`SimulatedExtraction` to a :class:`ValidationResult`.

    Each heuristic contributes an optional reason and a sub-confidence; the
    overall confidence is their product. A blocking reason rejects the
    document, an advisory one only lowers confidence.
    """

    def __init__(self, config: ValidationConfig | None = None) -> None:
        self.config = config or ValidationConfig()

    def validate(self, extraction: SimulatedExtraction) -> ValidationResult:
        cfg = self.config
        reasons: list[str] = []
        blocking = False
        confidence = 1.0

        declared = _normalise(extraction.declared_type)
        detected = _normalise(extraction.detected_type)
        effective_type = declared or detected

        if effective_type in SIGNATURE_REQUIRED_TYPES and not extraction.signature_present:
            reasons.append("Missing signature detected")
            blocking = True
            confidence *= cfg.missing_signature_confidence

        if extraction.ocr_confidence < cfg.ocr_confidence_threshold:
            reasons.append(f"Low OCR confidence ({round(extraction.ocr_confidence * 100)}%)")
            blocking = True
            confidence *= max(0.0, extraction.ocr_confidence)

        if extraction.size_bytes < cfg.min_size_bytes:
            reasons.append(f"File too small ({extraction.size_bytes} bytes)")
            blocking = True
            confidence *= cfg.small_file_confidence

        if declared and detected and declared != detected:
            reasons.append(f"Declared type {declared} does not match detected type {detected}")
            blocking = True
            confidence *= cfg.type_mismatch_confidence

        if detected is None or detected not in KNOWN_DOCUMENT_TYPES:
            reasons.append("Document type could not be identified")
            confidence = min(confidence, cfg.unknown_type_confidence_cap)

        return ValidationResult(
            accepted=not blocking,
            reasons=tuple(reasons),
            confidence=_clamp(confidence),
            extracted_fields=_stringify(extraction.fields.items()),
        )


def _normalise(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().lower()
    return value or None


def _stringify(items: Iterable[tuple[object, object]]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for key, value in items:
        if isinstance(value, bool):
            fields[str(key)] = "true" if value else "false"
        elif value is None:
            fields[str(key)] = ""
        else:
            fields[str(key)] = str(value)
    return fields


def _clamp(value: float) -> float:
    return round(min(1.0, max(0.0, value)), 4)


__all__ = ["KNOWN_DOCUMENT_TYPES", "SIGNATURE_REQUIRED_TYPES", "ValidationConfig", "ValidationEngine"]

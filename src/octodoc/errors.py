"""Error taxonomy shared by the intake engine and its HTTP surface."""

from __future__ import annotations

from typing import Any, Mapping


class OctodocError(Exception):
    """Request-level error rendered as ``{code, message, details}``."""

    http_status = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(OctodocError):
    """Malformed or missing request fields. Never retried."""

    http_status = 400
    default_code = "VALIDATION_ERROR"


class PayloadTooLargeError(ValidationError):
    """Uploaded file exceeds the configured size limit."""

    http_status = 413
    default_code = "FILE_TOO_LARGE"


class NotFoundError(OctodocError):
    """Unknown or expired session, document or job."""

    http_status = 404
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str, *, code: str | None = None) -> None:
        super().__init__(
            f"{resource} not found",
            code=code or f"{resource.upper()}_NOT_FOUND",
            details={"id": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class DependencyError(Exception):
    """Failure talking to a backing dependency (primary store, cache)."""

    retryable = False

    def __init__(self, dependency: str, message: str) -> None:
        super().__init__(f"{dependency}: {message}")
        self.dependency = dependency
        self.message = message


class RetryableDependencyError(DependencyError):
    """Timeout, connection refused or transient unavailability."""

    retryable = True


class NonRetryableDependencyError(DependencyError):
    """The dependency is reachable but unusable (e.g. rejected credentials)."""


class PipelineFailure(Exception):
    """A simulated stage failure; the job ends in the ``failed`` stage."""

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage}: {reason}")
        self.stage = stage
        self.reason = reason


__all__ = [
    "DependencyError",
    "NonRetryableDependencyError",
    "NotFoundError",
    "OctodocError",
    "PayloadTooLargeError",
    "PipelineFailure",
    "RetryableDependencyError",
    "ValidationError",
]

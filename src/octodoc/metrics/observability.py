"""Observability helpers for OctoDoc."""

from __future__ import annotations

import logging
from contextvars import ContextVar

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "octodoc") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for the intake engine."""

    stage_transitions = Counter(
        "octodoc_stage_transitions_total",
        "Job stage transitions by target stage.",
        ["stage"],
    )
    job_outcomes = Counter(
        "octodoc_job_outcomes_total",
        "Terminal job outcomes.",
        ["outcome"],
    )
    validation_confidence = Histogram(
        "octodoc_validation_confidence",
        "Confidence of completed validation results.",
        buckets=(0.0, 0.25, 0.5, 0.6, 0.75, 0.9, 1.0),
    )
    store_calls = Counter(
        "octodoc_store_calls_total",
        "Store calls by dependency, serving backend and outcome.",
        ["dependency", "source", "outcome"],
    )
    store_retries = Counter(
        "octodoc_store_retries_total",
        "Retried store attempts per dependency.",
        ["dependency"],
    )
    degraded_mode = Gauge(
        "octodoc_degraded_mode",
        "1 while the application serves data from the static fallback.",
    )
    active_sessions = Gauge(
        "octodoc_active_sessions",
        "Number of live intake sessions.",
    )
    stream_subscribers = Gauge(
        "octodoc_stream_subscribers",
        "Number of open progress stream subscriptions.",
    )

    @classmethod
    def observe_transition(cls, stage: str) -> None:
        cls.stage_transitions.labels(stage=stage).inc()

    @classmethod
    def observe_outcome(cls, outcome: str, confidence: float | None = None) -> None:
        cls.job_outcomes.labels(outcome=outcome).inc()
        if confidence is not None:
            cls.validation_confidence.observe(_clamp_score(confidence))

    @classmethod
    def observe_store_call(cls, dependency: str, source: str, outcome: str) -> None:
        cls.store_calls.labels(dependency=dependency, source=source, outcome=outcome).inc()

    @classmethod
    def observe_retry(cls, dependency: str) -> None:
        cls.store_retries.labels(dependency=dependency).inc()

    @classmethod
    def set_degraded(cls, active: bool) -> None:
        cls.degraded_mode.set(1 if active else 0)


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]

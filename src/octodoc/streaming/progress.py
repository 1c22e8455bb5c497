"""Fan-out of job progress snapshots to per-session subscribers."""

from __future__ import annotations

import asyncio
import statistics
from typing import Any

from octodoc.metrics.observability import PipelineMetrics, get_logger
from octodoc.models import DocumentView, JobSnapshot, Session
from octodoc.pipeline.service import DocumentPipeline
from octodoc.resilience.mode import SystemMode
from octodoc.scheduling import Scheduler, TimerHandle
from octodoc.sessions.registry import SessionRegistry

_CLOSED = object()


class Subscription:
    """Bounded, drop-oldest queue of snapshot events for one subscriber."""

    def __init__(self, stream: "ProgressStream", session_id: str, maxsize: int) -> None:
        self.stream = stream
        self.session_id = session_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def publish(self, event: dict[str, Any]) -> None:
        if self.closed:
            return
        self._put(event)

    def _put(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def pending(self) -> int:
        return self._queue.qsize()

    async def next(self) -> dict[str, Any] | None:
        """Next event, or ``None`` once the subscription is closed and drained."""

        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        self.stream._unsubscribe(self)

    def _mark_closed(self) -> None:
        if not self.closed:
            self.closed = True
            self._put(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> dict[str, Any]:
        event = await self.next()
        if event is None:
            raise StopAsyncIteration
        return event


class ProgressStream:
    """Publishes snapshot events on job changes, mode transitions and heartbeats.

    Publishing never blocks: each subscriber owns a bounded queue and the
    oldest queued event is dropped when it is full.
    """

    def __init__(
        self,
        pipeline: DocumentPipeline,
        sessions: SessionRegistry,
        mode: SystemMode,
        scheduler: Scheduler,
        *,
        heartbeat_seconds: float = 4.0,
        queue_size: int = 32,
    ) -> None:
        self.pipeline = pipeline
        self.sessions = sessions
        self.mode = mode
        self.scheduler = scheduler
        self.heartbeat_seconds = heartbeat_seconds
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscription]] = {}
        self._heartbeats: dict[str, TimerHandle] = {}
        self._logger = get_logger("stream")
        pipeline.add_listener(self._on_job_change)
        mode.add_listener(self._on_mode_change)
        sessions.add_expiry_listener(self.close_session)

    async def subscribe(self, session_id: str) -> Subscription:
        await self.sessions.get(session_id)
        subscription = Subscription(self, session_id, self.queue_size)
        subscribers = self._subscribers.setdefault(session_id, [])
        subscribers.append(subscription)
        PipelineMetrics.stream_subscribers.set(self.subscriber_count())
        subscription.publish(self.snapshot(session_id, "snapshot"))
        if session_id not in self._heartbeats:
            self._heartbeats[session_id] = self.scheduler.call_later(self.heartbeat_seconds, self._heartbeat, session_id)
        self._logger.info("stream.subscribed", session_id=session_id, subscribers=len(subscribers))
        return subscription

    def notify(self, session_id: str, event: str = "update") -> None:
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return
        payload = self.snapshot(session_id, event)
        for subscription in list(subscribers):
            subscription.publish(payload)

    async def close_session(self, session_id: str) -> None:
        subscribers = self._subscribers.pop(session_id, [])
        for subscription in subscribers:
            subscription._mark_closed()
        self._cancel_heartbeat(session_id)
        PipelineMetrics.stream_subscribers.set(self.subscriber_count())
        if subscribers:
            self._logger.info("stream.closed", session_id=session_id, subscribers=len(subscribers))

    def subscriber_count(self, session_id: str | None = None) -> int:
        if session_id is not None:
            return len(self._subscribers.get(session_id, ()))
        return sum(len(subscribers) for subscribers in self._subscribers.values())

    def shutdown(self) -> None:
        for session_id in list(self._subscribers):
            for subscription in self._subscribers.pop(session_id):
                subscription._mark_closed()
            self._cancel_heartbeat(session_id)
        PipelineMetrics.stream_subscribers.set(0)

    def snapshot(self, session_id: str, event: str = "snapshot") -> dict[str, Any]:
        return {
            "event": event,
            "session_id": session_id,
            "emitted_at": self.scheduler.now().isoformat(),
            "degraded": self.mode.is_active(),
            "analytics": self.analytics(session_id),
            "jobs": [snapshot.to_dict() for snapshot in self.pipeline.jobs_for_session(session_id)],
        }

    def analytics(self, session_id: str) -> dict[str, Any]:
        """Aggregate view of a session's documents, computed on demand."""

        return session_analytics(
            self.sessions.peek(session_id),
            self.pipeline.document_views(session_id),
            self.pipeline.jobs_for_session(session_id),
        )

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.session_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        subscription._mark_closed()
        if not subscribers:
            self._subscribers.pop(subscription.session_id, None)
            self._cancel_heartbeat(subscription.session_id)
        PipelineMetrics.stream_subscribers.set(self.subscriber_count())
        self._logger.info("stream.unsubscribed", session_id=subscription.session_id)

    def _cancel_heartbeat(self, session_id: str) -> None:
        timer = self._heartbeats.pop(session_id, None)
        if timer is not None:
            timer.cancel()

    async def _heartbeat(self, session_id: str) -> None:
        if not self._subscribers.get(session_id):
            self._heartbeats.pop(session_id, None)
            return
        self.notify(session_id, "heartbeat")
        self._heartbeats[session_id] = self.scheduler.call_later(self.heartbeat_seconds, self._heartbeat, session_id)

    def _on_job_change(self, session_id: str, snapshot: JobSnapshot) -> None:
        self.notify(session_id, "update")

    def _on_mode_change(self, mode: SystemMode) -> None:
        for session_id in list(self._subscribers):
            self.notify(session_id, "mode")


def session_analytics(
    session: Session | None,
    documents: list[DocumentView],
    jobs: list[JobSnapshot],
) -> dict[str, Any]:
    counts = {"accepted": 0, "needs_attention": 0, "failed": 0, "processing": 0}
    for view in documents:
        counts[view.status] = counts.get(view.status, 0) + 1
    stage_counts: dict[str, int] = {}
    for job in jobs:
        stage_counts[job.stage.value] = stage_counts.get(job.stage.value, 0) + 1

    confidences = [view.validation.confidence for view in documents if view.validation is not None]
    average = round(statistics.fmean(confidences), 4) if confidences else None
    flagged = counts["needs_attention"] + counts["failed"]
    if average is None:
        risk_level = "high" if flagged else "low"
    elif average >= 0.75 and not flagged:
        risk_level = "low"
    elif average >= 0.5:
        risk_level = "medium"
    else:
        risk_level = "high"

    covered = {view.document_type for view in documents if view.document_type and view.status != "failed"}
    checklist = session.required_checklist if session else ()
    missing = [item for item in checklist if item.required and item.id not in covered]

    actions = [f"Upload {item.title}" for item in missing]
    for view in documents:
        if view.status == "needs_attention" and view.validation is not None:
            first = view.validation.reasons[0] if view.validation.reasons else "needs review"
            actions.append(f"Review {view.original_name}: {first}")
        elif view.status == "failed":
            actions.append(f"Re-upload {view.original_name}")

    highlights: list[str] = []
    if documents:
        highlights.append(f"{counts['accepted']} of {len(documents)} documents accepted")
    if average is not None:
        highlights.append(f"Average confidence {round(average * 100)}%")
    if checklist and not missing:
        highlights.append("All required documents received")

    return {
        "total_documents": len(documents),
        "accepted_documents": counts["accepted"],
        "needs_attention_documents": counts["needs_attention"],
        "failed_documents": counts["failed"],
        "processing_documents": counts["processing"],
        "stage_counts": stage_counts,
        "average_confidence": average,
        "risk_level": risk_level,
        "missing_required": [item.to_dict() for item in missing],
        "recommended_actions": actions,
        "highlights": highlights,
    }


__all__ = ["ProgressStream", "Subscription", "session_analytics"]

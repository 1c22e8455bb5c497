"""Session lifecycle: start, lookup, TTL extension, expiry sweep."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Sequence
from uuid import uuid4

from octodoc.errors import NotFoundError, ValidationError
from octodoc.metrics.observability import PipelineMetrics, get_logger
from octodoc.models import ChecklistItem, LoanType, Session
from octodoc.resilience.store import ResilientStore
from octodoc.scheduling import Scheduler, TimerHandle
from octodoc.storage.fallback import PROGRAM_CHECKLISTS

ExpiryListener = Callable[[str], Awaitable[None]]

SESSION_KIND = "session"
CHECKLIST_KIND = "checklist"
PICKUP_KIND = "pickup"


class SessionRegistry:
    """Owns live sessions; persisted copies are written through to the stores."""

    def __init__(
        self,
        primary: ResilientStore,
        cache: ResilientStore,
        scheduler: Scheduler,
        *,
        ttl_seconds: int = 30 * 60,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self.primary = primary
        self.cache = cache
        self.scheduler = scheduler
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._sessions: dict[str, Session] = {}
        self._listeners: list[ExpiryListener] = []
        self._sweeper: TimerHandle | None = None
        self._logger = get_logger("sessions")

    def add_expiry_listener(self, listener: ExpiryListener) -> None:
        self._listeners.append(listener)

    def active_count(self) -> int:
        return len(self._sessions)

    def peek(self, session_id: str) -> Session | None:
        """Live in-memory session without expiry checks or read-through."""

        return self._sessions.get(session_id)

    async def start(
        self,
        loan_type: str | LoanType,
        applicant_name: str | None = None,
        email: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Session:
        try:
            program = LoanType(loan_type)
        except ValueError:
            raise ValidationError(
                "loanType must be one of: 504, 5a",
                code="INVALID_LOAN_TYPE",
                details={"loanType": loan_type},
            ) from None
        now = self.scheduler.now()
        session = Session(
            id=secrets.token_hex(16),
            loan_type=program,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            applicant_name=applicant_name,
            email=email,
            required_checklist=await self.checklist(program),
            metadata=dict(metadata or {}),
        )
        self._sessions[session.id] = session
        PipelineMetrics.active_sessions.set(len(self._sessions))
        await self._persist(session)
        self._logger.info("session.started", session_id=session.id, loan_type=program.value)
        return session

    async def checklist(self, loan_type: LoanType) -> tuple[ChecklistItem, ...]:
        """Required checklist for a loan program, read through the primary store."""

        result = await self.primary.get(CHECKLIST_KIND, loan_type.value)
        record = result.value
        if record is None:
            items: Sequence[Mapping[str, Any]] = PROGRAM_CHECKLISTS[loan_type.value]
            await self.primary.put(
                CHECKLIST_KIND,
                loan_type.value,
                {"id": loan_type.value, "loan_type": loan_type.value, "items": [dict(item) for item in items]},
            )
        else:
            items = record.get("items") or ()
        return tuple(ChecklistItem.from_dict(item) for item in items)

    async def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = await self._load(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        if session.is_expired(self.scheduler.now()):
            await self._remove(session_id, reason="expired")
            raise NotFoundError("session", session_id)
        return session

    async def touch(self, session_id: str) -> Session:
        session = await self.get(session_id)
        session.expires_at = self.scheduler.now() + timedelta(seconds=self.ttl_seconds)
        await self._persist(session)
        return session

    async def end(self, session_id: str) -> None:
        await self.get(session_id)
        await self._remove(session_id, reason="ended")

    async def sweep(self) -> list[str]:
        now = self.scheduler.now()
        expired = [session_id for session_id, session in self._sessions.items() if session.is_expired(now)]
        for session_id in expired:
            await self._remove(session_id, reason="expired")
        self._logger.info("sweep.complete", expired=len(expired), active=len(self._sessions))
        return expired

    def start_sweeper(self) -> None:
        if self._sweeper is None:
            self._sweeper = self.scheduler.call_later(self.sweep_interval_seconds, self._sweep_tick)

    def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None

    async def schedule_pickup(
        self,
        session_id: str,
        preferred_date: str | datetime | None = None,
        contact_phone: str | None = None,
    ) -> dict[str, Any]:
        await self.get(session_id)
        if preferred_date is None or preferred_date == "":
            scheduled_at = self.scheduler.now() + timedelta(days=1)
        elif isinstance(preferred_date, datetime):
            scheduled_at = preferred_date
        else:
            try:
                scheduled_at = datetime.fromisoformat(preferred_date)
            except ValueError:
                raise ValidationError(
                    "preferredDate must be an ISO-8601 date",
                    details={"preferredDate": preferred_date},
                ) from None
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        confirmation_id = uuid4().hex
        await self.primary.put(
            PICKUP_KIND,
            confirmation_id,
            {
                "id": confirmation_id,
                "session_id": session_id,
                "scheduled_at": scheduled_at.isoformat(),
                "contact_phone": contact_phone,
            },
            ttl_seconds=self.ttl_seconds,
        )
        self._logger.info("pickup.scheduled", session_id=session_id, confirmation_id=confirmation_id)
        return {"confirmation_id": confirmation_id, "scheduled_at": scheduled_at}

    async def _sweep_tick(self) -> None:
        try:
            await self.sweep()
        finally:
            if self._sweeper is not None:
                self._sweeper = self.scheduler.call_later(self.sweep_interval_seconds, self._sweep_tick)

    async def _load(self, session_id: str) -> Session | None:
        for store in (self.cache, self.primary):
            record = (await store.get(SESSION_KIND, session_id)).value
            if record is None:
                continue
            try:
                session = Session.from_record(record)
            except (KeyError, ValueError) as exc:
                self._logger.warning("session.corrupt_record", session_id=session_id, error=str(exc))
                continue
            if session.is_expired(self.scheduler.now()):
                return None
            self._sessions[session.id] = session
            PipelineMetrics.active_sessions.set(len(self._sessions))
            self._logger.info("session.rehydrated", session_id=session_id, dependency=store.dependency)
            return session
        return None

    async def _persist(self, session: Session) -> None:
        ttl = max(1, int((session.expires_at - self.scheduler.now()).total_seconds()))
        record = session.to_record()
        await self.primary.put(SESSION_KIND, session.id, record, ttl_seconds=ttl)
        await self.cache.put(SESSION_KIND, session.id, record, ttl_seconds=ttl)

    async def _remove(self, session_id: str, *, reason: str) -> None:
        self._sessions.pop(session_id, None)
        PipelineMetrics.active_sessions.set(len(self._sessions))
        for listener in list(self._listeners):
            await listener(session_id)
        await self.cache.delete(SESSION_KIND, session_id)
        await self.primary.delete(SESSION_KIND, session_id)
        self._logger.info("session.removed", session_id=session_id, reason=reason)


__all__ = ["CHECKLIST_KIND", "ExpiryListener", "PICKUP_KIND", "SESSION_KIND", "SessionRegistry"]

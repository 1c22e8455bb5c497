"""FastAPI application exposing the OctoDoc intake engine."""

from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from octodoc.api.schemas import (
    AnalyticsResponse,
    ChecklistItemModel,
    CreateSessionRequest,
    DocumentModel,
    DocumentsResponse,
    HealthResponse,
    JobStatusResponse,
    ModeOverrideRequest,
    ModeStatusResponse,
    PickupRequest,
    PickupResponse,
    RevalidateResponse,
    SessionResponse,
    UploadResponse,
)
from octodoc.config import Settings, get_settings
from octodoc.engine import IntakeEngine, build_engine
from octodoc.errors import OctodocError, PayloadTooLargeError, ValidationError
from octodoc.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from octodoc.models import FileMeta

_HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: "UNAUTHORIZED",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_429_TOO_MANY_REQUESTS: "RATE_LIMITED",
}


@dataclass(frozen=True)
class AppDependencies:
    engine: IntakeEngine


def _build_dependencies(settings: Settings) -> AppDependencies:
    return AppDependencies(engine=build_engine(settings))


class RateLimiter:
    """Sliding-window request limiter keyed by client and path."""

    def __init__(self, requests: int, window_seconds: int) -> None:
        self.requests = requests
        self.window = window_seconds
        self._buckets: dict[str, list[float]] = {}

    def check(self, request: Request) -> None:
        client_ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        key = f"{client_ip}:{request.url.path}"
        now = time.monotonic()
        bucket = self._buckets.setdefault(key, [])
        cutoff = now - self.window
        while bucket and bucket[0] < cutoff:
            bucket.pop(0)
        if len(bucket) >= self.requests:
            raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
        bucket.append(now)


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)
    engine = deps.engine

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        engine.start()
        logger.info("api.started", environment=settings.environment, degraded=engine.mode.is_active())
        try:
            yield
        finally:
            await engine.shutdown()
            logger.info("api.stopped")

    from octodoc import __version__

    app = FastAPI(title="OctoDoc API", version=__version__, lifespan=lifespan)
    app.state.dependencies = deps

    # Optional CORS
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Degraded-Mode"] = "true" if engine.mode.is_active() else "false"
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    def rate_limiter(request: Request) -> None:
        limiter.check(request)

    def _error_response(request: Request, status_code: int, body: dict[str, Any]) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        content = {**body, "degraded": engine.mode.is_active(), "correlation_id": correlation_id}
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(OctodocError)
    async def handle_octodoc_error(request: Request, exc: OctodocError) -> JSONResponse:
        logger.info("request.rejected", code=exc.code, status=exc.http_status, detail=exc.message)
        return _error_response(request, exc.http_status, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [{"loc": list(error.get("loc", ())), "msg": error.get("msg", "")} for error in exc.errors()]
        return _error_response(
            request,
            status.HTTP_400_BAD_REQUEST,
            {"code": "VALIDATION_ERROR", "message": "Request validation failed", "details": {"errors": errors}},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
        return _error_response(request, exc.status_code, {"code": code, "message": str(exc.detail), "details": {}})

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return _error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            {"code": "INTERNAL_ERROR", "message": "Internal Server Error", "details": {}},
        )

    def get_engine(request: Request) -> IntakeEngine:
        return request.app.state.dependencies.engine

    @app.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
    async def start_session(
        payload: CreateSessionRequest,
        engine: IntakeEngine = Depends(get_engine),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> SessionResponse:
        session = await engine.sessions.start(payload.loan_type, payload.applicant_name, payload.email)
        return SessionResponse(
            session_id=session.id,
            expires_at=session.expires_at,
            loan_type=session.loan_type.value,
            required_checklist=[ChecklistItemModel.from_item(item) for item in session.required_checklist],
            degraded=engine.mode.is_active(),
        )

    @app.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def end_session(
        session_id: str,
        engine: IntakeEngine = Depends(get_engine),
        _auth: None = Depends(require_api_key),
    ) -> Response:
        await engine.sessions.end(session_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post(
        "/sessions/{session_id}/documents",
        response_model=UploadResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def upload_document(
        session_id: str,
        file: UploadFile | None = File(default=None),
        document_type: str | None = Form(default=None, alias="documentType"),
        engine: IntakeEngine = Depends(get_engine),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> UploadResponse:
        await engine.sessions.get(session_id)
        if file is None or not (file.filename or "").strip():
            raise ValidationError("A file is required", code="FILE_REQUIRED")
        # Count bytes without retaining the content
        size_limit = settings.max_upload_size_bytes
        size = 0
        try:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                size += len(chunk)
                if size > size_limit:
                    raise PayloadTooLargeError(
                        f"File too large (>{settings.max_upload_size_mb}MB): {file.filename}",
                        details={"fileName": file.filename, "maxBytes": size_limit},
                    )
        finally:
            await file.close()
        job = await engine.pipeline.submit(
            session_id,
            FileMeta(
                original_name=file.filename or "",
                size_bytes=size,
                mime_type=file.content_type,
                document_type=(document_type or "").strip() or None,
            ),
        )
        return UploadResponse(
            document_id=job.document_id,
            job_id=job.id,
            file_name=job.original_name,
            size=job.size_bytes,
            uploaded_at=job.created_at,
            degraded=engine.mode.is_active(),
        )

    @app.get("/sessions/{session_id}/documents", response_model=DocumentsResponse)
    async def list_documents(session_id: str, engine: IntakeEngine = Depends(get_engine)) -> DocumentsResponse:
        session = await engine.sessions.get(session_id)
        views = await engine.pipeline.documents(session_id)
        return DocumentsResponse(
            documents=[DocumentModel.from_view(view) for view in views],
            required_checklist=[ChecklistItemModel.from_item(item) for item in session.required_checklist],
            degraded=engine.mode.is_active(),
        )

    @app.post(
        "/documents/{document_id}/revalidate",
        response_model=RevalidateResponse,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def revalidate_document(
        document_id: str,
        engine: IntakeEngine = Depends(get_engine),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> RevalidateResponse:
        job = await engine.pipeline.revalidate(document_id)
        return RevalidateResponse(job_id=job.id, degraded=engine.mode.is_active())

    @app.post("/sessions/{session_id}/pickup", response_model=PickupResponse)
    async def schedule_pickup(
        session_id: str,
        payload: PickupRequest | None = None,
        engine: IntakeEngine = Depends(get_engine),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> PickupResponse:
        payload = payload or PickupRequest()
        pickup = await engine.sessions.schedule_pickup(session_id, payload.preferred_date, payload.contact_phone)
        return PickupResponse(
            confirmation_id=pickup["confirmation_id"],
            scheduled_at=pickup["scheduled_at"],
            degraded=engine.mode.is_active(),
        )

    @app.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
    async def job_status(job_id: str, engine: IntakeEngine = Depends(get_engine)) -> JobStatusResponse:
        snapshot = await engine.pipeline.find_status(job_id)
        return JobStatusResponse.from_snapshot(snapshot, degraded=engine.mode.is_active())

    @app.get("/sessions/{session_id}/analytics", response_model=AnalyticsResponse)
    async def session_analytics(session_id: str, engine: IntakeEngine = Depends(get_engine)) -> AnalyticsResponse:
        await engine.sessions.get(session_id)
        analytics = engine.stream.analytics(session_id)
        return AnalyticsResponse(
            session_id=session_id,
            total_documents=analytics["total_documents"],
            accepted_documents=analytics["accepted_documents"],
            needs_attention_documents=analytics["needs_attention_documents"],
            failed_documents=analytics["failed_documents"],
            processing_documents=analytics["processing_documents"],
            stage_counts=analytics["stage_counts"],
            average_confidence=analytics["average_confidence"],
            risk_level=analytics["risk_level"],
            missing_required=[ChecklistItemModel(**item) for item in analytics["missing_required"]],
            recommended_actions=analytics["recommended_actions"],
            highlights=analytics["highlights"],
            degraded=engine.mode.is_active(),
        )

    @app.get("/sessions/{session_id}/stream")
    async def stream_progress(session_id: str, engine: IntakeEngine = Depends(get_engine)) -> StreamingResponse:
        subscription = await engine.stream.subscribe(session_id)

        async def iter_sse() -> AsyncIterator[str]:
            # Initial heartbeat to keep idle proxies open
            yield ": heartbeat\n\n"
            try:
                async for event in subscription:
                    yield f"event: {event['event']}\ndata: {json.dumps(event)}\n\n"
            finally:
                subscription.close()

        return StreamingResponse(
            iter_sse(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/mode/override", response_model=ModeStatusResponse)
    async def override_mode(
        payload: ModeOverrideRequest,
        engine: IntakeEngine = Depends(get_engine),
        _auth: None = Depends(require_api_key),
    ) -> ModeStatusResponse:
        engine.mode.set_override(payload.enabled, payload.reason)
        logger.warning("mode.override_changed", enabled=payload.enabled, reason=payload.reason)
        return ModeStatusResponse(**engine.tracker.snapshot(), degraded=engine.mode.is_active())

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/health", response_model=HealthResponse)
    async def healthcheck(engine: IntakeEngine = Depends(get_engine)) -> HealthResponse:
        degraded = engine.mode.is_active()
        return HealthResponse(
            status="degraded" if degraded else "ok",
            version=__version__,
            environment=settings.environment,
            mode=engine.tracker.snapshot(),
            degraded=degraded,
        )

    @app.head("/health")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    return app


app = create_app()

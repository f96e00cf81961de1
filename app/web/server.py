"""FastAPI application exposing the proctoring recording pipeline."""

from __future__ import annotations

import contextlib
import contextvars
import logging
import uuid
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, File, Form, Header, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..errors import (
    ConsistencyError,
    NotFoundError,
    PayloadTooLargeError,
    ProctorMediaError,
    TransientBackendError,
    ValidationError,
)
from ..services.events import emit_structured_event
from ..services.ingestion import SegmentIngestor
from ..services.media import MediaGateway, MediaStream, RangeNotSatisfiable
from ..services.merge import MergeOrchestrator
from ..services.records import parse_channel, parse_timestamp
from ..services.registry import SegmentRegistry
from ..services.sweep import ConsistencySweep
from ..storage import StorageBackends


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "proctor_media_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "proctor_media_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(f"request:{method.upper()}" if isinstance(method, str) else "request")
        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("proctor_media.web.events"), {})


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event(
        "APP_EVENT",
        message,
        payload=context,
        correlation=_collect_correlation_context(),
        level=logging.DEBUG,
        logger=EVENT_LOGGER,
    )


_ERROR_STATUS = (
    (RangeNotSatisfiable, status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE),
    (PayloadTooLargeError, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConsistencyError, status.HTTP_409_CONFLICT),
    (TransientBackendError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for_error(error: ProctorMediaError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class SessionCreatePayload(BaseModel):
    session_id: Optional[str] = None


class SessionFinishPayload(BaseModel):
    status: str = "submitted"


class MergeTriggerPayload(BaseModel):
    channel: str


def _stream_response(stream: MediaStream) -> StreamingResponse:
    return StreamingResponse(
        stream.chunks,
        status_code=stream.status_code,
        headers=stream.headers,
        media_type=stream.media_type,
    )


def create_app(
    config: AppConfig,
    *,
    registry: Optional[SegmentRegistry] = None,
    backends: Optional[StorageBackends] = None,
    orchestrator: Optional[MergeOrchestrator] = None,
    object_store_client: Any = None,
) -> FastAPI:
    """Return a configured FastAPI application.

    Collaborators not supplied are built from *config*. The merge worker
    pool is shut down when the application stops.
    """

    registry = registry or SegmentRegistry(config)
    backends = backends or StorageBackends.from_config(config, object_store_client=object_store_client)
    orchestrator = orchestrator or MergeOrchestrator(config, registry, backends)
    ingestor = SegmentIngestor(config, registry, backends)
    gateway = MediaGateway(registry, backends)
    sweep = ConsistencySweep(registry, backends)

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        resumed = orchestrator.resume_pending()
        if resumed:
            LOGGER.info("Resumed %s pending merge job(s)", len(resumed))
        try:
            yield
        finally:
            orchestrator.shutdown(wait=True)

    app = FastAPI(
        title="Proctor Media",
        description="Segment ingestion, merging and playback for proctored sessions",
        lifespan=lifespan,
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    )
    app.state.config = config
    app.state.registry = registry
    app.state.backends = backends
    app.state.orchestrator = orchestrator
    app.state.sweep = sweep

    @app.exception_handler(ProctorMediaError)
    async def handle_pipeline_error(request: Request, error: ProctorMediaError) -> JSONResponse:
        code = status_for_error(error)
        headers: Dict[str, str] = {}
        if isinstance(error, RangeNotSatisfiable):
            headers["Content-Range"] = f"bytes */{error.size}"
        if code >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, error)
        else:
            LOGGER.info("%s %s rejected (%s): %s", request.method, request.url.path, code, error)
        return JSONResponse(status_code=code, content={"detail": str(error)}, headers=headers)

    @app.post("/api/sessions", status_code=status.HTTP_201_CREATED)
    def create_session(payload: Optional[SessionCreatePayload] = None) -> Dict[str, Any]:
        session = registry.create_session(payload.session_id if payload else None)
        _log_event("Session created", session_id=session.id)
        return {"sessionId": session.id, "status": session.status.value}

    @app.post("/api/sessions/{session_id}/finish")
    def finish_session(session_id: str, payload: SessionFinishPayload) -> Dict[str, Any]:
        session = registry.finish_session(session_id, payload.status)
        triggered = orchestrator.on_session_finished(session_id)
        _log_event("Session finished", session_id=session_id, status=session.status)
        return {
            "sessionId": session.id,
            "status": session.status.value,
            "mergeStatus": {channel.value: value.value for channel, value in triggered.items()},
        }

    @app.post("/api/sessions/{session_id}/segments", status_code=status.HTTP_201_CREATED)
    async def upload_segment(
        session_id: str,
        channel: str = Form(...),
        sequence: Optional[str] = Form(None),
        file: UploadFile = File(...),
        recorded_at: Optional[str] = Form(None),
        duration_ms: Optional[str] = Form(None),
    ) -> Dict[str, Any]:
        _log_event("Receiving segment", session_id=session_id, channel=channel, sequence=sequence)
        data = await file.read(config.max_segment_bytes + 1)
        try:
            recorded: Optional[datetime] = parse_timestamp(recorded_at)
        except ValueError as error:
            raise ValidationError(f"Invalid recorded_at timestamp '{recorded_at}'") from error
        record = await run_in_threadpool(
            ingestor.ingest,
            session_id,
            channel,
            sequence,
            data,
            file.content_type,
            recorded_at=recorded,
            duration_ms=duration_ms,
        )
        return {
            "segmentId": record.segment_id,
            "channel": record.channel.value,
            "sequence": record.sequence,
            "storageBackend": record.storage_backend.value,
            "sizeBytes": record.size_bytes,
        }

    @app.post("/api/sessions/{session_id}/merge", status_code=status.HTTP_202_ACCEPTED)
    def trigger_merge(session_id: str, payload: MergeTriggerPayload) -> Dict[str, Any]:
        channel = parse_channel(payload.channel, mergeable=True)
        merge_status = orchestrator.trigger(session_id, channel)
        _log_event("Merge requested", session_id=session_id, channel=channel, status=merge_status)
        return {"channel": channel.value, "status": merge_status.value}

    @app.get("/api/sessions/{session_id}/merge-status")
    def get_merge_status(session_id: str) -> Dict[str, str]:
        statuses = registry.get_merge_statuses(session_id)
        return {channel.value: merge_status.value for channel, merge_status in statuses.items()}

    @app.get("/api/sessions/{session_id}/report")
    def get_report(session_id: str) -> Dict[str, Any]:
        report = registry.get_report(session_id)
        public_urls = {
            channel: backends.public_url(ref) for channel, ref in report.recording_urls.items()
        }
        return report.to_dict(public_urls=public_urls)

    @app.get("/api/sessions/{session_id}/media/segments/{segment_id}")
    def stream_segment(
        session_id: str,
        segment_id: str,
        range_header: Optional[str] = Header(None, alias="Range"),
    ) -> StreamingResponse:
        return _stream_response(gateway.open_segment(session_id, segment_id, range_header))

    @app.get("/api/sessions/{session_id}/media/recordings/{channel}")
    def stream_recording(
        session_id: str,
        channel: str,
        range_header: Optional[str] = Header(None, alias="Range"),
    ) -> StreamingResponse:
        return _stream_response(gateway.open_recording(session_id, channel, range_header))

    @app.post("/api/maintenance/sweep")
    def run_sweep() -> Dict[str, Any]:
        report = sweep.run()
        return report.to_dict()

    return app


__all__ = [
    "ContextualLoggerAdapter",
    "RequestContextMiddleware",
    "create_app",
    "status_for_error",
]

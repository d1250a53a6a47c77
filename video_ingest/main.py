import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from video_ingest.config import settings
from video_ingest.coordinator import UploadCoordinator
from video_ingest.db import Base, SessionLocal, engine
from video_ingest.errors import IngestError, InvalidMetadata, Throttled
from video_ingest.events import audit_event, log_event, trace_id
from video_ingest.maintenance import cleanup_once
from video_ingest.media_service import ProcessingJob, build_media_service
from video_ingest.metrics import http_request_duration_seconds, metrics_response
from video_ingest.schemas import (
    ArtifactResponse,
    ChunkAckResponse,
    CompleteSessionResponse,
    ErrorResponse,
    InitSessionRequest,
    InitSessionResponse,
    JobStatusRequest,
    JobStatusResponse,
    SessionStatusResponse,
)
from video_ingest.session_store import MediaJobStore, SessionStore
from video_ingest.storage import build_storage
from video_ingest.tracing import setup_tracing
from video_ingest.worker import build_executor

default_coordinator = UploadCoordinator(
    store=SessionStore(SessionLocal),
    jobs=MediaJobStore(SessionLocal),
    storage=build_storage(),
    media_service=build_media_service(),
    executor=build_executor(),
)


def get_coordinator() -> UploadCoordinator:
    return default_coordinator


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []
    Base.metadata.create_all(bind=engine)

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(cleanup_once, default_coordinator)
                log_event({"event": "cleanup_completed", **stats})
            except Exception as exc:
                log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _session_id(request: Request) -> str | None:
    return request.path_params.get("session_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_error",
        429: "throttled",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


COMMON_ERROR_RESPONSES = {
    429: {"model": ErrorResponse, "description": "Throttled request"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-VIS-App-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(IngestError)
async def ingest_error_handler(request: Request, exc: IngestError):
    _log_request_error(
        request,
        exc.status_code,
        "client_error" if 400 <= exc.status_code < 500 else "server_error",
        exc.detail,
    )
    headers = {}
    if isinstance(exc, Throttled):
        headers = {"Retry-After": "1", "X-RateLimit-Reason": str(exc.context.get("reason", "throttled"))}
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "trace_id": trace_id(),
            **exc.to_payload(),
        },
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    _log_request_error(
        request,
        exc.status_code,
        "client_error" if 400 <= exc.status_code < 500 else "server_error",
        str(exc.detail),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": str(exc.detail),
            "error_code": _error_code_for_status(exc.status_code),
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "trace_id": trace_id(),
        },
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, "unhandled_exception", str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "detail": "internal server error",
            "error_code": "internal_error",
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "trace_id": trace_id(),
        },
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
        "media_service_backend": settings.media_service_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post(
    "/v1/sessions",
    response_model=InitSessionResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Invalid metadata"}},
)
def init_session(
    payload: InitSessionRequest,
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> InitSessionResponse:
    record = coordinator.init_session(
        file_name=payload.file_name,
        mime_type=payload.mime_type,
        declared_size=payload.declared_size,
        chunk_size=payload.chunk_size,
    )
    return InitSessionResponse(
        session_id=record.session_id,
        chunk_size=record.chunk_size,
        total_chunks=record.total_chunks,
        status=record.status,
    )


async def _read_chunk_body(request: Request, limit: int) -> bytes:
    content_length = request.headers.get("Content-Length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        raise InvalidMetadata(f"chunk body exceeds the {limit} byte limit", max_chunk_size=limit)
    body = bytearray()
    async for block in request.stream():
        body.extend(block)
        if len(body) > limit:
            raise InvalidMetadata(f"chunk body exceeds the {limit} byte limit", max_chunk_size=limit)
    return bytes(body)


@app.put(
    "/v1/sessions/{session_id}/chunks/{chunk_index}",
    response_model=ChunkAckResponse,
    status_code=202,
    responses={
        **COMMON_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Size mismatch or invalid chunk metadata"},
        404: {"model": ErrorResponse, "description": "Session not found"},
    },
)
async def upload_chunk(
    session_id: str,
    chunk_index: int,
    request: Request,
    declared_chunk_size: int | None = Header(default=None, alias="X-Chunk-Size"),
    chunk_offset: int | None = Header(default=None, alias="X-Chunk-Offset"),
    chunk_sha256: str | None = Header(default=None, alias="X-Chunk-SHA256"),
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> ChunkAckResponse:
    body = await _read_chunk_body(request, coordinator.max_chunk_size)
    if declared_chunk_size is None:
        declared_chunk_size = int(request.headers.get("Content-Length", len(body)))
    ack = await run_in_threadpool(
        coordinator.ingest_chunk,
        session_id,
        chunk_index,
        body,
        declared_chunk_size,
        offset=chunk_offset,
        sha256=chunk_sha256,
    )
    return ChunkAckResponse(
        session_id=ack.session_id,
        chunk_index=ack.chunk_index,
        received_chunks=ack.received_chunks,
        total_chunks=ack.total_chunks,
    )


@app.get(
    "/v1/sessions/{session_id}",
    response_model=SessionStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Session not found"}},
)
def session_status(
    session_id: str,
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> SessionStatusResponse:
    progress = coordinator.session_status(session_id)
    record = progress.record
    return SessionStatusResponse(
        session_id=record.session_id,
        file_name=record.file_name,
        mime_type=record.mime_type,
        declared_size=record.declared_size,
        chunk_size=record.chunk_size,
        total_chunks=record.total_chunks,
        status=record.status,
        received_chunk_indexes=progress.received_chunk_indexes,
        missing_chunk_indexes=progress.missing_chunk_indexes,
    )


def _job_response(job: ProcessingJob) -> JobStatusResponse:
    return JobStatusResponse(**job.to_dict())


@app.post(
    "/v1/sessions/{session_id}/complete",
    response_model=CompleteSessionResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Assembled size mismatch"},
        404: {"model": ErrorResponse, "description": "Session not found"},
        409: {"model": ErrorResponse, "description": "Incomplete upload or missing chunk"},
        415: {"model": ErrorResponse, "description": "Unsupported media type"},
        503: {"model": ErrorResponse, "description": "Media service unavailable"},
    },
)
def complete_session(
    request: Request,
    session_id: str,
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> CompleteSessionResponse:
    artifact = coordinator.complete_session(session_id)
    audit_event(
        {
            "event": "audit",
            "action": "session_complete",
            "request_id": _request_id(request),
            "session_id": session_id,
            "job_id": artifact.job.job_id,
            "size_bytes": artifact.size_bytes,
        }
    )
    return CompleteSessionResponse(
        session_id=session_id,
        artifact=ArtifactResponse(
            file_name=artifact.file_name,
            mime_type=artifact.mime_type,
            size_bytes=artifact.size_bytes,
            sha256=artifact.sha256,
            job=_job_response(artifact.job),
        ),
    )


@app.post(
    "/v1/jobs/progress",
    response_model=JobStatusResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Job not found"},
        503: {"model": ErrorResponse, "description": "Media service unavailable"},
    },
)
def job_progress(
    payload: JobStatusRequest,
    coordinator: UploadCoordinator = Depends(get_coordinator),
) -> JobStatusResponse:
    return _job_response(coordinator.query_job(payload.job_id))

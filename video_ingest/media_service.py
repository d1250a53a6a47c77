"""Client side of the external media processing service.

The service takes an assembled video, returns a job handle, and processes the
file asynchronously. Remote state names are normalized into ``JobState``.
"""

import enum
import hashlib
import uuid
from collections.abc import Iterator
from dataclasses import asdict, dataclass
from threading import Lock
from typing import BinaryIO

import httpx

from video_ingest.config import settings
from video_ingest.errors import ServiceUnavailable, UnknownJob, UnsupportedMediaType

STREAM_BLOCK_SIZE = 1024 * 1024


class JobState(str, enum.Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


TERMINAL_STATES = frozenset({JobState.ACTIVE, JobState.FAILED})
_REMOTE_STATES = {
    "PROCESSING": JobState.PROCESSING,
    "ACTIVE": JobState.ACTIVE,
    "FAILED": JobState.FAILED,
}


def normalize_state(raw: str | None) -> JobState:
    return _REMOTE_STATES.get(raw or "", JobState.UNKNOWN)


@dataclass
class ProcessingJob:
    job_id: str
    state: JobState = JobState.QUEUED
    uri: str | None = None
    progress_percent: int | None = None
    error: str | None = None
    display_name: str | None = None
    mime_type: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "ProcessingJob":
        raw_state = payload.get("state")
        try:
            state = JobState(raw_state)
        except ValueError:
            state = JobState.UNKNOWN
        progress = payload.get("progress_percent")
        return cls(
            job_id=payload["job_id"],
            state=state,
            uri=payload.get("uri"),
            progress_percent=int(progress) if progress is not None else None,
            error=payload.get("error"),
            display_name=payload.get("display_name"),
            mime_type=payload.get("mime_type"),
        )


def iter_stream(stream: BinaryIO, block_size: int = STREAM_BLOCK_SIZE) -> Iterator[bytes]:
    while True:
        block = stream.read(block_size)
        if not block:
            return
        yield block


class MediaService:
    def __init__(self, allowed_mime_types: frozenset[str] | None = None) -> None:
        self.allowed_mime_types = allowed_mime_types or settings.allowed_mime_type_set()

    def ensure_supported(self, mime_type: str) -> None:
        if mime_type not in self.allowed_mime_types:
            raise UnsupportedMediaType(
                f"unsupported media type {mime_type!r}",
                allowed_mime_types=sorted(self.allowed_mime_types),
            )

    def submit(self, stream: BinaryIO, size: int, display_name: str, mime_type: str) -> ProcessingJob:
        self.ensure_supported(mime_type)
        job = self._upload(stream, size, display_name, mime_type)
        job.state = JobState.QUEUED
        job.progress_percent = None
        return job

    def _upload(self, stream: BinaryIO, size: int, display_name: str, mime_type: str) -> ProcessingJob:
        raise NotImplementedError

    def query_state(self, job_id: str) -> ProcessingJob:
        raise NotImplementedError


def job_from_remote(payload: dict) -> ProcessingJob:
    name = payload.get("name")
    if not name:
        raise ServiceUnavailable("media service response did not include a file name")
    state = normalize_state(payload.get("state"))
    progress = None
    if state is JobState.PROCESSING:
        fraction = (payload.get("metadata") or {}).get("progress")
        if fraction:
            progress = round(float(fraction) * 100)
    return ProcessingJob(
        job_id=name,
        state=state,
        uri=payload.get("uri"),
        progress_percent=progress,
        error=(payload.get("error") or {}).get("message"),
        display_name=payload.get("displayName"),
        mime_type=payload.get("mimeType"),
    )


class GeminiFileService(MediaService):
    """Gemini Files API: resumable upload, then ``GET v1beta/{name}`` for state."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout_seconds: float = 300.0,
        client: httpx.Client | None = None,
        allowed_mime_types: frozenset[str] | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("gemini_api_key must be set when media_service_backend=gemini")
        super().__init__(allowed_mime_types)
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout_seconds)
        self.client.headers["x-goog-api-key"] = api_key

    def _request(self, method: str, url: str, not_found: type[Exception] | None = None, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ServiceUnavailable(f"media service unreachable: {exc}") from exc
        if response.status_code == 404 and not_found is not None:
            raise not_found(f"media service has no record of {url}")
        if response.status_code == 415:
            raise UnsupportedMediaType(f"media service rejected the file: {_remote_message(response)}")
        if response.is_error:
            raise ServiceUnavailable(
                f"media service returned {response.status_code}: {_remote_message(response)}"
            )
        return response

    def _upload(self, stream: BinaryIO, size: int, display_name: str, mime_type: str) -> ProcessingJob:
        start = self._request(
            "POST",
            "/upload/v1beta/files",
            headers={
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(size),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            },
            json={"file": {"display_name": display_name}},
        )
        upload_url = start.headers.get("X-Goog-Upload-URL")
        if not upload_url:
            raise ServiceUnavailable("media service did not return an upload url")

        finished = self._request(
            "POST",
            upload_url,
            headers={
                "Content-Length": str(size),
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
            content=iter_stream(stream),
        )
        remote_file = finished.json().get("file")
        if not remote_file:
            raise ServiceUnavailable("media service returned no file for the upload")
        return job_from_remote(remote_file)

    def query_state(self, job_id: str) -> ProcessingJob:
        response = self._request("GET", f"/v1beta/{job_id}", not_found=UnknownJob)
        return job_from_remote(response.json())


def _remote_message(response: httpx.Response) -> str:
    try:
        return str(response.json().get("error", {}).get("message") or response.text)
    except ValueError:
        return response.text


@dataclass
class _MemoryJob:
    job: ProcessingJob
    size_bytes: int
    sha256: str
    remaining_ticks: int


class InMemoryMediaService(MediaService):
    """Local stand-in that reports PROCESSING for a few queries, then ACTIVE."""

    def __init__(self, processing_ticks: int = 3, allowed_mime_types: frozenset[str] | None = None) -> None:
        super().__init__(allowed_mime_types)
        self.processing_ticks = max(0, processing_ticks)
        self._jobs: dict[str, _MemoryJob] = {}
        self._lock = Lock()

    def _upload(self, stream: BinaryIO, size: int, display_name: str, mime_type: str) -> ProcessingJob:
        digest = hashlib.sha256()
        received = 0
        for block in iter_stream(stream):
            digest.update(block)
            received += len(block)
        job_id = f"files/{uuid.uuid4().hex[:16]}"
        job = ProcessingJob(
            job_id=job_id,
            uri=f"memory://{job_id}",
            display_name=display_name,
            mime_type=mime_type,
        )
        with self._lock:
            self._jobs[job_id] = _MemoryJob(
                job=job, size_bytes=received, sha256=digest.hexdigest(), remaining_ticks=self.processing_ticks
            )
        return ProcessingJob(**asdict(job))

    def query_state(self, job_id: str) -> ProcessingJob:
        with self._lock:
            entry = self._jobs.get(job_id)
            if entry is None:
                raise UnknownJob(f"media service has no record of {job_id}")
            if entry.remaining_ticks > 0:
                done = self.processing_ticks - entry.remaining_ticks
                entry.remaining_ticks -= 1
                entry.job.state = JobState.PROCESSING
                entry.job.progress_percent = round(100 * done / self.processing_ticks)
            else:
                entry.job.state = JobState.ACTIVE
                entry.job.progress_percent = None
            return ProcessingJob(**asdict(entry.job))

    def received_artifact(self, job_id: str) -> tuple[int, str]:
        with self._lock:
            entry = self._jobs[job_id]
            return entry.size_bytes, entry.sha256


def build_media_service() -> MediaService:
    backend = settings.media_service_backend.lower()
    if backend == "memory":
        return InMemoryMediaService(processing_ticks=settings.memory_media_processing_ticks)
    if backend == "gemini":
        return GeminiFileService(
            api_key=settings.gemini_api_key,
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.media_service_timeout_seconds,
        )
    raise ValueError(f"unsupported media service backend: {settings.media_service_backend}")

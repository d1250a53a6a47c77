"""Upload session lifecycle: init, ingest chunks, complete.

A session is consumed by exactly one completion attempt. Whatever that
attempt ends in, the session's chunk payloads and metadata are purged before
``complete_session`` returns or raises.
"""

import hashlib
import time
import uuid
from dataclasses import dataclass

from video_ingest.assembler import Assembler
from video_ingest.chunking import chunk_count, expected_chunk_length
from video_ingest.config import settings
from video_ingest.errors import IncompleteUpload, IngestError, InvalidMetadata, SizeMismatch, Throttled, UnknownSession
from video_ingest.events import audit_event, log_event
from video_ingest.media_service import MediaService, ProcessingJob
from video_ingest.metrics import (
    assemblies_total,
    assembly_duration_seconds,
    bytes_received_total,
    chunk_ingest_failures_total,
    chunks_received_total,
    media_submissions_total,
    retries_total,
    sessions_created_total,
    sessions_purged_total,
    storage_write_latency_seconds,
)
from video_ingest.models import SessionStatus
from video_ingest.session_store import MediaJobStore, SessionRecord, SessionStore
from video_ingest.storage import ChunkStorage
from video_ingest.tracing import tracer
from video_ingest.worker import ChunkWriteExecutor


@dataclass(frozen=True)
class ChunkAck:
    session_id: str
    chunk_index: int
    received_chunks: int
    total_chunks: int


@dataclass(frozen=True)
class SessionProgress:
    record: SessionRecord
    received_chunk_indexes: list[int]

    @property
    def missing_chunk_indexes(self) -> list[int]:
        received = set(self.received_chunk_indexes)
        return [index for index in range(self.record.total_chunks) if index not in received]


@dataclass(frozen=True)
class ArtifactDescriptor:
    session_id: str
    file_name: str
    mime_type: str
    size_bytes: int
    sha256: str
    job: ProcessingJob


class UploadCoordinator:
    def __init__(
        self,
        store: SessionStore,
        jobs: MediaJobStore,
        storage: ChunkStorage,
        media_service: MediaService,
        executor: ChunkWriteExecutor | None = None,
        chunk_size: int | None = None,
        max_chunk_size: int | None = None,
        max_file_size: int | None = None,
        max_retries: int | None = None,
        spool_max_bytes: int | None = None,
    ) -> None:
        self.store = store
        self.jobs = jobs
        self.storage = storage
        self.media_service = media_service
        self.executor = executor
        self.chunk_size = settings.chunk_size_bytes if chunk_size is None else chunk_size
        self.max_chunk_size = settings.max_chunk_size_bytes if max_chunk_size is None else max_chunk_size
        self.max_file_size = settings.max_file_size_bytes if max_file_size is None else max_file_size
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.assembler = Assembler(storage, spool_max_bytes or settings.assembly_spool_max_bytes)

    def init_session(
        self, file_name: str, mime_type: str, declared_size: int, chunk_size: int | None = None
    ) -> SessionRecord:
        if not file_name or not file_name.strip():
            raise InvalidMetadata("file_name must not be empty")
        if declared_size is None or declared_size <= 0:
            raise InvalidMetadata("declared size must be positive")
        if declared_size > self.max_file_size:
            raise InvalidMetadata(
                f"declared size {declared_size} exceeds the {self.max_file_size} byte limit",
                max_file_size=self.max_file_size,
            )
        if not mime_type:
            raise InvalidMetadata("mime_type must not be empty")
        effective_chunk_size = self.chunk_size if chunk_size is None else chunk_size
        if effective_chunk_size <= 0 or effective_chunk_size > self.max_chunk_size:
            raise InvalidMetadata(f"chunk size must be between 1 and {self.max_chunk_size} bytes")

        record = self.store.create(
            file_name=file_name,
            mime_type=mime_type,
            declared_size=declared_size,
            chunk_size=effective_chunk_size,
            total_chunks=chunk_count(declared_size, effective_chunk_size),
        )
        sessions_created_total.inc()
        audit_event(
            {
                "event": "audit",
                "action": "session_init",
                "session_id": record.session_id,
                "file_name": record.file_name,
                "mime_type": record.mime_type,
                "declared_size": record.declared_size,
                "chunk_size": record.chunk_size,
                "total_chunks": record.total_chunks,
            }
        )
        return record

    def session_status(self, session_id: str) -> SessionProgress:
        record = self.store.get(session_id)
        return SessionProgress(record=record, received_chunk_indexes=self.store.received_indexes(session_id))

    def _write_payload(self, key: str, data: bytes) -> None:
        start = time.perf_counter()
        self.storage.write_chunk(key, data)
        storage_write_latency_seconds.observe(time.perf_counter() - start)

    def _persist_with_retries(self, key: str, data: bytes) -> int:
        retries = 0
        while True:
            try:
                if self.executor is not None:
                    self.executor.submit(self._write_payload, key, data).result()
                else:
                    self._write_payload(key, data)
                return retries
            except Throttled:
                raise
            except Exception as exc:
                retries += 1
                retries_total.inc()
                if retries > self.max_retries:
                    chunk_ingest_failures_total.inc()
                    raise IngestError(f"chunk write failed: {exc}") from exc

    def ingest_chunk(
        self,
        session_id: str,
        chunk_index: int,
        payload: bytes,
        declared_chunk_size: int,
        offset: int | None = None,
        sha256: str | None = None,
    ) -> ChunkAck:
        record = self.store.get(session_id)
        if record.status != SessionStatus.receiving.value:
            raise UnknownSession("session is no longer accepting chunks", session_id=session_id)
        if chunk_index < 0 or chunk_index >= record.total_chunks:
            raise InvalidMetadata(f"chunk index {chunk_index} outside [0, {record.total_chunks})")
        if offset is not None and offset != chunk_index * record.chunk_size:
            raise InvalidMetadata(f"offset {offset} does not match chunk index {chunk_index}")
        if len(payload) != declared_chunk_size:
            raise SizeMismatch(
                f"received {len(payload)} bytes but {declared_chunk_size} were declared",
                chunk_index=chunk_index,
            )
        expected = expected_chunk_length(record.declared_size, record.chunk_size, chunk_index)
        if len(payload) != expected:
            raise SizeMismatch(f"chunk {chunk_index} must be {expected} bytes", chunk_index=chunk_index)
        fingerprint = hashlib.sha256(payload).hexdigest()
        if sha256 and sha256.lower() != fingerprint:
            raise SizeMismatch("chunk checksum mismatch", chunk_index=chunk_index)

        key = self.storage.chunk_key(session_id, chunk_index, uuid.uuid4().hex)
        retries = self._persist_with_retries(key, payload)
        try:
            recorded = self.store.record_chunk(session_id, chunk_index, len(payload), fingerprint, key)
        except UnknownSession:
            # The session was claimed or purged while the payload was in flight.
            self.storage.delete_key(key)
            raise
        if recorded.replaced_key:
            self.storage.delete_key(recorded.replaced_key)

        chunks_received_total.inc()
        bytes_received_total.inc(len(payload))
        if retries:
            log_event(
                {
                    "event": "chunk_write_retried",
                    "session_id": session_id,
                    "chunk_index": chunk_index,
                    "retries": retries,
                }
            )
        return ChunkAck(
            session_id=session_id,
            chunk_index=chunk_index,
            received_chunks=recorded.received_count,
            total_chunks=record.total_chunks,
        )

    def complete_session(self, session_id: str) -> ArtifactDescriptor:
        snapshot = self.store.claim_for_assembly(session_id)
        started = time.perf_counter()
        outcome = "error"
        try:
            missing = snapshot.missing_indexes
            if missing:
                outcome = "incomplete"
                raise IncompleteUpload(missing)
            self.media_service.ensure_supported(snapshot.record.mime_type)

            with tracer.start_as_current_span("assemble_and_submit") as span, self.assembler.assemble(
                snapshot
            ) as artifact:
                span.set_attribute("session.id", session_id)
                span.set_attribute("artifact.size_bytes", artifact.size_bytes)
                try:
                    job = self.media_service.submit(
                        artifact.stream,
                        size=artifact.size_bytes,
                        display_name=artifact.file_name,
                        mime_type=artifact.mime_type,
                    )
                except IngestError as exc:
                    media_submissions_total.labels(outcome=exc.error_code).inc()
                    raise
                media_submissions_total.labels(outcome="accepted").inc()

            self.jobs.add(job, size_bytes=artifact.size_bytes, sha256=artifact.sha256)
            outcome = "submitted"
            audit_event(
                {
                    "event": "audit",
                    "action": "job_submitted",
                    "session_id": session_id,
                    "job_id": job.job_id,
                    "uri": job.uri,
                    "size_bytes": artifact.size_bytes,
                    "sha256": artifact.sha256,
                }
            )
            return ArtifactDescriptor(
                session_id=session_id,
                file_name=artifact.file_name,
                mime_type=artifact.mime_type,
                size_bytes=artifact.size_bytes,
                sha256=artifact.sha256,
                job=job,
            )
        except IngestError as exc:
            if outcome == "error":
                outcome = exc.error_code
            raise
        finally:
            assemblies_total.labels(outcome=outcome).inc()
            assembly_duration_seconds.observe(time.perf_counter() - started)
            self.purge_session(session_id, reason=outcome)

    def purge_session(self, session_id: str, reason: str) -> int:
        try:
            deleted_keys = self.storage.delete_prefix(self.storage.session_prefix(session_id))
        finally:
            self.store.delete(session_id)
        sessions_purged_total.inc()
        audit_event(
            {
                "event": "audit",
                "action": "session_purged",
                "session_id": session_id,
                "reason": reason,
                "storage_keys_deleted": deleted_keys,
            }
        )
        return deleted_keys

    def query_job(self, job_id: str) -> ProcessingJob:
        known = self.jobs.get(job_id)
        job = self.media_service.query_state(job_id)
        if job.state != known.state:
            self.jobs.update_state(job_id, job.state)
        return job

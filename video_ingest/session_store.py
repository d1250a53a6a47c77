"""Durable upload-session bookkeeping.

Session metadata and the received-chunk set live in the database. Every
mutation of one session's received set runs under that session's lock, and
the ``(session_id, chunk_index)`` unique constraint keeps the set a set even
when two processes race on the same index.
"""

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from video_ingest.errors import UnknownJob, UnknownSession
from video_ingest.locks import SessionLocks
from video_ingest.media_service import JobState, ProcessingJob
from video_ingest.models import MediaJob, ReceivedChunk, SessionStatus, UploadSession, utc_now


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    file_name: str
    mime_type: str
    declared_size: int
    chunk_size: int
    total_chunks: int
    status: str
    created_at: datetime

    @classmethod
    def from_row(cls, row: UploadSession) -> "SessionRecord":
        return cls(
            session_id=row.id,
            file_name=row.file_name,
            mime_type=row.mime_type,
            declared_size=row.declared_size,
            chunk_size=row.chunk_size,
            total_chunks=row.total_chunks,
            status=row.status,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class ChunkRef:
    index: int
    storage_key: str
    size_bytes: int
    sha256: str


@dataclass(frozen=True)
class RecordedChunk:
    received_count: int
    replaced_key: str | None = None


@dataclass(frozen=True)
class AssemblySnapshot:
    record: SessionRecord
    chunks: dict[int, ChunkRef] = field(default_factory=dict)

    @property
    def missing_indexes(self) -> list[int]:
        return [index for index in range(self.record.total_chunks) if index not in self.chunks]


class SessionStore:
    def __init__(self, session_factory: sessionmaker, locks: SessionLocks | None = None) -> None:
        self._session_factory = session_factory
        self.locks = locks or SessionLocks()

    def create(
        self, file_name: str, mime_type: str, declared_size: int, chunk_size: int, total_chunks: int
    ) -> SessionRecord:
        with self._session_factory() as db:
            row = UploadSession(
                file_name=file_name,
                mime_type=mime_type,
                declared_size=declared_size,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                status=SessionStatus.receiving.value,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return SessionRecord.from_row(row)

    def _get_row(self, db: Session, session_id: str) -> UploadSession:
        row = db.get(UploadSession, session_id)
        if row is None:
            raise UnknownSession("session not found", session_id=session_id)
        return row

    def get(self, session_id: str) -> SessionRecord:
        with self._session_factory() as db:
            return SessionRecord.from_row(self._get_row(db, session_id))

    def received_indexes(self, session_id: str) -> list[int]:
        with self._session_factory() as db:
            self._get_row(db, session_id)
            return list(
                db.scalars(
                    select(ReceivedChunk.chunk_index)
                    .where(ReceivedChunk.session_id == session_id)
                    .order_by(ReceivedChunk.chunk_index)
                ).all()
            )

    def record_chunk(
        self, session_id: str, chunk_index: int, size_bytes: int, sha256: str, storage_key: str
    ) -> RecordedChunk:
        """Add ``chunk_index`` to the received set, replacing any earlier copy.

        Raises ``UnknownSession`` once the session has been claimed for
        assembly or deleted.
        """
        with self.locks.hold(session_id):
            try:
                return self._upsert_chunk(session_id, chunk_index, size_bytes, sha256, storage_key)
            except IntegrityError:
                # Another process inserted the same index first; the retry takes the update path.
                return self._upsert_chunk(session_id, chunk_index, size_bytes, sha256, storage_key)

    def _upsert_chunk(
        self, session_id: str, chunk_index: int, size_bytes: int, sha256: str, storage_key: str
    ) -> RecordedChunk:
        with self._session_factory() as db:
            row = self._get_row(db, session_id)
            if row.status != SessionStatus.receiving.value:
                raise UnknownSession("session is no longer accepting chunks", session_id=session_id)
            existing = db.scalar(
                select(ReceivedChunk).where(
                    ReceivedChunk.session_id == session_id, ReceivedChunk.chunk_index == chunk_index
                )
            )
            replaced_key = None
            if existing:
                if existing.storage_key != storage_key:
                    replaced_key = existing.storage_key
                existing.size_bytes = size_bytes
                existing.chunk_checksum_sha256 = sha256
                existing.storage_key = storage_key
            else:
                db.add(
                    ReceivedChunk(
                        session_id=session_id,
                        chunk_index=chunk_index,
                        size_bytes=size_bytes,
                        chunk_checksum_sha256=sha256,
                        storage_key=storage_key,
                    )
                )
            row.updated_at = utc_now()
            db.commit()
            received = db.scalar(select(func.count(ReceivedChunk.id)).where(ReceivedChunk.session_id == session_id))
            return RecordedChunk(received_count=received or 0, replaced_key=replaced_key)

    def claim_for_assembly(self, session_id: str) -> AssemblySnapshot:
        """Move a session to ASSEMBLING and return its received set at that instant."""
        with self.locks.hold(session_id), self._session_factory() as db:
            result = db.execute(
                update(UploadSession)
                .where(UploadSession.id == session_id, UploadSession.status == SessionStatus.receiving.value)
                .values(status=SessionStatus.assembling.value, updated_at=utc_now())
            )
            if result.rowcount != 1:
                db.rollback()
                self._get_row(db, session_id)
                raise UnknownSession("session is already being assembled", session_id=session_id)
            row = self._get_row(db, session_id)
            chunk_rows = db.scalars(
                select(ReceivedChunk).where(ReceivedChunk.session_id == session_id).order_by(ReceivedChunk.chunk_index)
            ).all()
            snapshot = AssemblySnapshot(
                record=SessionRecord.from_row(row),
                chunks={
                    chunk.chunk_index: ChunkRef(
                        index=chunk.chunk_index,
                        storage_key=chunk.storage_key,
                        size_bytes=chunk.size_bytes,
                        sha256=chunk.chunk_checksum_sha256,
                    )
                    for chunk in chunk_rows
                },
            )
            db.commit()
            return snapshot

    def claim_stale(self, session_id: str, before: datetime) -> bool:
        """Take a session out of RECEIVING for reaping if it is still idle since ``before``.

        Returns False when the session was completed, purged or touched by a
        chunk in the meantime; the reaper must leave it alone.
        """
        with self.locks.hold(session_id), self._session_factory() as db:
            result = db.execute(
                update(UploadSession)
                .where(
                    UploadSession.id == session_id,
                    UploadSession.status == SessionStatus.receiving.value,
                    UploadSession.updated_at < before,
                )
                .values(status=SessionStatus.assembling.value, updated_at=utc_now())
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            db.commit()
            return True

    def delete(self, session_id: str) -> bool:
        with self.locks.hold(session_id), self._session_factory() as db:
            row = db.get(UploadSession, session_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

    def stale_session_ids(self, before: datetime) -> list[str]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(UploadSession.id).where(
                        UploadSession.status == SessionStatus.receiving.value,
                        UploadSession.updated_at < before,
                    )
                ).all()
            )

    def session_ids(self) -> set[str]:
        with self._session_factory() as db:
            return set(db.scalars(select(UploadSession.id)).all())


class MediaJobStore:
    """Jobs this server submitted to the media service."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def add(self, job: ProcessingJob, size_bytes: int, sha256: str) -> None:
        with self._session_factory() as db:
            db.merge(
                MediaJob(
                    job_id=job.job_id,
                    uri=job.uri,
                    display_name=job.display_name or "",
                    mime_type=job.mime_type or "",
                    size_bytes=size_bytes,
                    file_checksum_sha256=sha256,
                    state=job.state.value,
                )
            )
            db.commit()

    def get(self, job_id: str) -> ProcessingJob:
        with self._session_factory() as db:
            row = db.get(MediaJob, job_id)
            if row is None:
                raise UnknownJob("job not found", job_id=job_id)
            return ProcessingJob(
                job_id=row.job_id,
                uri=row.uri,
                state=JobState(row.state),
                display_name=row.display_name,
                mime_type=row.mime_type,
            )

    def update_state(self, job_id: str, state: JobState) -> None:
        with self._session_factory() as db:
            row = db.get(MediaJob, job_id)
            if row is None:
                raise UnknownJob("job not found", job_id=job_id)
            row.state = state.value
            db.commit()

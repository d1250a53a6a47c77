import hashlib
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from video_ingest.chunking import ChunkDescriptor
from video_ingest.client import VideoUploadClient, main
from video_ingest.errors import IncompleteUpload, InvalidMetadata, ServiceUnavailable, SizeMismatch
from video_ingest.main import app, get_coordinator
from video_ingest.media_service import JobState, ProcessingJob
from video_ingest.poller import PollStatus, StatusPoller
from video_ingest.transport import ChunkTransport

SOURCE = b"0123456789"


class _RecordingTicker:
    def __init__(self) -> None:
        self.waits: list[float] = []

    def wait(self, seconds: float) -> None:
        self.waits.append(seconds)


class _FakeTransport:
    """Stands in for the HTTP transport and reassembles what it receives."""

    def __init__(self, chunk_size: int = 4) -> None:
        self.chunk_size = chunk_size
        self.chunks: dict[int, bytes] = {}
        self.calls: list[str] = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return None

    def init_session(self, file_name, mime_type, declared_size, chunk_size=None):
        self.calls.append("init_session")
        self.mime_type = mime_type
        self.declared_size = declared_size
        total = -(-declared_size // self.chunk_size)
        return {"session_id": "s1", "chunk_size": self.chunk_size, "total_chunks": total, "status": "RECEIVING"}

    def upload_chunk(self, session_id, chunk: ChunkDescriptor):
        self.chunks[chunk.index] = chunk.payload
        return {"ack": True}

    def complete_session(self, session_id):
        self.calls.append("complete_session")
        data = b"".join(self.chunks[index] for index in sorted(self.chunks))
        return {
            "session_id": session_id,
            "artifact": {
                "file_name": "clip.mp4",
                "mime_type": self.mime_type,
                "size_bytes": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
                "job": {"job_id": "files/abc", "state": "QUEUED"},
            },
        }

    def query_job(self, job_id):
        return ProcessingJob(job_id=job_id, state=JobState.ACTIVE)


@pytest.fixture
def api_client(coordinator):
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def source_file(tmp_path: Path) -> Path:
    path = tmp_path / "clip.mp4"
    path.write_bytes(SOURCE)
    return path


def test_upload_and_wait_end_to_end(api_client: TestClient, source_file: Path) -> None:
    transport = ChunkTransport(base_url="http://testserver", client=api_client)
    ticker = _RecordingTicker()
    client = VideoUploadClient(transport, poller=StatusPoller(transport.query_job, max_attempts=10, ticker=ticker))
    progress: list[tuple[int, int]] = []

    result, outcome = client.upload_and_wait(source_file, on_progress=lambda done, total: progress.append((done, total)))

    assert result.total_chunks == 3
    assert result.size_bytes == len(SOURCE)
    assert result.sha256 == hashlib.sha256(SOURCE).hexdigest()
    assert progress == [(1, 3), (2, 3), (3, 3)]
    assert outcome.status is PollStatus.ACTIVE
    assert outcome.attempts == 3
    assert len(ticker.waits) == 2


def test_concurrent_upload_delivers_every_chunk(source_file: Path) -> None:
    transport = _FakeTransport()
    client = VideoUploadClient(transport, concurrency=3)
    progress: list[int] = []

    result = client.upload(source_file, on_progress=lambda done, total: progress.append(done))

    assert transport.chunks == {0: b"0123", 1: b"4567", 2: b"89"}
    assert sorted(progress) == [1, 2, 3]
    assert result.sha256 == hashlib.sha256(SOURCE).hexdigest()
    assert transport.mime_type == "video/mp4"


def test_oversized_file_is_rejected_before_any_request(source_file: Path) -> None:
    transport = _FakeTransport()
    client = VideoUploadClient(transport, max_file_size=5)

    with pytest.raises(InvalidMetadata):
        client.upload(source_file)
    assert transport.calls == []


def test_empty_file_is_rejected(tmp_path: Path) -> None:
    empty = tmp_path / "empty.mp4"
    empty.write_bytes(b"")
    transport = _FakeTransport()

    with pytest.raises(InvalidMetadata):
        VideoUploadClient(transport).upload(empty)
    assert transport.calls == []


def test_transport_rebuilds_typed_errors(api_client: TestClient) -> None:
    transport = ChunkTransport(base_url="http://testserver", client=api_client, retry_backoff_seconds=0)
    session = transport.init_session("clip.mp4", "video/mp4", len(SOURCE))
    transport.upload_chunk(
        session["session_id"], ChunkDescriptor(index=0, offset=0, payload=b"0123", total_chunks=3)
    )

    with pytest.raises(SizeMismatch):
        transport.upload_chunk(
            session["session_id"], ChunkDescriptor(index=1, offset=4, payload=b"45", total_chunks=3)
        )
    with pytest.raises(IncompleteUpload) as exc_info:
        transport.complete_session(session["session_id"])
    assert exc_info.value.missing_chunk_indexes == [1, 2]


def test_transport_retries_retryable_statuses() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(503, json={"detail": "busy", "error_code": "service_unavailable"})
        return httpx.Response(202, json={"ack": True, "chunk_index": 0})

    transport = ChunkTransport(
        base_url="http://vis.test",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        max_retries=3,
        retry_backoff_seconds=0,
    )
    chunk = ChunkDescriptor(index=0, offset=0, payload=b"abcd", total_chunks=1)

    assert transport.upload_chunk("s1", chunk)["ack"] is True
    assert len(attempts) == 3


def test_transport_gives_up_after_max_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = ChunkTransport(
        base_url="http://vis.test",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        max_retries=1,
        retry_backoff_seconds=0,
    )
    with pytest.raises(ServiceUnavailable):
        transport.upload_chunk("s1", ChunkDescriptor(index=0, offset=0, payload=b"abcd", total_chunks=1))


def test_cli_uploads_and_waits(monkeypatch, api_client: TestClient, source_file: Path, capsys) -> None:
    monkeypatch.setattr(
        "video_ingest.client.ChunkTransport",
        lambda base_url, max_retries: ChunkTransport(base_url="http://testserver", client=api_client),
    )

    exit_code = main([str(source_file), "--poll-interval", "0", "--poll-max-attempts", "10"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "Uploading: 100% (3/3 chunks)" in output
    assert "Video processing complete" in output


def test_cli_no_wait_returns_after_upload(monkeypatch, source_file: Path, capsys) -> None:
    monkeypatch.setattr("video_ingest.client.ChunkTransport", lambda base_url, max_retries: _FakeTransport())

    exit_code = main([str(source_file), "--mime-type", "video/mp4", "--no-wait"])

    assert exit_code == 0
    assert "Job: files/abc" in capsys.readouterr().out

import argparse
import logging
import mimetypes
import os
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

from video_ingest.chunking import ChunkProducer
from video_ingest.config import settings
from video_ingest.errors import IngestError, InvalidMetadata
from video_ingest.media_service import JobState, ProcessingJob
from video_ingest.poller import PollerMachine, PollOutcome, PollStatus, StatusPoller
from video_ingest.transport import ChunkTransport

logger = logging.getLogger("vis.client")

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class UploadResult:
    session_id: str
    file_name: str
    size_bytes: int
    sha256: str
    total_chunks: int
    job: ProcessingJob


class VideoUploadClient:
    """Init a session, push every chunk, complete, then optionally poll the job."""

    def __init__(
        self,
        transport: ChunkTransport,
        chunk_size: int | None = None,
        concurrency: int = 1,
        max_file_size: int | None = None,
        poller: StatusPoller | None = None,
    ) -> None:
        self.transport = transport
        self.chunk_size = chunk_size
        self.concurrency = max(1, concurrency)
        self.max_file_size = max_file_size or settings.max_file_size_bytes
        self.poller = poller or StatusPoller(transport.query_job)

    def upload(
        self, path: str | os.PathLike, mime_type: str | None = None, on_progress: ProgressCallback | None = None
    ) -> UploadResult:
        source = Path(path)
        size = source.stat().st_size
        if size <= 0:
            raise InvalidMetadata(f"{source.name} is empty")
        if size > self.max_file_size:
            raise InvalidMetadata(
                f"{source.name} is {size} bytes, above the {self.max_file_size} byte limit",
                max_file_size=self.max_file_size,
            )
        mime_type = mime_type or mimetypes.guess_type(source.name)[0] or "application/octet-stream"

        session = self.transport.init_session(source.name, mime_type, size, chunk_size=self.chunk_size)
        session_id = session["session_id"]
        producer = ChunkProducer(source, session["chunk_size"])
        if producer.total_chunks != session["total_chunks"]:
            raise InvalidMetadata(
                f"server expects {session['total_chunks']} chunks, file splits into {producer.total_chunks}"
            )
        logger.info("session initialized session_id=%s chunks=%s", session_id, producer.total_chunks)

        if self.concurrency == 1:
            self._upload_sequential(session_id, producer, on_progress)
        else:
            self._upload_concurrent(session_id, producer, on_progress)

        completed = self.transport.complete_session(session_id)
        artifact = completed["artifact"]
        return UploadResult(
            session_id=session_id,
            file_name=artifact["file_name"],
            size_bytes=artifact["size_bytes"],
            sha256=artifact["sha256"],
            total_chunks=producer.total_chunks,
            job=ProcessingJob.from_dict(artifact["job"]),
        )

    def _upload_sequential(
        self, session_id: str, producer: ChunkProducer, on_progress: ProgressCallback | None
    ) -> None:
        for uploaded, chunk in enumerate(producer, start=1):
            self.transport.upload_chunk(session_id, chunk)
            if on_progress is not None:
                on_progress(uploaded, producer.total_chunks)

    def _upload_concurrent(
        self, session_id: str, producer: ChunkProducer, on_progress: ProgressCallback | None
    ) -> None:
        def _send(index: int) -> None:
            self.transport.upload_chunk(session_id, producer.read(index))

        uploaded = 0
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            futures = [pool.submit(_send, index) for index in range(producer.total_chunks)]
            for fut in as_completed(futures):
                fut.result()
                uploaded += 1
                if on_progress is not None:
                    on_progress(uploaded, producer.total_chunks)

    def wait_for_processing(self, job_id: str) -> PollOutcome:
        return self.poller.poll(job_id)

    def upload_and_wait(
        self, path: str | os.PathLike, mime_type: str | None = None, on_progress: ProgressCallback | None = None
    ) -> tuple[UploadResult, PollOutcome]:
        result = self.upload(path, mime_type=mime_type, on_progress=on_progress)
        return result, self.wait_for_processing(result.job.job_id)


def _print_upload_progress(uploaded: int, total: int) -> None:
    print(f"Uploading: {round(uploaded / total * 100)}% ({uploaded}/{total} chunks)")


def _print_poll_progress(machine: PollerMachine) -> None:
    if machine.state is JobState.PROCESSING:
        print(f"Processing: {machine.progress_percent or 0}% (attempt {machine.attempts})")


EXIT_CODES = {PollStatus.ACTIVE: 0, PollStatus.FAILED: 1, PollStatus.TIMEOUT: 2}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Upload a video in chunks and wait for it to be processed.")
    parser.add_argument("path", help="Video file to upload")
    parser.add_argument("--base-url", default=f"http://127.0.0.1:{settings.port}", help="API base URL")
    parser.add_argument("--mime-type", default=None, help="MIME type; guessed from the file name if omitted")
    parser.add_argument("--chunk-size-bytes", type=int, default=None, help="Requested chunk size in bytes")
    parser.add_argument("--concurrency", type=int, default=1, help="Parallel chunk uploads")
    parser.add_argument("--max-retries", type=int, default=settings.max_retries, help="Retries per chunk")
    parser.add_argument("--poll-interval", type=float, default=settings.poll_interval_seconds)
    parser.add_argument("--poll-max-attempts", type=int, default=settings.poll_max_attempts)
    parser.add_argument("--no-wait", action="store_true", help="Return after the upload completes")
    args = parser.parse_args(argv)

    with ChunkTransport(args.base_url, max_retries=args.max_retries) as transport:
        poller = StatusPoller(
            transport.query_job,
            interval_seconds=args.poll_interval,
            max_attempts=args.poll_max_attempts,
            on_update=_print_poll_progress,
        )
        client = VideoUploadClient(
            transport,
            chunk_size=args.chunk_size_bytes,
            concurrency=args.concurrency,
            poller=poller,
        )
        try:
            result = client.upload(args.path, mime_type=args.mime_type, on_progress=_print_upload_progress)
        except IngestError as exc:
            print(f"Upload failed ({exc.error_code}): {exc.detail}")
            return 3
        print(f"Uploaded {result.file_name}: {result.size_bytes} bytes, sha256 {result.sha256}")
        print(f"Job: {result.job.job_id} uri={result.job.uri}")
        if args.no_wait:
            return 0

        try:
            outcome = client.wait_for_processing(result.job.job_id)
        except IngestError as exc:
            print(f"Progress check failed ({exc.error_code}): {exc.detail}")
            return 3

    if outcome.succeeded:
        print("Video processing complete")
    else:
        print(f"{outcome.status.value}: {outcome.message}")
    return EXIT_CODES[outcome.status]


if __name__ == "__main__":
    raise SystemExit(main())

import hashlib
import logging
import time

import httpx

from video_ingest.chunking import ChunkDescriptor
from video_ingest.errors import ServiceUnavailable, SizeMismatch, error_from_payload
from video_ingest.media_service import ProcessingJob

logger = logging.getLogger("vis.client")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
# Chunks that arrived truncated or corrupted are resent.
RETRYABLE_ERROR_CODES = frozenset({SizeMismatch.error_code})


def _is_retryable(response: httpx.Response) -> bool:
    if response.status_code in RETRYABLE_STATUS_CODES:
        return True
    if response.status_code != 400:
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("error_code") in RETRYABLE_ERROR_CODES


def _raise_for_error(response: httpx.Response) -> None:
    if not response.is_error:
        return
    try:
        payload = response.json()
    except ValueError:
        payload = {"detail": response.text}
    if not isinstance(payload, dict):
        payload = {"detail": str(payload)}
    raise error_from_payload(response.status_code, payload)


class ChunkTransport:
    """HTTP client for the session API.

    Chunk uploads are retried one chunk at a time on transport errors, on
    429/5xx responses and on size mismatches; every other failure surfaces as the typed error the
    server reported.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.Client | None = None,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    def __enter__(self) -> "ChunkTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def init_session(
        self, file_name: str, mime_type: str, declared_size: int, chunk_size: int | None = None
    ) -> dict:
        body = {"file_name": file_name, "mime_type": mime_type, "declared_size": declared_size}
        if chunk_size:
            body["chunk_size"] = chunk_size
        response = self.client.post(self._url("/v1/sessions"), json=body)
        _raise_for_error(response)
        return response.json()

    def upload_chunk(self, session_id: str, chunk: ChunkDescriptor) -> dict:
        headers = {
            "Content-Type": "application/octet-stream",
            "X-Chunk-Size": str(chunk.size),
            "X-Chunk-Offset": str(chunk.offset),
            "X-Chunk-SHA256": hashlib.sha256(chunk.payload).hexdigest(),
        }
        url = self._url(f"/v1/sessions/{session_id}/chunks/{chunk.index}")
        attempt = 0
        while True:
            try:
                response = self.client.put(url, content=chunk.payload, headers=headers)
            except httpx.TransportError as exc:
                if attempt >= self.max_retries:
                    raise ServiceUnavailable(f"chunk {chunk.index} upload failed: {exc}") from exc
                failure = str(exc)
            else:
                if not _is_retryable(response) or attempt >= self.max_retries:
                    _raise_for_error(response)
                    return response.json()
                failure = f"HTTP {response.status_code}"
            attempt += 1
            logger.warning(
                "retrying chunk upload session=%s index=%s attempt=%s reason=%s",
                session_id,
                chunk.index,
                attempt,
                failure,
            )
            time.sleep(self.retry_backoff_seconds * attempt)

    def session_status(self, session_id: str) -> dict:
        response = self.client.get(self._url(f"/v1/sessions/{session_id}"))
        _raise_for_error(response)
        return response.json()

    def complete_session(self, session_id: str) -> dict:
        response = self.client.post(self._url(f"/v1/sessions/{session_id}/complete"))
        _raise_for_error(response)
        return response.json()

    def query_job(self, job_id: str) -> ProcessingJob:
        try:
            response = self.client.post(self._url("/v1/jobs/progress"), json={"job_id": job_id})
        except httpx.TransportError as exc:
            raise ServiceUnavailable(f"progress check failed: {exc}") from exc
        _raise_for_error(response)
        return ProcessingJob.from_dict(response.json())

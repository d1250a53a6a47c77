"""Typed failures shared by the server and the client.

Each error knows the HTTP status and ``error_code`` it travels as, so the API
can render it and the client can rebuild the same exception from a response.
"""


class IngestError(Exception):
    status_code = 500
    error_code = "internal_error"

    def __init__(self, detail: str | None = None, **context) -> None:
        self.detail = detail or self.default_detail()
        self.context = context
        super().__init__(self.detail)

    @classmethod
    def default_detail(cls) -> str:
        return cls.error_code.replace("_", " ")

    def to_payload(self) -> dict:
        return {"detail": self.detail, "error_code": self.error_code, **self.context}


class InvalidMetadata(IngestError):
    status_code = 400
    error_code = "invalid_metadata"


class UnknownSession(IngestError):
    status_code = 404
    error_code = "unknown_session"


class SizeMismatch(IngestError):
    status_code = 400
    error_code = "size_mismatch"


class IncompleteUpload(IngestError):
    status_code = 409
    error_code = "incomplete_upload"

    def __init__(self, missing_chunk_indexes: list[int], detail: str | None = None) -> None:
        self.missing_chunk_indexes = list(missing_chunk_indexes)
        super().__init__(
            detail or f"cannot complete session, {len(self.missing_chunk_indexes)} chunk(s) missing",
            missing_chunk_indexes=self.missing_chunk_indexes,
        )


class MissingChunk(IngestError):
    status_code = 409
    error_code = "missing_chunk"


class UnsupportedMediaType(IngestError):
    status_code = 415
    error_code = "unsupported_media_type"


class ServiceUnavailable(IngestError):
    status_code = 503
    error_code = "service_unavailable"


class UnknownJob(IngestError):
    status_code = 404
    error_code = "unknown_job"


class Throttled(IngestError):
    status_code = 429
    error_code = "throttled"


class PollTimeout(IngestError):
    status_code = 504
    error_code = "timeout"


class ProcessingFailed(IngestError):
    status_code = 502
    error_code = "processing_failed"


ERRORS_BY_CODE: dict[str, type[IngestError]] = {
    cls.error_code: cls
    for cls in (
        InvalidMetadata,
        UnknownSession,
        SizeMismatch,
        MissingChunk,
        UnsupportedMediaType,
        ServiceUnavailable,
        UnknownJob,
        Throttled,
        PollTimeout,
        ProcessingFailed,
    )
}


def error_from_payload(status_code: int, payload: dict) -> IngestError:
    """Rebuild the typed error carried by an API error body."""
    error_code = payload.get("error_code", "")
    detail = payload.get("detail")
    if error_code == IncompleteUpload.error_code:
        return IncompleteUpload(payload.get("missing_chunk_indexes") or [], detail=detail)
    error_cls = ERRORS_BY_CODE.get(error_code)
    if error_cls is not None:
        return error_cls(detail)
    error = IngestError(detail or f"unexpected response status {status_code}")
    error.status_code = status_code
    return error

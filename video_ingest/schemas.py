from pydantic import BaseModel


class InitSessionRequest(BaseModel):
    file_name: str
    mime_type: str
    declared_size: int
    chunk_size: int | None = None


class InitSessionResponse(BaseModel):
    session_id: str
    chunk_size: int
    total_chunks: int
    status: str


class ChunkAckResponse(BaseModel):
    ack: bool = True
    session_id: str
    chunk_index: int
    received_chunks: int
    total_chunks: int


class SessionStatusResponse(BaseModel):
    session_id: str
    file_name: str
    mime_type: str
    declared_size: int
    chunk_size: int
    total_chunks: int
    status: str
    received_chunk_indexes: list[int]
    missing_chunk_indexes: list[int]


class JobStatusResponse(BaseModel):
    job_id: str
    uri: str | None = None
    state: str
    progress_percent: int | None = None
    error: str | None = None
    display_name: str | None = None
    mime_type: str | None = None


class ArtifactResponse(BaseModel):
    file_name: str
    mime_type: str
    size_bytes: int
    sha256: str
    job: JobStatusResponse


class CompleteSessionResponse(BaseModel):
    session_id: str
    artifact: ArtifactResponse


class JobStatusRequest(BaseModel):
    job_id: str


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    session_id: str | None = None
    missing_chunk_indexes: list[int] | None = None

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "video-ingest-service"
    app_version: str = "dev"
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: str = "sqlite:///./video_ingest.db"
    storage_backend: str = "local"
    storage_root: str = "./data"
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    s3_endpoint_url: str = ""
    tracing_enabled: bool = False
    tracing_service_name: str = "video-ingest-service"
    otlp_endpoint: str = "localhost:4317"
    otlp_insecure: bool = True
    chunk_size_bytes: int = 5 * 1024 * 1024
    max_chunk_size_bytes: int = 64 * 1024 * 1024
    max_file_size_bytes: int = 10 * 1024 * 1024 * 1024
    max_retries: int = 3
    task_queue_maxsize: int = 512
    worker_count: int = 16
    max_global_inflight_chunks: int = 128
    allowed_mime_types: str = "video/mp4,video/webm,video/quicktime,video/mov"
    assembly_spool_max_bytes: int = 64 * 1024 * 1024
    media_service_backend: str = "memory"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_api_key: str = ""
    media_service_timeout_seconds: float = 300.0
    memory_media_processing_ticks: int = 3
    poll_interval_seconds: float = 1.0
    poll_max_attempts: int = 60
    cleanup_enabled: bool = False
    cleanup_interval_seconds: int = 900
    stale_session_ttl_seconds: int = 86400

    def allowed_mime_type_set(self) -> frozenset[str]:
        return frozenset(item.strip() for item in self.allowed_mime_types.split(",") if item.strip())


settings = Settings()

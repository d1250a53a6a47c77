from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

sessions_created_total = Counter("sessions_created_total", "Total upload sessions created")
chunks_received_total = Counter("chunks_received_total", "Total chunks persisted")
bytes_received_total = Counter("bytes_received_total", "Total chunk bytes persisted")
chunk_ingest_failures_total = Counter("chunk_ingest_failures_total", "Total chunk writes that exhausted retries")
retries_total = Counter("retries_total", "Total retry attempts for chunk writes")
throttled_requests_total = Counter("throttled_requests_total", "Total throttled requests")
assemblies_total = Counter("assemblies_total", "Completion attempts by outcome", ["outcome"])
media_submissions_total = Counter("media_submissions_total", "Media service submissions by outcome", ["outcome"])
sessions_purged_total = Counter("sessions_purged_total", "Sessions whose storage was purged")

task_queue_depth = Gauge("task_queue_depth", "Current chunk write queue depth")
inflight_chunks = Gauge("inflight_chunks", "Current inflight chunk writes")
worker_count = Gauge("worker_count", "Configured chunk writer count")

storage_write_latency_seconds = Histogram("storage_write_latency_seconds", "Chunk storage write latency in seconds")
assembly_duration_seconds = Histogram("assembly_duration_seconds", "Assembly and submission duration in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

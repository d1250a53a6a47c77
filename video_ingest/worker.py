from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock

from video_ingest.config import settings
from video_ingest.errors import Throttled
from video_ingest.metrics import inflight_chunks, task_queue_depth, throttled_requests_total, worker_count


class ChunkWriteExecutor:
    """Thread pool for chunk storage writes that refuses work instead of queueing without bound."""

    def __init__(self, workers: int, queue_maxsize: int, global_inflight_limit: int) -> None:
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chunk-writer")
        self.queue_maxsize = queue_maxsize
        self.global_inflight_limit = global_inflight_limit
        self._lock = Lock()
        self._queued = 0
        self._inflight = 0
        worker_count.set(workers)

    def _try_admit(self) -> None:
        with self._lock:
            if self._queued >= self.queue_maxsize:
                throttled_requests_total.inc()
                raise Throttled("chunk write queue is full", reason="queue_full")
            if self._inflight >= self.global_inflight_limit:
                throttled_requests_total.inc()
                raise Throttled("global inflight chunk limit reached", reason="global_inflight_limit")
            self._queued += 1
            task_queue_depth.set(self._queued)

    def _on_start(self) -> None:
        with self._lock:
            self._queued -= 1
            self._inflight += 1
            task_queue_depth.set(self._queued)
            inflight_chunks.set(self._inflight)

    def _on_end(self) -> None:
        with self._lock:
            self._inflight -= 1
            inflight_chunks.set(self._inflight)

    def snapshot(self) -> tuple[int, int]:
        with self._lock:
            return self._queued, self._inflight

    def submit(self, fn, *args, **kwargs) -> Future:
        self._try_admit()

        def wrapped():
            self._on_start()
            try:
                return fn(*args, **kwargs)
            finally:
                self._on_end()

        return self.executor.submit(wrapped)

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)


def build_executor() -> ChunkWriteExecutor:
    return ChunkWriteExecutor(
        workers=settings.worker_count,
        queue_maxsize=settings.task_queue_maxsize,
        global_inflight_limit=settings.max_global_inflight_chunks,
    )

import argparse
import json
import math
import os
import statistics
import tempfile
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from video_ingest.client import VideoUploadClient
from video_ingest.transport import ChunkTransport

PROFILE_PRESETS = {
    "fast": {"concurrent_files": 2, "per_file_chunk_workers": 2},
    "balanced": {"concurrent_files": 3, "per_file_chunk_workers": 4},
    "max-throughput": {"concurrent_files": 4, "per_file_chunk_workers": 6},
}


def _write_payload(directory: Path, size_bytes: int) -> Path:
    pattern = b"vis-load-test-"
    repeats = math.ceil(size_bytes / len(pattern))
    path = directory / f"load-{uuid.uuid4()}.mp4"
    path.write_bytes((pattern * repeats)[:size_bytes])
    return path


def _upload_one_file(
    transport: ChunkTransport, path: Path, chunk_size: int, per_file_chunk_workers: int, wait: bool
) -> dict:
    client = VideoUploadClient(transport, chunk_size=chunk_size, concurrency=per_file_chunk_workers)
    started = time.perf_counter()
    result = client.upload(path, mime_type="video/mp4")
    uploaded_ms = (time.perf_counter() - started) * 1000
    state = result.job.state.value
    if wait:
        state = client.wait_for_processing(result.job.job_id).status.value
    return {
        "session_id": result.session_id,
        "file_bytes": result.size_bytes,
        "chunk_count": result.total_chunks,
        "upload_ms": uploaded_ms,
        "total_ms": (time.perf_counter() - started) * 1000,
        "final_state": state,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Load test for the video ingest session lifecycle.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--files", type=int, default=5, help="Number of files to upload")
    parser.add_argument("--file-size-bytes", type=int, default=12 * 1024 * 1024, help="Per file size in bytes")
    parser.add_argument("--chunk-size-bytes", type=int, default=5 * 1024 * 1024, help="Chunk size in bytes")
    parser.add_argument(
        "--profile",
        choices=sorted(PROFILE_PRESETS.keys()),
        default="balanced",
        help="Concurrency profile preset to use.",
    )
    parser.add_argument("--concurrent-files", type=int, default=None, help="Overrides the profile if set.")
    parser.add_argument("--per-file-chunk-workers", type=int, default=None, help="Overrides the profile if set.")
    parser.add_argument("--wait", action="store_true", help="Poll every job until it is terminal")
    parser.add_argument("--output", default="", help="Optional path to write JSON summary")
    args = parser.parse_args()
    profile = PROFILE_PRESETS[args.profile]
    concurrent_files = args.concurrent_files or profile["concurrent_files"]
    per_file_chunk_workers = args.per_file_chunk_workers or profile["per_file_chunk_workers"]

    results = []
    with tempfile.TemporaryDirectory() as workdir, ChunkTransport(args.base_url) as transport:
        paths = [_write_payload(Path(workdir), args.file_size_bytes) for _ in range(args.files)]
        run_started = time.perf_counter()
        with ThreadPoolExecutor(max_workers=concurrent_files) as pool:
            futures = [
                pool.submit(
                    _upload_one_file, transport, path, args.chunk_size_bytes, per_file_chunk_workers, args.wait
                )
                for path in paths
            ]
            for fut in as_completed(futures):
                results.append(fut.result())
        elapsed = time.perf_counter() - run_started

    total_bytes = sum(item["file_bytes"] for item in results)
    upload_latencies = [item["upload_ms"] for item in results]
    summary = {
        "base_url": args.base_url,
        "files": args.files,
        "file_size_bytes": args.file_size_bytes,
        "chunk_size_bytes": args.chunk_size_bytes,
        "profile": args.profile,
        "concurrent_files": concurrent_files,
        "per_file_chunk_workers": per_file_chunk_workers,
        "elapsed_seconds": round(elapsed, 3),
        "total_bytes_uploaded": total_bytes,
        "total_chunks_uploaded": sum(item["chunk_count"] for item in results),
        "throughput_mb_per_s": round((total_bytes / (1024 * 1024)) / elapsed, 3) if elapsed > 0 else 0.0,
        "upload_ms_avg": round(statistics.mean(upload_latencies), 3) if upload_latencies else 0.0,
        "upload_ms_max": round(max(upload_latencies, default=0.0), 3),
        "file_total_ms_avg": round(statistics.mean(item["total_ms"] for item in results), 3) if results else 0.0,
        "final_states": sorted({item["final_state"] for item in results}),
    }

    print("Load test summary:")
    for key, value in summary.items():
        print(f"- {key}: {value}")

    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print(f"\nWrote summary to {args.output}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

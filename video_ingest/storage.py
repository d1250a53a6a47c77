from pathlib import Path

from video_ingest.config import settings


class ChunkStorage:
    """Byte store for chunk payloads, addressed by key.

    Keys are grouped per session under ``sessions/<session_id>/`` so a whole
    session can be purged by prefix. ``read_chunk`` raises ``FileNotFoundError``
    for a key that holds no payload.
    """

    def session_prefix(self, session_id: str) -> str:
        return f"sessions/{session_id}/"

    def chunk_key(self, session_id: str, chunk_index: int, write_id: str) -> str:
        return f"{self.session_prefix(session_id)}chunk_{chunk_index}.{write_id}"

    def write_chunk(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def read_chunk(self, key: str) -> bytes:
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def delete_key(self, key: str) -> None:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        for key in self.list_keys(prefix):
            self.delete_key(key)
            deleted += 1
        return deleted


class LocalChunkStorage(ChunkStorage):
    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def write_chunk(self, key: str, data: bytes) -> None:
        full_path = self.root / key
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)

    def read_chunk(self, key: str) -> bytes:
        return (self.root / key).read_bytes()

    def list_keys(self, prefix: str = "") -> list[str]:
        base = self.root / prefix if prefix else self.root
        if not base.exists():
            return []
        root = self.root
        return [str(path.relative_to(root)).replace("\\", "/") for path in base.rglob("*") if path.is_file()]

    def delete_key(self, key: str) -> None:
        target = self.root / key
        if target.exists():
            target.unlink()

    def delete_prefix(self, prefix: str) -> int:
        deleted = super().delete_prefix(prefix)
        directory = self.root / prefix
        if prefix and directory.is_dir() and not any(directory.iterdir()):
            directory.rmdir()
        return deleted


def _client_error_code(exc: Exception) -> str | None:
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return None
    return response.get("Error", {}).get("Code")


class S3ChunkStorage(ChunkStorage):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for the s3 backend")
        import boto3

        self.bucket = bucket
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        self.client = boto3.client("s3", **client_kwargs)

    def write_chunk(self, key: str, data: bytes) -> None:
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data)

    def read_chunk(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except Exception as exc:
            if _client_error_code(exc) in ("NoSuchKey", "404"):
                raise FileNotFoundError(key) from exc
            raise
        return obj["Body"].read()

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    keys.append(key)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return keys

    def delete_key(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)


def build_storage() -> ChunkStorage:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalChunkStorage(settings.storage_root)
    if backend == "s3":
        return S3ChunkStorage(settings.s3_bucket, settings.aws_region, endpoint_url=settings.s3_endpoint_url or None)
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")

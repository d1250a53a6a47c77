import json
import os

import httpx

EXPECTED_ROUTES = (
    ("post", "/v1/sessions"),
    ("put", "/v1/sessions/{session_id}/chunks/{chunk_index}"),
    ("get", "/v1/sessions/{session_id}"),
    ("post", "/v1/sessions/{session_id}/complete"),
    ("post", "/v1/jobs/progress"),
)


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
    print(f"Checking runtime at {base_url}")
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        try:
            health = client.get("/health")
        except httpx.HTTPError as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1

        print(f"[INFO] /health status={health.status_code}")
        if health.status_code != 200:
            print("[FAIL] /health is not healthy.")
            return 1

        version = client.get("/version")
        print(f"[INFO] /version status={version.status_code} X-VIS-App-Version={version.headers.get('X-VIS-App-Version')}")
        if version.status_code == 200:
            print(f"[OK] version payload: {json.dumps(version.json(), sort_keys=True)}")

        paths = client.get("/openapi.json").json().get("paths", {})
        missing = [f"{method.upper()} {path}" for method, path in EXPECTED_ROUTES if method not in paths.get(path, {})]
        if missing:
            print(f"[FAIL] routes missing: {', '.join(missing)}")
            print("[HINT] Stop running servers, then restart uvicorn from repo root.")
            return 2

        print("[OK] session and job routes are available.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())

import hashlib
import json

from fastapi.testclient import TestClient

from video_ingest.main import app, get_coordinator


def _events_from_caplog(caplog) -> list[dict]:
    events: list[dict] = []
    for record in caplog.records:
        if record.name != "vis.audit":
            continue
        try:
            events.append(json.loads(record.message))
        except json.JSONDecodeError:
            continue
    return events


def test_audit_logs_for_init_submit_and_purge(caplog, coordinator) -> None:
    caplog.set_level("INFO", logger="vis.audit")
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        with TestClient(app) as client:
            init = client.post(
                "/v1/sessions",
                json={"file_name": "audit.mp4", "mime_type": "video/mp4", "declared_size": 4},
                headers={"X-Request-ID": "req-audit"},
            )
            assert init.status_code == 201
            session_id = init.json()["session_id"]

            chunk = client.put(
                f"/v1/sessions/{session_id}/chunks/0",
                content=b"abcd",
                headers={"X-Chunk-SHA256": hashlib.sha256(b"abcd").hexdigest(), "X-Request-ID": "req-audit"},
            )
            assert chunk.status_code == 202

            complete = client.post(f"/v1/sessions/{session_id}/complete", headers={"X-Request-ID": "req-audit"})
            assert complete.status_code == 200
    finally:
        app.dependency_overrides.clear()

    events = _events_from_caplog(caplog)
    actions = [event.get("action") for event in events]
    assert actions == ["session_init", "job_submitted", "session_purged", "session_complete"]

    purged = next(event for event in events if event["action"] == "session_purged")
    assert purged["session_id"] == session_id
    assert purged["reason"] == "submitted"
    assert purged["storage_keys_deleted"] == 1

    completed = next(event for event in events if event["action"] == "session_complete")
    assert completed["request_id"] == "req-audit"
    assert completed["job_id"] == complete.json()["artifact"]["job"]["job_id"]
    assert "trace_id" in completed

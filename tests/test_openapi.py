from fastapi.testclient import TestClient

from video_ingest.main import app


def test_openapi_includes_standard_error_schema() -> None:
    with TestClient(app) as client:
        spec = client.get("/openapi.json").json()

    components = spec.get("components", {}).get("schemas", {})
    assert "ErrorResponse" in components

    complete_responses = spec["paths"]["/v1/sessions/{session_id}/complete"]["post"]["responses"]
    for status_code in ("404", "409", "415", "429"):
        assert status_code in complete_responses
        schema = complete_responses[status_code]["content"]["application/json"]["schema"]
        assert schema["$ref"].endswith("/ErrorResponse")

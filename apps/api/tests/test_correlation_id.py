from __future__ import annotations

from collections.abc import Callable

from fastapi.testclient import TestClient

from app import audit


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/data/tasks")
    assert response.status_code == 401
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/api/data/tasks", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 401
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient, admin) -> None:
    response = client.post(
        "/api/admin/api-keys",
        json={"name": "ci", "scopes": ["data:read"]},
        headers={**admin.headers, "X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 201

    key_audits = [entry for entry in audit.audit_entries if entry.get("target_type") == "api_key"]
    assert key_audits
    assert key_audits[-1]["correlation_id"] == "corr-audit-1"


def test_denials_carry_the_request_correlation_id(client: TestClient, tasks_table: str, make_api_key: Callable) -> None:
    reader = make_api_key("data:read")

    response = client.delete("/api/data/tasks/T1", headers={**reader.headers, "X-Correlation-Id": "corr-deny-1"})

    assert response.status_code == 403
    assert response.json()["correlation_id"] == "corr-deny-1"
    assert audit.audit_entries[-1]["action"] == "access.denied"
    assert audit.audit_entries[-1]["correlation_id"] == "corr-deny-1"

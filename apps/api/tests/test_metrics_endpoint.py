from __future__ import annotations

from collections.abc import Callable

import pytest
from fastapi.testclient import TestClient

from app.core.config import get_settings


@pytest.fixture()
def metrics_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()


def test_metrics_endpoint_exposes_http_auth_and_query_metrics(client: TestClient, admin, metrics_enabled: None, tasks_table: str) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    created = client.post(
        "/api/admin/custom-queries",
        json={"slug": "all-tasks", "name": "All tasks", "sql_template": "SELECT id FROM tasks"},
        headers=admin.headers,
    )
    assert created.status_code == 201
    for _ in range(2):
        assert client.get("/api/custom/all-tasks", headers=admin.headers).status_code == 200
    assert client.get("/api/data/tasks").status_code == 401

    metrics = client.get("/metrics", headers=admin.headers)
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "auth_resolved_total" in body
    assert "query_cache_hit_total" in body
    assert "query_execution_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/custom/{slug}"' in body
    assert 'scheme="admin"' in body
    assert 'kind="unauthenticated"' in body


def test_metrics_require_admin_read(client: TestClient, metrics_enabled: None, make_user: Callable, make_api_key: Callable) -> None:
    assert client.get("/metrics").status_code == 401
    assert client.get("/metrics", headers=make_user("alice").headers).status_code == 403
    assert client.get("/metrics", headers=make_api_key("admin:read").headers).status_code == 200


def test_metrics_are_hidden_when_disabled(client: TestClient, admin, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics", headers=admin.headers).status_code == 404

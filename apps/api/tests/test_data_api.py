from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from app import audit
from app.hooks.models import QueuedEvent
from app.platform.security.policies import AccessPolicy, table_policy_service


@pytest.fixture()
def people(make_user: Callable) -> dict[str, Any]:
    return {"alice": make_user("alice"), "bob": make_user("bob")}


@pytest.fixture()
def seeded(db_session: Session, tasks_table: str, people: dict[str, Any]) -> str:
    for task_id, owner in (("T1", "alice"), ("T2", "bob"), ("T3", "alice")):
        db_session.execute(
            text("INSERT INTO tasks (id, title, assigned_to) VALUES (:id, :title, :owner)"),
            {"id": task_id, "title": f"Task {task_id}", "owner": people[owner].principal_id},
        )
    db_session.commit()
    return tasks_table


def _queued(db_session: Session) -> list[QueuedEvent]:
    db_session.expire_all()
    return list(db_session.scalars(select(QueuedEvent).order_by(QueuedEvent.id.asc())).all())


def test_end_user_lists_only_owned_rows(client: TestClient, seeded: str, people: dict[str, Any]) -> None:
    response = client.get("/api/data/tasks", headers=people["alice"].headers)

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert [row["id"] for row in body["data"]] == ["T1", "T3"]
    assert (body["limit"], body["offset"]) == (100, 0)


def test_another_users_row_is_not_found_rather_than_forbidden(client: TestClient, seeded: str, people: dict[str, Any]) -> None:
    response = client.get("/api/data/tasks/T2", headers=people["alice"].headers)

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"
    assert client.get("/api/data/tasks/T1", headers=people["alice"].headers).json()["title"] == "Task T1"


def test_read_only_api_key_cannot_write(client: TestClient, seeded: str, make_api_key: Callable, db_session: Session) -> None:
    reader = make_api_key("data:read")

    response = client.post("/api/data/tasks", json={"id": "T9", "title": "Nope"}, headers=reader.headers)

    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"
    assert audit.audit_entries[-1]["action"] == "access.denied"
    assert audit.audit_entries[-1]["actor"] == f"api_key:{reader.principal_id}"
    assert db_session.execute(text("SELECT count(*) FROM tasks")).scalar_one() == 3
    assert client.get("/api/data/tasks", headers=reader.headers).json()["total"] == 3


def test_mutation_on_hooked_table_queues_one_pending_event(
    client: TestClient,
    admin,
    seeded: str,
    people: dict[str, Any],
    db_session: Session,
) -> None:
    hook = client.post("/api/admin/hooks", json={"table_name": "tasks", "event_type": "insert"}, headers=admin.headers)
    assert hook.status_code == 201

    created = client.post("/api/data/tasks", json={"id": "T9", "title": "New"}, headers=people["alice"].headers)

    assert created.status_code == 201
    assert created.json()["assigned_to"] == people["alice"].principal_id
    assert created.json()["status"] == "open"
    events = _queued(db_session)
    assert len(events) == 1
    assert events[0].processed_at is None
    assert events[0].record_id == "T9"
    assert events[0].event_type == "insert"
    assert events[0].payload["data"]["title"] == "New"


def test_mutations_without_hooks_queue_nothing(client: TestClient, seeded: str, people: dict[str, Any], db_session: Session) -> None:
    client.post("/api/data/tasks", json={"id": "T9", "title": "New"}, headers=people["alice"].headers)

    assert _queued(db_session) == []


def test_end_users_cannot_create_rows_for_someone_else(client: TestClient, seeded: str, people: dict[str, Any]) -> None:
    response = client.post(
        "/api/data/tasks",
        json={"id": "T9", "title": "Sneaky", "assigned_to": people["bob"].principal_id},
        headers=people["alice"].headers,
    )

    assert response.status_code == 403


def test_api_key_with_write_scope_may_set_any_owner(client: TestClient, seeded: str, people: dict[str, Any], make_api_key: Callable) -> None:
    writer = make_api_key("data:write")

    response = client.post(
        "/api/data/tasks",
        json={"id": "T9", "title": "Imported", "assigned_to": people["bob"].principal_id},
        headers=writer.headers,
    )

    assert response.status_code == 201
    assert response.json()["assigned_to"] == people["bob"].principal_id


def test_update_is_limited_to_owned_rows(
    client: TestClient,
    admin,
    seeded: str,
    people: dict[str, Any],
    db_session: Session,
) -> None:
    client.post("/api/admin/hooks", json={"table_name": "tasks", "event_type": "update"}, headers=admin.headers)
    alice = people["alice"].headers

    updated = client.patch("/api/data/tasks/T1", json={"status": "done"}, headers=alice)
    foreign = client.patch("/api/data/tasks/T2", json={"status": "done"}, headers=alice)
    reassigned = client.patch("/api/data/tasks/T1", json={"assigned_to": people["bob"].principal_id}, headers=alice)

    assert updated.status_code == 200
    assert updated.json()["status"] == "done"
    assert foreign.status_code == 404
    assert reassigned.status_code == 403
    assert [(event.record_id, event.event_type) for event in _queued(db_session)] == [("T1", "update")]


def test_delete_is_limited_to_owned_rows(client: TestClient, admin, seeded: str, people: dict[str, Any], db_session: Session) -> None:
    client.post("/api/admin/hooks", json={"table_name": "tasks", "event_type": "delete"}, headers=admin.headers)
    alice = people["alice"].headers

    assert client.delete("/api/data/tasks/T2", headers=alice).status_code == 404
    assert client.delete("/api/data/tasks/T1", headers=alice).json() == {"deleted": True}
    assert client.get("/api/data/tasks/T1", headers=alice).status_code == 404

    events = _queued(db_session)
    assert len(events) == 1
    assert events[0].payload["data"]["id"] == "T1"


def test_team_public_tables_are_shared(client: TestClient, seeded: str, people: dict[str, Any], db_session: Session) -> None:
    table_policy_service.set_policy(db_session, "tasks", AccessPolicy.TEAM_PUBLIC, owner_column="assigned_to", actor_id="admin")

    response = client.get("/api/data/tasks/T2", headers=people["alice"].headers)

    assert response.status_code == 200
    assert client.get("/api/data/tasks", headers=people["alice"].headers).json()["total"] == 3


def test_system_tables_are_hidden_from_end_users_and_read_only_for_admins(
    client: TestClient,
    admin,
    people: dict[str, Any],
) -> None:
    assert client.get("/api/data/auth_user", headers=people["alice"].headers).status_code == 403

    listed = client.get("/api/data/auth_user", headers=admin.headers)
    assert listed.status_code == 200
    assert listed.json()["total"] == 2

    write = client.post("/api/data/auth_user", json={"id": "x"}, headers=admin.headers)
    assert write.status_code == 403


def test_bad_requests(client: TestClient, admin, seeded: str) -> None:
    unknown_table = client.get("/api/data/missing_table", headers=admin.headers)
    bad_identifier = client.get("/api/data/tasks-1", headers=admin.headers)
    unknown_column = client.post("/api/data/tasks", json={"id": "T9", "title": "x", "color": "red"}, headers=admin.headers)
    empty_update = client.patch("/api/data/tasks/T1", json={}, headers=admin.headers)
    duplicate = client.post("/api/data/tasks", json={"id": "T1", "title": "again"}, headers=admin.headers)

    assert unknown_table.status_code == 404
    assert bad_identifier.status_code == 400
    assert unknown_column.status_code == 400
    assert unknown_column.json()["details"] == {"columns": ["color"]}
    assert empty_update.status_code == 400
    assert duplicate.status_code == 409


def test_requests_without_credentials_are_rejected(client: TestClient, seeded: str) -> None:
    response = client.get("/api/data/tasks")

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"


def test_pagination_counts_all_visible_rows(client: TestClient, admin, seeded: str) -> None:
    response = client.get("/api/data/tasks", params={"limit": 2, "offset": 1}, headers=admin.headers)

    assert response.json()["total"] == 3
    assert [row["id"] for row in response.json()["data"]] == ["T2", "T3"]


def test_rejected_mutation_on_hooked_table_queues_nothing(
    client: TestClient,
    admin,
    seeded: str,
    people: dict[str, Any],
    db_session: Session,
) -> None:
    client.post("/api/admin/hooks", json={"table_name": "tasks", "event_type": "insert"}, headers=admin.headers)

    duplicate = client.post("/api/data/tasks", json={"id": "T1", "title": "again"}, headers=people["alice"].headers)

    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "conflict"
    assert _queued(db_session) == []

    accepted = client.post("/api/data/tasks", json={"id": "T9", "title": "fresh"}, headers=people["alice"].headers)
    assert accepted.status_code == 201
    assert [event.record_id for event in _queued(db_session)] == ["T9"]


@pytest.fixture()
def notes_table(db_session: Session) -> str:
    """Application table without an owner column and without a stored policy."""

    db_session.execute(text("CREATE TABLE notes (id VARCHAR(36) PRIMARY KEY, body TEXT)"))
    db_session.commit()
    return "notes"


def test_owner_scoped_table_without_owner_column_is_denied(
    client: TestClient,
    admin,
    notes_table: str,
    people: dict[str, Any],
    db_session: Session,
) -> None:
    db_session.execute(text("INSERT INTO notes (id, body) VALUES ('N1', 'hello')"))
    db_session.commit()
    alice = people["alice"].headers

    responses = [
        client.get("/api/data/notes", headers=alice),
        client.get("/api/data/notes/N1", headers=alice),
        client.post("/api/data/notes", json={"id": "N2", "body": "mine"}, headers=alice),
        client.patch("/api/data/notes/N1", json={"body": "edited"}, headers=alice),
        client.delete("/api/data/notes/N1", headers=alice),
    ]

    assert [response.status_code for response in responses] == [403] * 5
    assert responses[0].json()["code"] == "forbidden"
    assert responses[0].json()["details"] == {"table": "notes", "action": "read"}
    assert audit.audit_entries[-1]["action"] == "access.denied"

    everything = client.get("/api/data/notes", headers=admin.headers)
    assert everything.status_code == 200
    assert [row["id"] for row in everything.json()["data"]] == ["N1"]


def test_owner_scoped_policy_requires_an_existing_owner_column(client: TestClient, admin, notes_table: str) -> None:
    rejected = client.put("/api/admin/tables/notes/policy", json={"policy": "owner_scoped", "owner_column": "author"}, headers=admin.headers)
    shared = client.put("/api/admin/tables/notes/policy", json={"policy": "team_public"}, headers=admin.headers)
    ahead_of_table = client.put("/api/admin/tables/drafts/policy", json={"policy": "owner_scoped", "owner_column": "author"}, headers=admin.headers)

    assert rejected.status_code == 400
    assert rejected.json()["code"] == "validation_error"
    assert rejected.json()["details"] == {"table": "notes", "owner_column": "author"}
    assert shared.status_code == 200
    assert ahead_of_table.status_code == 200

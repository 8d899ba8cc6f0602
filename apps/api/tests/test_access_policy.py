from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit
from app.platform.security.context import Admin, APIKey, EndUser
from app.platform.security.errors import AccessError
from app.platform.security.models import TablePolicyRecord
from app.platform.security.policies import AccessPolicy, DbPolicyResolver, InMemoryPolicyResolver, TablePolicy
from app.platform.security.rls import RowFilter, authorize, authorize_object_key, record_denial
from app.platform.security.scopes import Action, parse_scopes


ADMIN = Admin(user_id="admin-1", role="admin", session_id="s-1")
ALICE = EndUser(user_id="U1", session_id="s-2", token_expiry=datetime(2030, 1, 1, tzinfo=timezone.utc))


def _key(*scopes: str) -> APIKey:
    return APIKey(key_id="k-1", scopes=parse_scopes(scopes))


POLICIES = InMemoryPolicyResolver(
    {
        "tasks": TablePolicy(table="tasks", policy=AccessPolicy.OWNER_SCOPED, owner_column="assigned_to"),
        "announcements": TablePolicy(table="announcements", policy=AccessPolicy.TEAM_PUBLIC),
        "ledger": TablePolicy(table="ledger", policy=AccessPolicy.SYSTEM_ONLY),
    }
)


@pytest.mark.parametrize("table", ["tasks", "announcements", "ledger", "auth_user"])
def test_admin_is_unrestricted_everywhere(table: str) -> None:
    for action in Action:
        assert authorize(ADMIN, table, action, POLICIES) is None


def test_end_user_gets_owner_filter_on_owner_scoped_tables() -> None:
    row_filter = authorize(ALICE, "tasks", Action.READ, POLICIES)

    assert row_filter == RowFilter(column="assigned_to", value="U1")
    assert row_filter.matches({"assigned_to": "U1"})
    assert not row_filter.matches({"assigned_to": "U2"})
    assert not row_filter.matches({"assigned_to": None})


def test_unlisted_tables_default_to_owner_scoped_on_owner_id() -> None:
    assert authorize(ALICE, "notes", Action.WRITE, POLICIES) == RowFilter(column="owner_id", value="U1")


def test_team_public_tables_are_unfiltered_for_end_users() -> None:
    assert authorize(ALICE, "announcements", Action.DELETE, POLICIES) is None


@pytest.mark.parametrize("table", ["ledger", "auth_api_key"])
def test_end_users_never_reach_system_tables(table: str) -> None:
    with pytest.raises(AccessError) as exc_info:
        authorize(ALICE, table, Action.READ, POLICIES)

    assert exc_info.value.status_code == 403
    assert exc_info.value.table == table


def test_api_key_needs_data_scope_for_each_action() -> None:
    reader = _key("data:read")

    assert authorize(reader, "tasks", Action.READ, POLICIES) is None
    with pytest.raises(AccessError, match="data:write"):
        authorize(reader, "tasks", Action.WRITE, POLICIES)


def test_api_key_needs_admin_scope_on_system_tables() -> None:
    with pytest.raises(AccessError, match="admin:read"):
        authorize(_key("data:read"), "ledger", Action.READ, POLICIES)

    assert authorize(_key("admin:read"), "ledger", Action.READ, POLICIES) is None


def test_authorize_has_no_side_effects() -> None:
    with pytest.raises(AccessError):
        authorize(_key("data:read"), "tasks", Action.DELETE, POLICIES)

    assert audit.audit_entries == []


def test_record_denial_audits_the_principal() -> None:
    record_denial(_key("data:read"), "tasks", Action.DELETE)

    entry = audit.audit_entries[-1]
    assert entry["action"] == "access.denied"
    assert entry["actor"] == "api_key:k-1"
    assert entry["target_id"] == "tasks"
    assert entry["details"] == {"action": "delete"}


def test_object_keys_are_confined_to_the_users_namespace() -> None:
    authorize_object_key(ALICE, "users/U1/avatar.png", Action.WRITE)

    with pytest.raises(AccessError):
        authorize_object_key(ALICE, "users/U2/avatar.png", Action.READ)
    with pytest.raises(AccessError):
        authorize_object_key(ALICE, "users/U1/../U2/avatar.png", Action.READ)
    with pytest.raises(AccessError, match="storage:write"):
        authorize_object_key(_key("storage:read"), "public/logo.png", Action.WRITE)


def test_db_resolver_reads_stored_policy_and_fails_closed(db_session: Session) -> None:
    db_session.add(TablePolicyRecord(table_name="tasks", access_policy="team_public", owner_column="assigned_to"))
    db_session.add(TablePolicyRecord(table_name="legacy", access_policy="everyone", owner_column="owner_id"))
    db_session.commit()
    resolver = DbPolicyResolver(db_session)

    assert resolver.resolve("tasks").policy == AccessPolicy.TEAM_PUBLIC
    assert resolver.resolve("legacy").policy == AccessPolicy.SYSTEM_ONLY
    assert resolver.resolve("notes") == TablePolicy(table="notes", policy=AccessPolicy.OWNER_SCOPED)
    assert resolver.resolve("query_custom_query").is_system


def test_admin_sets_and_clears_table_policies(client: TestClient, admin, db_session: Session) -> None:
    updated = client.put(
        "/api/admin/tables/tasks/policy",
        json={"policy": "owner_scoped", "owner_column": "assigned_to"},
        headers=admin.headers,
    )
    assert updated.status_code == 200
    assert updated.json() == {"table": "tasks", "policy": "owner_scoped", "owner_column": "assigned_to", "is_system": False}
    assert audit.audit_entries[-1]["action"] == "table_policy.updated"

    listed = client.get("/api/admin/tables/policies", headers=admin.headers)
    assert [item["table"] for item in listed.json()] == ["tasks"]

    assert client.delete("/api/admin/tables/tasks/policy", headers=admin.headers).json() == {"deleted": True}
    assert db_session.scalar(select(TablePolicyRecord)) is None

    fallback = client.get("/api/admin/tables/tasks/policy", headers=admin.headers)
    assert fallback.json()["owner_column"] == "owner_id"


def test_system_table_policies_cannot_be_changed(client: TestClient, admin) -> None:
    response = client.put("/api/admin/tables/auth_user/policy", json={"policy": "team_public"}, headers=admin.headers)

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_policy_admin_requires_admin_session(client: TestClient, make_user) -> None:
    alice = make_user("alice")

    response = client.get("/api/admin/tables/policies", headers=alice.headers)

    assert response.status_code == 403

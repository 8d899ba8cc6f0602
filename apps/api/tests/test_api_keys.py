from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit
from app.auth.keys import APIKeyManager, hash_api_key
from app.auth.models import APIKeyRecord
from app.auth.schemas import APIKeyCreate
from app.core.database import utcnow


def _create(db_session: Session, manager: APIKeyManager, *scopes: str) -> tuple[uuid.UUID, str]:
    created = manager.create_api_key(db_session, APIKeyCreate(name=" reporting ", scopes=list(scopes)), "admin-1")
    return created.id, created.key


def test_created_key_is_prefixed_and_only_its_digest_is_stored(db_session: Session) -> None:
    manager = APIKeyManager("vb_live", 18)
    key_id, key = _create(db_session, manager, "data:read")

    assert key.startswith("vb_live_")
    assert len(key) == len("vb_live_") + 32

    record = db_session.get(APIKeyRecord, key_id)
    assert record is not None
    assert record.name == "reporting"
    assert record.key_hash == hash_api_key(key)
    assert record.key_prefix == key[:18] + "..."
    assert key not in (record.key_hash, record.key_prefix)
    assert record.scopes == ["data:read"]
    assert audit.audit_entries[-1]["action"] == "api_key.created"


def test_verify_accepts_active_key_and_records_last_use(db_session: Session) -> None:
    manager = APIKeyManager("vb_live", 18)
    key_id, key = _create(db_session, manager, "data:read", "data:write")

    record = manager.verify_api_key(db_session, key)

    assert record is not None
    assert record.id == key_id
    assert record.last_used_at is not None


def test_verify_rejects_unknown_revoked_and_expired_keys_the_same_way(db_session: Session) -> None:
    manager = APIKeyManager("vb_live", 18)
    revoked_id, revoked_key = _create(db_session, manager, "data:read")
    expired_id, expired_key = _create(db_session, manager, "data:read")

    manager.revoke_api_key(db_session, revoked_id, "admin-1")
    expired = db_session.get(APIKeyRecord, expired_id)
    assert expired is not None
    expired.expires_at = utcnow() - timedelta(minutes=1)
    db_session.commit()

    assert manager.verify_api_key(db_session, "vb_live_" + "0" * 32) is None
    assert manager.verify_api_key(db_session, revoked_key) is None
    assert manager.verify_api_key(db_session, expired_key) is None


def test_revoke_is_idempotent_and_delete_reports_missing_keys(db_session: Session) -> None:
    manager = APIKeyManager("vb_live", 18)
    key_id, _ = _create(db_session, manager, "data:read")

    assert manager.revoke_api_key(db_session, key_id, "admin-1") is True
    assert manager.revoke_api_key(db_session, key_id, "admin-1") is True
    assert [entry["action"] for entry in audit.audit_entries].count("api_key.revoked") == 1

    assert manager.delete_api_key(db_session, key_id, "admin-1") is True
    assert manager.delete_api_key(db_session, key_id, "admin-1") is False
    assert db_session.scalar(select(APIKeyRecord).where(APIKeyRecord.id == key_id)) is None


def test_admin_manages_keys_over_http(client: TestClient, admin, db_session: Session) -> None:
    created = client.post(
        "/api/admin/api-keys",
        json={"name": "ingest", "scopes": ["data:write", "data:read", "data:write"]},
        headers=admin.headers,
    )
    assert created.status_code == 201
    body = created.json()
    assert body["scopes"] == ["data:write", "data:read"]
    key = body["key"]

    listed = client.get("/api/admin/api-keys", headers=admin.headers)
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [body["id"]]
    assert "key" not in listed.json()[0]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {key}"})
    assert me.status_code == 200
    assert me.json()["scheme"] == "api_key"
    assert me.json()["scopes"] == ["data:read", "data:write"]

    revoked = client.post(f"/api/admin/api-keys/{body['id']}/revoke", headers=admin.headers)
    assert revoked.status_code == 200
    assert revoked.json() == {"revoked": True}

    rejected = client.get("/api/auth/me", headers={"Authorization": f"Bearer {key}"})
    assert rejected.status_code == 401
    assert rejected.json()["code"] == "invalid_credential"

    deleted = client.delete(f"/api/admin/api-keys/{body['id']}", headers=admin.headers)
    assert deleted.status_code == 200
    missing = client.delete(f"/api/admin/api-keys/{body['id']}", headers=admin.headers)
    assert missing.status_code == 404


def test_unknown_scopes_are_rejected(client: TestClient, admin) -> None:
    response = client.post(
        "/api/admin/api-keys",
        json={"name": "bad", "scopes": ["data:purge"]},
        headers=admin.headers,
    )
    assert response.status_code == 422


def test_api_keys_cannot_mint_api_keys(client: TestClient, make_api_key: Callable[..., object]) -> None:
    caller = make_api_key("admin:read", "admin:write")

    response = client.post(
        "/api/admin/api-keys",
        json={"name": "nested", "scopes": ["data:read"]},
        headers=caller.headers,
    )

    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"

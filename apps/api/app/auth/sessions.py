from __future__ import annotations

import json
import secrets
import uuid
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.auth.models import AdminAccount
from app.core.database import utcnow
from app.core.errors import NotFoundError, storage_errors
from app.core.kv import KeyValueStore
from app.platform.security.context import Admin


class AdminSessionManager:
    """Admin cookie sessions kept in the session key-value store."""

    key_prefix = "admin_session:"

    def __init__(self, store: KeyValueStore, ttl_seconds: int) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds

    def open_session(self, session: Session, admin_id: uuid.UUID) -> tuple[str, Admin, datetime]:
        with storage_errors("admin_session.open"):
            account = session.get(AdminAccount, admin_id)
        if account is None or not account.is_active:
            raise NotFoundError("admin not found")

        session_id = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(seconds=self._ttl_seconds)
        value = {"admin_id": str(account.id), "role": account.role, "expires_at": expires_at.isoformat()}
        self._store.put(self.key_prefix + session_id, json.dumps(value), self._ttl_seconds)
        return session_id, Admin(user_id=str(account.id), role=account.role, session_id=session_id), expires_at

    def get(self, session_id: str) -> Admin | None:
        raw = self._store.get(self.key_prefix + session_id)
        if raw is None:
            return None
        try:
            value = json.loads(raw)
            expires_at = datetime.fromisoformat(value["expires_at"])
        except (ValueError, KeyError, TypeError):
            return None
        if expires_at <= utcnow():
            return None
        return Admin(user_id=str(value["admin_id"]), role=str(value.get("role") or "admin"), session_id=session_id)

    def close(self, session_id: str) -> None:
        self._store.delete(self.key_prefix + session_id)

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.auth.models import APIKeyRecord
from app.auth.schemas import APIKeyCreate, APIKeyCreated, APIKeyRead
from app.core.config import get_settings
from app.core.database import as_utc, utcnow
from app.core.errors import storage_errors


logger = logging.getLogger("app.auth.api_keys")

# constant-time comparison target when no record matches
_ABSENT_HASH = "0" * 64


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class APIKeyManager:
    """Issues and verifies ``<prefix>_<secret>`` keys; only the SHA-256 digest is stored."""

    def __init__(self, prefix: str | None = None, display_length: int | None = None) -> None:
        settings = get_settings()
        self.prefix = prefix or settings.api_key_prefix
        self.display_length = display_length or settings.api_key_display_length

    def generate_key(self) -> str:
        return f"{self.prefix}_{secrets.token_hex(16)}"

    def display_prefix(self, key: str) -> str:
        return f"{key[: self.display_length]}..."

    def looks_like_api_key(self, token: str) -> bool:
        head = f"{self.prefix}_"
        return token.startswith(head) and len(token) > len(head)

    def create_api_key(self, session: Session, dto: APIKeyCreate, issuer_id: str) -> APIKeyCreated:
        key = self.generate_key()
        expires_at = utcnow() + timedelta(days=dto.expires_in_days) if dto.expires_in_days else None
        record = APIKeyRecord(
            id=uuid.uuid4(),
            name=dto.name.strip(),
            key_hash=hash_api_key(key),
            key_prefix=self.display_prefix(key),
            scopes=list(dto.scopes),
            created_by=issuer_id,
            expires_at=expires_at,
            is_active=True,
        )
        with storage_errors("api_key.create", session):
            session.add(record)
            session.commit()
            session.refresh(record)

        audit.record(
            actor=issuer_id,
            action="api_key.created",
            target_type="api_key",
            target_id=str(record.id),
            details={"name": record.name, "scopes": record.scopes},
        )
        return APIKeyCreated(
            id=record.id,
            name=record.name,
            key=key,
            prefix=record.key_prefix,
            scopes=list(record.scopes),
            created_at=record.created_at,
            expires_at=record.expires_at,
        )

    def verify_api_key(self, session: Session, presented_key: str) -> APIKeyRecord | None:
        """Return the active, unexpired record for ``presented_key`` or ``None``.

        Wrong, revoked and expired keys all take the same path and yield the same
        ``None`` so callers cannot tell them apart.
        """

        digest = hash_api_key(presented_key)
        with storage_errors("api_key.verify"):
            record = session.scalar(select(APIKeyRecord).where(APIKeyRecord.key_hash == digest))

        stored_hash = record.key_hash if record is not None else _ABSENT_HASH
        hash_ok = hmac.compare_digest(stored_hash, digest)
        active = record is not None and record.is_active
        expires_at = as_utc(record.expires_at) if record is not None else None
        unexpired = expires_at is None or expires_at > utcnow()
        if not (hash_ok and active and unexpired):
            return None

        self._touch_last_used(session, record)
        return record

    def _touch_last_used(self, session: Session, record: APIKeyRecord) -> None:
        try:
            record.last_used_at = utcnow()
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("api_key.touch_failed", extra={"key_id": str(record.id), "error": str(exc)[:500]})

    def revoke_api_key(self, session: Session, key_id: uuid.UUID, actor_id: str) -> bool:
        with storage_errors("api_key.revoke", session):
            record = session.get(APIKeyRecord, key_id)
            if record is not None and record.is_active:
                record.is_active = False
                session.commit()
                audit.record(actor=actor_id, action="api_key.revoked", target_type="api_key", target_id=str(key_id), details=None)
        return True

    def delete_api_key(self, session: Session, key_id: uuid.UUID, actor_id: str) -> bool:
        with storage_errors("api_key.delete", session):
            record = session.get(APIKeyRecord, key_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
        audit.record(actor=actor_id, action="api_key.deleted", target_type="api_key", target_id=str(key_id), details=None)
        return True

    def list_api_keys(self, session: Session, actor_id: str) -> list[APIKeyRead]:
        with storage_errors("api_key.list"):
            rows = session.scalars(
                select(APIKeyRecord)
                .where(APIKeyRecord.created_by == actor_id)
                .order_by(APIKeyRecord.created_at.desc())
            ).all()
        return [APIKeyRead.model_validate(row) for row in rows]

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

from app.auth.models import User, UserSession
from app.auth.schemas import TokenPair, UserRead
from app.core.config import Settings, get_settings
from app.core.database import as_utc, utcnow
from app.core.errors import ErrorKind, storage_errors
from app.platform.security.context import EndUser
from app.platform.security.errors import AuthError


logger = logging.getLogger("app.auth.tokens")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class UserTokenService:
    """Signed end-user access/refresh tokens bound to a server-side session row."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _encode(self, *, user_id: str, session_id: str, token_type: str, ttl_seconds: int) -> tuple[str, datetime]:
        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + timedelta(seconds=ttl_seconds)
        claims: dict[str, Any] = {
            "sub": user_id,
            "sid": session_id,
            "typ": token_type,
            "iss": self._settings.jwt_issuer,
            "aud": self._settings.jwt_audience,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(claims, self._settings.jwt_secret, algorithm=self._settings.jwt_algorithm)
        return token, expires_at

    def decode(self, token: str, *, expected_type: str) -> dict[str, Any]:
        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                self._settings.jwt_secret,
                algorithms=[self._settings.jwt_algorithm],
                audience=self._settings.jwt_audience,
                issuer=self._settings.jwt_issuer,
            )
        except ExpiredSignatureError as exc:
            raise AuthError("token expired", kind=ErrorKind.TOKEN_EXPIRED) from exc
        except JWTError as exc:
            raise AuthError("invalid token", kind=ErrorKind.TOKEN_INVALID) from exc

        if claims.get("typ") != expected_type or not claims.get("sub") or not claims.get("sid"):
            raise AuthError("invalid token", kind=ErrorKind.TOKEN_INVALID)
        return claims

    def issue_tokens(self, session: Session, user: User) -> TokenPair:
        session_id = uuid.uuid4()
        refresh_token, refresh_expires_at = self._encode(
            user_id=str(user.id),
            session_id=str(session_id),
            token_type=REFRESH_TOKEN_TYPE,
            ttl_seconds=self._settings.refresh_token_ttl_seconds,
        )
        with storage_errors("user_session.create", session):
            session.add(
                UserSession(
                    id=session_id,
                    user_id=user.id,
                    refresh_token_hash=_digest(refresh_token),
                    expires_at=refresh_expires_at,
                )
            )
            user.last_login_at = utcnow()
            session.commit()

        return self._token_pair(user, session_id, refresh_token)

    def _token_pair(self, user: User, session_id: uuid.UUID, refresh_token: str) -> TokenPair:
        access_token, _ = self._encode(
            user_id=str(user.id),
            session_id=str(session_id),
            token_type=ACCESS_TOKEN_TYPE,
            ttl_seconds=self._settings.access_token_ttl_seconds,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._settings.access_token_ttl_seconds,
            session_id=session_id,
            user=UserRead.model_validate(user),
        )

    def _live_session(self, session: Session, claims: dict[str, Any]) -> UserSession:
        try:
            session_id = uuid.UUID(str(claims["sid"]))
        except ValueError as exc:
            raise AuthError("invalid token", kind=ErrorKind.TOKEN_INVALID) from exc

        with storage_errors("user_session.load"):
            record = session.get(UserSession, session_id)
        if record is None or record.revoked_at is not None or str(record.user_id) != str(claims["sub"]):
            raise AuthError("session is no longer valid", kind=ErrorKind.TOKEN_INVALID)
        if as_utc(record.expires_at) <= utcnow():
            raise AuthError("session expired", kind=ErrorKind.TOKEN_EXPIRED)
        return record

    def authenticate_access_token(self, session: Session, token: str) -> EndUser:
        claims = self.decode(token, expected_type=ACCESS_TOKEN_TYPE)
        record = self._live_session(session, claims)
        return EndUser(
            user_id=str(record.user_id),
            session_id=str(record.id),
            token_expiry=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        )

    def refresh(self, session: Session, refresh_token: str) -> TokenPair:
        claims = self.decode(refresh_token, expected_type=REFRESH_TOKEN_TYPE)
        record = self._live_session(session, claims)
        if not hmac.compare_digest(record.refresh_token_hash, _digest(refresh_token)):
            # a rotated-out refresh token was replayed
            logger.warning("auth.refresh_reuse", extra={"principal": str(record.user_id)})
            raise AuthError("invalid token", kind=ErrorKind.TOKEN_INVALID)

        with storage_errors("user_session.refresh", session):
            user = session.get(User, record.user_id)
            if user is None or not user.is_active:
                raise AuthError("user is disabled", kind=ErrorKind.TOKEN_INVALID)
            rotated, expires_at = self._encode(
                user_id=str(user.id),
                session_id=str(record.id),
                token_type=REFRESH_TOKEN_TYPE,
                ttl_seconds=self._settings.refresh_token_ttl_seconds,
            )
            record.refresh_token_hash = _digest(rotated)
            record.expires_at = expires_at
            session.commit()
        return self._token_pair(user, record.id, rotated)

    def logout(self, session: Session, session_id: str) -> None:
        with storage_errors("user_session.revoke", session):
            record = session.get(UserSession, uuid.UUID(session_id))
            if record is not None and record.revoked_at is None:
                record.revoked_at = utcnow()
                session.commit()

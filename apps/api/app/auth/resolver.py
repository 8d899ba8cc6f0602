from __future__ import annotations

import logging
from collections.abc import Mapping

from sqlalchemy.orm import Session

from app.auth.keys import APIKeyManager
from app.auth.sessions import AdminSessionManager
from app.auth.tokens import UserTokenService
from app.core.errors import ErrorKind
from app.metrics import observe_auth_failure, observe_auth_resolved
from app.platform.security.context import APIKey, AuthContext, auth_scheme, principal_label
from app.platform.security.errors import AuthError
from app.platform.security.scopes import parse_scopes


logger = logging.getLogger("app.auth")


def bearer_token(headers: Mapping[str, str]) -> str | None:
    header = headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AuthResolver:
    """Turns request credentials into exactly one ``AuthContext``.

    Precedence is fixed and the first matching credential wins:

    1. ``Authorization: Bearer <prefix>_<secret>`` API key
    2. any other bearer value as a signed end-user access token
    3. the admin session cookie

    A request carrying none of them is ``unauthenticated``; a credential that is
    present but rejected never falls through to the next scheme.
    """

    def __init__(
        self,
        api_keys: APIKeyManager,
        tokens: UserTokenService,
        admin_sessions: AdminSessionManager,
        *,
        cookie_name: str,
    ) -> None:
        self._api_keys = api_keys
        self._tokens = tokens
        self._admin_sessions = admin_sessions
        self._cookie_name = cookie_name

    def resolve(self, session: Session, headers: Mapping[str, str], cookies: Mapping[str, str]) -> AuthContext:
        try:
            ctx = self._resolve(session, headers, cookies)
        except AuthError as exc:
            observe_auth_failure(exc.kind.value)
            logger.info("auth.failed", extra={"status": exc.kind.value})
            raise
        observe_auth_resolved(auth_scheme(ctx).value)
        logger.debug("auth.resolved", extra={"auth_kind": auth_scheme(ctx).value, "principal": principal_label(ctx)})
        return ctx

    def _resolve(self, session: Session, headers: Mapping[str, str], cookies: Mapping[str, str]) -> AuthContext:
        token = bearer_token(headers)
        if token is not None:
            if self._api_keys.looks_like_api_key(token):
                return self._resolve_api_key(session, token)
            return self._tokens.authenticate_access_token(session, token)

        session_id = cookies.get(self._cookie_name)
        if session_id:
            admin = self._admin_sessions.get(session_id)
            if admin is not None:
                return admin

        raise AuthError("authentication required", kind=ErrorKind.UNAUTHENTICATED)

    def _resolve_api_key(self, session: Session, token: str) -> APIKey:
        record = self._api_keys.verify_api_key(session, token)
        if record is None:
            raise AuthError("invalid API key", kind=ErrorKind.INVALID_CREDENTIAL)
        try:
            scopes = parse_scopes(record.scopes)
        except ValueError:
            # scopes were validated at creation; a corrupted row grants nothing
            logger.warning("auth.api_key_scopes_invalid", extra={"key_id": str(record.id)})
            scopes = frozenset()
        return APIKey(key_id=str(record.id), scopes=scopes)

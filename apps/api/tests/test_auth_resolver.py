from __future__ import annotations

from collections.abc import Callable

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session

from app.auth.identity import IdentityProfile
from app.auth.models import AdminAccount, OAuthProviderCredential
from app.core.errors import ErrorKind
from app.platform.security.context import Admin, APIKey, EndUser
from app.platform.security.errors import AuthError
from app.platform.security.scopes import Action, ScopeResource
from app.runtime import Runtime


def _resolve(runtime: Runtime, db_session: Session, headers: dict[str, str], cookies: dict[str, str] | None = None):
    lowered = {name.lower(): value for name, value in headers.items()}
    return runtime.resolver.resolve(db_session, lowered, cookies or {})


def test_api_key_bearer_resolves_to_api_key_context(runtime: Runtime, db_session: Session, make_api_key) -> None:
    caller = make_api_key("data:read")

    ctx = _resolve(runtime, db_session, caller.headers)

    assert isinstance(ctx, APIKey)
    assert ctx.key_id == caller.principal_id
    assert ctx.allows(ScopeResource.DATA, Action.READ)
    assert not ctx.allows(ScopeResource.DATA, Action.WRITE)


def test_other_bearer_values_resolve_to_end_user(runtime: Runtime, db_session: Session, make_user: Callable) -> None:
    alice = make_user("alice")

    ctx = _resolve(runtime, db_session, alice.headers)

    assert isinstance(ctx, EndUser)
    assert ctx.user_id == alice.principal_id


def test_admin_cookie_resolves_when_no_bearer_is_present(runtime: Runtime, db_session: Session, admin) -> None:
    ctx = _resolve(runtime, db_session, {}, {runtime.settings.admin_session_cookie: admin.token})

    assert isinstance(ctx, Admin)
    assert ctx.user_id == admin.principal_id
    assert ctx.session_id == admin.token


def test_bearer_takes_precedence_over_admin_cookie(runtime: Runtime, db_session: Session, admin, make_user) -> None:
    alice = make_user("alice")

    ctx = _resolve(runtime, db_session, alice.headers, {runtime.settings.admin_session_cookie: admin.token})

    assert isinstance(ctx, EndUser)


def test_rejected_bearer_does_not_fall_back_to_cookie(runtime: Runtime, db_session: Session, admin) -> None:
    with pytest.raises(AuthError) as exc_info:
        _resolve(
            runtime,
            db_session,
            {"Authorization": "Bearer not-a-token"},
            {runtime.settings.admin_session_cookie: admin.token},
        )

    assert exc_info.value.kind == ErrorKind.TOKEN_INVALID


def test_missing_credentials_are_unauthenticated(runtime: Runtime, db_session: Session) -> None:
    with pytest.raises(AuthError) as exc_info:
        _resolve(runtime, db_session, {}, {runtime.settings.admin_session_cookie: "unknown-session"})

    assert exc_info.value.kind == ErrorKind.UNAUTHENTICATED


def test_unknown_api_key_is_an_invalid_credential(runtime: Runtime, db_session: Session) -> None:
    with pytest.raises(AuthError) as exc_info:
        _resolve(runtime, db_session, {"Authorization": f"Bearer {runtime.settings.api_key_prefix}_{'a' * 32}"})

    assert exc_info.value.kind == ErrorKind.INVALID_CREDENTIAL


def test_expired_access_token_reports_token_expired(runtime: Runtime, db_session: Session, make_user) -> None:
    alice = make_user("alice")
    claims = jwt.get_unverified_claims(alice.token)
    claims["exp"] = claims["iat"] - 60
    settings = runtime.settings
    expired = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    with pytest.raises(AuthError) as exc_info:
        _resolve(runtime, db_session, {"Authorization": f"Bearer {expired}"})

    assert exc_info.value.kind == ErrorKind.TOKEN_EXPIRED


def test_refresh_token_is_not_accepted_as_access_token(client: TestClient, runtime: Runtime, db_session: Session, make_user) -> None:
    alice = make_user("alice")
    claims = jwt.get_unverified_claims(alice.token)
    claims["typ"] = "refresh"
    forged = jwt.encode(claims, runtime.settings.jwt_secret, algorithm=runtime.settings.jwt_algorithm)

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {forged}"})

    assert response.status_code == 401
    assert response.json()["code"] == "token_invalid"


def test_logout_revokes_the_session_behind_the_token(client: TestClient, make_user) -> None:
    alice = make_user("alice")

    assert client.get("/api/auth/me", headers=alice.headers).status_code == 200
    assert client.post("/api/auth/logout", headers=alice.headers).json() == {"status": "logged_out"}

    response = client.get("/api/auth/me", headers=alice.headers)
    assert response.status_code == 401
    assert response.json()["code"] == "token_invalid"


def _register_provider(db_session: Session) -> None:
    db_session.add(
        OAuthProviderCredential(
            provider="github",
            client_id="client",
            client_secret="secret",
            token_url="https://github.example/token",
            userinfo_url="https://github.example/user",
            scopes=["read:user"],
        )
    )
    db_session.commit()


def test_oauth_callback_registers_user_and_refresh_rotates(
    client: TestClient,
    db_session: Session,
    identity,
) -> None:
    _register_provider(db_session)
    identity.profiles["code-1"] = IdentityProfile(provider_user_id="42", email="bob@example.com", name="Bob")

    login = client.post("/api/auth/oauth/github/callback", json={"code": "code-1"})
    assert login.status_code == 200
    pair = login.json()
    assert pair["user"]["email"] == "bob@example.com"
    assert pair["token_type"] == "bearer"

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {pair['access_token']}"})
    assert me.json()["scheme"] == "end_user"
    assert me.json()["user_id"] == pair["user"]["id"]

    refreshed = client.post("/api/auth/refresh", json={"refresh_token": pair["refresh_token"]})
    assert refreshed.status_code == 200
    assert refreshed.json()["session_id"] == pair["session_id"]

    replayed = client.post("/api/auth/refresh", json={"refresh_token": pair["refresh_token"]})
    assert replayed.status_code == 401
    assert replayed.json()["code"] == "token_invalid"


def test_oauth_callback_with_rejected_code_is_invalid_credential(client: TestClient, db_session: Session) -> None:
    _register_provider(db_session)

    response = client.post("/api/auth/oauth/github/callback", json={"code": "forged"})

    assert response.status_code == 401
    assert response.json()["code"] == "invalid_credential"


def test_admin_oauth_callback_opens_cookie_session(
    client: TestClient,
    db_session: Session,
    identity,
    admin_account: AdminAccount,
    runtime: Runtime,
) -> None:
    _register_provider(db_session)
    identity.profiles["admin-code"] = IdentityProfile(provider_user_id="7", email="admin@example.com")

    response = client.post("/api/admin/oauth/github/callback", json={"code": "admin-code"})

    assert response.status_code == 200
    assert response.json()["admin_id"] == str(admin_account.id)
    session_id = response.cookies.get(runtime.settings.admin_session_cookie)
    assert session_id

    cookie = {"Cookie": f"{runtime.settings.admin_session_cookie}={session_id}"}
    assert client.get("/api/auth/me", headers=cookie).json()["scheme"] == "admin"

    assert client.delete("/api/admin/session", headers=cookie).status_code == 200
    assert client.get("/api/auth/me", headers=cookie).status_code == 401


def test_unknown_email_gets_no_admin_session(client: TestClient, db_session: Session, identity) -> None:
    _register_provider(db_session)
    identity.profiles["stranger"] = IdentityProfile(provider_user_id="8", email="stranger@example.com")

    response = client.post("/api/admin/oauth/github/callback", json={"code": "stranger"})

    assert response.status_code == 404

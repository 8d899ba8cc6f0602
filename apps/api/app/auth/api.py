from __future__ import annotations

import uuid
from typing import assert_never

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from app.auth.dependencies import get_auth_context, get_runtime, require_admin, require_end_user
from app.auth.identity import oauth_service
from app.auth.schemas import (
    AdminSessionRead,
    APIKeyCreate,
    APIKeyCreated,
    APIKeyRead,
    OAuthCallbackRequest,
    OAuthProviderRead,
    OAuthProviderUpsert,
    PrincipalRead,
    RefreshRequest,
    TokenPair,
)
from app.core.database import get_db
from app.core.errors import NotFoundError
from app.platform.security.context import Admin, APIKey, AuthContext, EndUser, auth_scheme
from app.platform.security.scopes import API_SCOPES
from app.runtime import Runtime


router = APIRouter(prefix="/api/auth", tags=["auth"])
admin_router = APIRouter(prefix="/api/admin", tags=["auth.admin"])


@router.post("/oauth/{provider}/callback", response_model=TokenPair)
def oauth_callback(
    provider: str,
    payload: OAuthCallbackRequest,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
) -> TokenPair:
    return oauth_service.complete_login(
        db,
        runtime.identity,
        runtime.tokens,
        provider,
        payload.code,
        payload.redirect_uri,
    )


@router.post("/refresh", response_model=TokenPair)
def refresh_tokens(
    payload: RefreshRequest,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
) -> TokenPair:
    return runtime.tokens.refresh(db, payload.refresh_token)


@router.post("/logout", response_model=None)
def logout(
    db: Session = Depends(get_db),
    user: EndUser = Depends(require_end_user),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, str]:
    runtime.tokens.logout(db, user.session_id)
    return {"status": "logged_out"}


@router.get("/me", response_model=PrincipalRead)
def me(ctx: AuthContext = Depends(get_auth_context)) -> PrincipalRead:
    match ctx:
        case Admin():
            return PrincipalRead(scheme=auth_scheme(ctx).value, user_id=ctx.user_id, role=ctx.role)
        case EndUser():
            return PrincipalRead(
                scheme=auth_scheme(ctx).value,
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                token_expiry=ctx.token_expiry,
            )
        case APIKey():
            return PrincipalRead(
                scheme=auth_scheme(ctx).value,
                key_id=ctx.key_id,
                scopes=sorted(str(scope) for scope in ctx.scopes),
            )
        case _:
            assert_never(ctx)


@admin_router.post("/oauth/{provider}/callback", response_model=AdminSessionRead)
def admin_oauth_callback(
    provider: str,
    payload: OAuthCallbackRequest,
    response: Response,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
) -> AdminSessionRead:
    account = oauth_service.resolve_admin(db, runtime.identity, provider, payload.code, payload.redirect_uri)
    session_id, admin, expires_at = runtime.admin_sessions.open_session(db, account.id)
    response.set_cookie(
        runtime.settings.admin_session_cookie,
        session_id,
        max_age=runtime.settings.admin_session_ttl_seconds,
        httponly=True,
        secure=runtime.settings.app_env.lower() in {"prod", "production"},
        samesite="lax",
    )
    return AdminSessionRead(admin_id=admin.user_id, role=admin.role, expires_at=expires_at)


@admin_router.delete("/session", response_model=None)
def close_admin_session(
    response: Response,
    admin: Admin = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, str]:
    runtime.admin_sessions.close(admin.session_id)
    response.delete_cookie(runtime.settings.admin_session_cookie)
    return {"status": "logged_out"}


@admin_router.get("/api-keys/scopes", response_model=list[str])
def list_api_key_scopes(admin: Admin = Depends(require_admin)) -> list[str]:
    return list(API_SCOPES)


@admin_router.post("/api-keys", response_model=APIKeyCreated, status_code=status.HTTP_201_CREATED)
def create_api_key(
    payload: APIKeyCreate,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> APIKeyCreated:
    return runtime.api_keys.create_api_key(db, payload, admin.user_id)


@admin_router.get("/api-keys", response_model=list[APIKeyRead])
def list_api_keys(
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> list[APIKeyRead]:
    return runtime.api_keys.list_api_keys(db, admin.user_id)


@admin_router.post("/api-keys/{key_id}/revoke", response_model=None)
def revoke_api_key(
    key_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, bool]:
    return {"revoked": runtime.api_keys.revoke_api_key(db, key_id, admin.user_id)}


@admin_router.delete("/api-keys/{key_id}", response_model=None)
def delete_api_key(
    key_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, bool]:
    if not runtime.api_keys.delete_api_key(db, key_id, admin.user_id):
        raise NotFoundError("API key not found")
    return {"deleted": True}


@admin_router.get("/oauth-providers", response_model=list[OAuthProviderRead])
def list_oauth_providers(db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> list[OAuthProviderRead]:
    return oauth_service.list_providers(db)


@admin_router.put("/oauth-providers/{provider}", response_model=OAuthProviderRead)
def upsert_oauth_provider(
    provider: str,
    payload: OAuthProviderUpsert,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> OAuthProviderRead:
    return oauth_service.upsert_provider(db, provider, payload, actor_id=admin.user_id)

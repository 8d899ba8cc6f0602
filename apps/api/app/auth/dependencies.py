from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends
from fastapi.requests import HTTPConnection
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.platform.security.context import Admin, APIKey, AuthContext, EndUser
from app.platform.security.errors import AccessError
from app.platform.security.scopes import Action, ScopeResource
from app.runtime import Runtime


def get_runtime(connection: HTTPConnection) -> Runtime:
    return connection.app.state.runtime


def get_auth_context(
    connection: HTTPConnection,
    db: Session = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    ctx = runtime.resolver.resolve(db, connection.headers, connection.cookies)
    connection.state.auth = ctx
    return ctx


def require_admin(ctx: AuthContext = Depends(get_auth_context)) -> Admin:
    if not isinstance(ctx, Admin):
        raise AccessError("admin session required")
    return ctx


def require_end_user(ctx: AuthContext = Depends(get_auth_context)) -> EndUser:
    if not isinstance(ctx, EndUser):
        raise AccessError("end-user token required")
    return ctx


def require_admin_scope(action: Action) -> Callable[[AuthContext], AuthContext]:
    """Admins, or API keys granted ``admin:<action>``."""

    def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if isinstance(ctx, Admin):
            return ctx
        if isinstance(ctx, APIKey) and ctx.allows(ScopeResource.ADMIN, action):
            return ctx
        raise AccessError(f"Missing scope: admin:{action.value}")

    return dependency

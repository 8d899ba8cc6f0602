from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TypeAlias, assert_never

from app.platform.security.scopes import Action, Scope, ScopeResource


class AuthScheme(StrEnum):
    ADMIN = "admin"
    END_USER = "end_user"
    API_KEY = "api_key"


@dataclass(frozen=True, slots=True)
class Admin:
    """Dashboard administrator authenticated by a session cookie."""

    user_id: str
    role: str
    session_id: str


@dataclass(frozen=True, slots=True)
class EndUser:
    """Application user authenticated by a signed access token."""

    user_id: str
    session_id: str
    token_expiry: datetime


@dataclass(frozen=True, slots=True)
class APIKey:
    """Server-to-server caller holding an API key; limited to its granted scopes."""

    key_id: str
    scopes: frozenset[Scope]

    def allows(self, resource: ScopeResource, action: Action) -> bool:
        return Scope(resource, action) in self.scopes


AuthContext: TypeAlias = Admin | EndUser | APIKey


def auth_scheme(ctx: AuthContext) -> AuthScheme:
    match ctx:
        case Admin():
            return AuthScheme.ADMIN
        case EndUser():
            return AuthScheme.END_USER
        case APIKey():
            return AuthScheme.API_KEY
        case _:
            assert_never(ctx)


def principal_label(ctx: AuthContext) -> str:
    match ctx:
        case Admin(user_id=user_id):
            return f"admin:{user_id}"
        case EndUser(user_id=user_id):
            return f"user:{user_id}"
        case APIKey(key_id=key_id):
            return f"api_key:{key_id}"
        case _:
            assert_never(ctx)

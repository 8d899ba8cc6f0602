from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.platform.security.scopes import normalize_scopes


class APIKeyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    scopes: list[str] = Field(min_length=1)
    expires_in_days: int | None = Field(default=None, ge=1, le=3650)

    @field_validator("scopes")
    @classmethod
    def _validate_scopes(cls, value: list[str]) -> list[str]:
        return normalize_scopes(value)


class APIKeyCreated(BaseModel):
    id: UUID
    name: str
    key: str
    prefix: str
    scopes: list[str]
    created_at: datetime
    expires_at: datetime | None


class APIKeyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    key_prefix: str
    scopes: list[str]
    created_by: str
    created_at: datetime
    expires_at: datetime | None
    is_active: bool
    last_used_at: datetime | None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str | None
    name: str | None
    avatar_url: str | None
    provider: str


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: UUID
    user: UserRead


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class OAuthCallbackRequest(BaseModel):
    code: str = Field(min_length=1)
    redirect_uri: str | None = None


class OAuthProviderUpsert(BaseModel):
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    token_url: str = Field(min_length=1)
    userinfo_url: str = Field(min_length=1)
    redirect_uri: str | None = None
    scopes: list[str] = Field(default_factory=list)
    is_enabled: bool = True


class OAuthProviderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: str
    client_id: str
    token_url: str
    userinfo_url: str
    redirect_uri: str | None
    scopes: list[str]
    is_enabled: bool
    updated_at: datetime


class PrincipalRead(BaseModel):
    scheme: str
    user_id: str | None = None
    role: str | None = None
    session_id: str | None = None
    key_id: str | None = None
    scopes: list[str] = Field(default_factory=list)
    token_expiry: datetime | None = None


class AdminSessionRead(BaseModel):
    admin_id: str
    role: str
    expires_at: datetime

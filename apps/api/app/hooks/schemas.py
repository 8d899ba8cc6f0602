from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.platform.security.identifiers import IDENTIFIER_RE


class HookEventType(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class HookCreate(BaseModel):
    table_name: str = Field(min_length=1, max_length=64, pattern=IDENTIFIER_RE.pattern)
    event_type: HookEventType
    is_enabled: bool = True


class HookUpdate(BaseModel):
    is_enabled: bool


class HookRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    table_name: str
    event_type: HookEventType
    is_enabled: bool
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class QueuedEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    hook_id: UUID
    table_name: str
    record_id: str
    event_type: HookEventType
    payload: dict[str, Any]
    created_at: datetime
    processed_at: datetime | None


class DrainReportRead(BaseModel):
    processed: int
    failed: int
    deferred: int


class CleanupRead(BaseModel):
    deleted: int


class SubscriptionCreate(BaseModel):
    client_id: str = Field(min_length=1, max_length=128)
    table_name: str | None = Field(default=None, max_length=64, pattern=IDENTIFIER_RE.pattern)
    hook_id: UUID | None = None
    filter_owner: bool = False
    ttl_seconds: int | None = Field(default=None, ge=1, le=60 * 60 * 24 * 30)


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: str
    table_name: str | None
    hook_id: UUID | None
    user_id: str | None
    filter_owner: bool
    created_at: datetime
    expires_at: datetime | None

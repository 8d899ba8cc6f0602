from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.hooks.schemas import HookEventType
from app.platform.security.identifiers import IDENTIFIER_RE


class TriggerType(StrEnum):
    DB_CHANGE = "db_change"
    API = "api"


class RecipientType(StrEnum):
    SPECIFIC_USER = "specific_user"
    COLUMN_REFERENCE = "column_reference"
    ALL_USERS = "all_users"


Priority = Literal["high", "normal", "low"]


class PushSubscriptionCreate(BaseModel):
    endpoint: str = Field(min_length=1, max_length=2048)
    p256dh: str = Field(min_length=1, max_length=255)
    auth: str = Field(min_length=1, max_length=255)
    platform: Literal["web", "android", "ios"] = "web"
    device_info: dict[str, Any] | None = None


class PushUnsubscribe(BaseModel):
    endpoint: str = Field(min_length=1, max_length=2048)


class PushSubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    endpoint: str
    platform: str
    device_info: dict[str, Any] | None
    is_active: bool
    created_at: datetime


class NotificationRuleBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    trigger_type: TriggerType
    table_name: str | None = Field(default=None, max_length=64, pattern=IDENTIFIER_RE.pattern)
    event_type: HookEventType | None = None
    conditions: dict[str, Any] | None = None
    recipient_type: RecipientType
    recipient_value: str | None = Field(default=None, max_length=255)
    title_template: str = Field(min_length=1)
    body_template: str = Field(min_length=1)
    icon_url: str | None = None
    image_url: str | None = None
    click_action: str | None = None
    priority: Priority = "normal"
    ttl_seconds: int = Field(default=86400, ge=0, le=60 * 60 * 24 * 28)
    is_enabled: bool = True


class NotificationRuleCreate(NotificationRuleBase):
    @model_validator(mode="after")
    def _check_trigger(self) -> NotificationRuleCreate:
        if self.trigger_type == TriggerType.DB_CHANGE and (self.table_name is None or self.event_type is None):
            raise ValueError("db_change rules require table_name and event_type")
        if self.recipient_type != RecipientType.ALL_USERS and not self.recipient_value:
            raise ValueError(f"recipient_value is required for {self.recipient_type.value} recipients")
        return self


class NotificationRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    conditions: dict[str, Any] | None = None
    recipient_value: str | None = Field(default=None, max_length=255)
    title_template: str | None = Field(default=None, min_length=1)
    body_template: str | None = Field(default=None, min_length=1)
    icon_url: str | None = None
    image_url: str | None = None
    click_action: str | None = None
    priority: Priority | None = None
    ttl_seconds: int | None = Field(default=None, ge=0, le=60 * 60 * 24 * 28)
    is_enabled: bool | None = None


class NotificationRuleRead(NotificationRuleBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class SendNotificationRequest(BaseModel):
    user_ids: list[str] = Field(min_length=1, max_length=1000)
    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
    icon: str | None = None
    image: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    ttl_seconds: int = Field(default=86400, ge=0, le=60 * 60 * 24 * 28)
    priority: Priority = "normal"


class DeliverySummaryRead(BaseModel):
    sent: int
    failed: int


class NotificationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID | None
    subscription_id: UUID | None
    user_id: str
    title: str
    body: str
    status: str
    attempts: int
    error_message: str | None
    sent_at: datetime | None
    created_at: datetime

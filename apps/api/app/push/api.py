from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.auth.dependencies import get_runtime, require_admin, require_admin_scope, require_end_user
from app.core.database import get_db
from app.platform.security.context import Admin, AuthContext, EndUser, principal_label
from app.platform.security.scopes import Action
from app.push.schemas import (
    DeliverySummaryRead,
    NotificationLogRead,
    NotificationRuleCreate,
    NotificationRuleRead,
    NotificationRuleUpdate,
    PushSubscriptionCreate,
    PushSubscriptionRead,
    PushUnsubscribe,
    SendNotificationRequest,
)
from app.push.service import push_service
from app.runtime import Runtime


router = APIRouter(prefix="/api/push", tags=["push"])
admin_router = APIRouter(prefix="/api/admin/push", tags=["push.admin"])


@router.post("/subscriptions", response_model=PushSubscriptionRead, status_code=status.HTTP_201_CREATED)
def subscribe(
    payload: PushSubscriptionCreate,
    db: Session = Depends(get_db),
    user: EndUser = Depends(require_end_user),
) -> PushSubscriptionRead:
    return PushSubscriptionRead.model_validate(push_service.subscribe(db, user.user_id, payload))


@router.get("/subscriptions", response_model=list[PushSubscriptionRead])
def list_my_subscriptions(
    db: Session = Depends(get_db),
    user: EndUser = Depends(require_end_user),
) -> list[PushSubscriptionRead]:
    return [PushSubscriptionRead.model_validate(row) for row in push_service.list_subscriptions(db, user_id=user.user_id)]


@router.post("/unsubscribe", response_model=None)
def unsubscribe(
    payload: PushUnsubscribe,
    db: Session = Depends(get_db),
    user: EndUser = Depends(require_end_user),
) -> dict[str, bool]:
    push_service.unsubscribe(db, user.user_id, payload.endpoint)
    return {"unsubscribed": True}


@admin_router.get("/subscriptions", response_model=list[PushSubscriptionRead])
def list_all_subscriptions(
    user_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> list[PushSubscriptionRead]:
    return [PushSubscriptionRead.model_validate(row) for row in push_service.list_subscriptions(db, user_id=user_id)]


@admin_router.get("/rules", response_model=list[NotificationRuleRead])
def list_rules(db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> list[NotificationRuleRead]:
    return [NotificationRuleRead.model_validate(row) for row in push_service.list_rules(db)]


@admin_router.post("/rules", response_model=NotificationRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(
    payload: NotificationRuleCreate,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> NotificationRuleRead:
    return NotificationRuleRead.model_validate(push_service.create_rule(db, payload, actor_id=admin.user_id))


@admin_router.get("/rules/{rule_id}", response_model=NotificationRuleRead)
def get_rule(rule_id: uuid.UUID, db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> NotificationRuleRead:
    return NotificationRuleRead.model_validate(push_service.get_rule(db, rule_id))


@admin_router.patch("/rules/{rule_id}", response_model=NotificationRuleRead)
def update_rule(
    rule_id: uuid.UUID,
    payload: NotificationRuleUpdate,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> NotificationRuleRead:
    return NotificationRuleRead.model_validate(push_service.update_rule(db, rule_id, payload, actor_id=admin.user_id))


@admin_router.delete("/rules/{rule_id}", response_model=None)
def delete_rule(rule_id: uuid.UUID, db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> dict[str, bool]:
    push_service.delete_rule(db, rule_id, actor_id=admin.user_id)
    return {"deleted": True}


@admin_router.post("/send", response_model=DeliverySummaryRead)
def send_notification(
    payload: SendNotificationRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin_scope(Action.WRITE)),
    runtime: Runtime = Depends(get_runtime),
) -> DeliverySummaryRead:
    summary = push_service.send(db, runtime.notifications, payload, actor_id=principal_label(ctx))
    return DeliverySummaryRead(sent=summary.sent, failed=summary.failed)


@admin_router.get("/logs", response_model=list[NotificationLogRead])
def list_logs(
    limit: int = Query(default=100, ge=1, le=1000),
    rule_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> list[NotificationLogRead]:
    return [NotificationLogRead.model_validate(row) for row in push_service.list_logs(db, limit=limit, rule_id=rule_id)]

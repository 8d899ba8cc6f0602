from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit
from app.core.errors import NotFoundError, storage_errors
from app.push.models import NotificationLog, NotificationRule, PushSubscription
from app.push.notifications import DeliverySummary, NotificationDispatcher
from app.push.schemas import (
    NotificationRuleCreate,
    NotificationRuleUpdate,
    PushSubscriptionCreate,
    SendNotificationRequest,
)
from app.push.transport import PushPayload


logger = logging.getLogger("app.push")


class PushService:
    def subscribe(self, session: Session, user_id: str, dto: PushSubscriptionCreate) -> PushSubscription:
        """Register a device; re-subscribing the same endpoint refreshes its keys."""

        with storage_errors("push_subscription.subscribe", session):
            subscription = session.scalar(
                select(PushSubscription).where(
                    PushSubscription.user_id == user_id,
                    PushSubscription.endpoint == dto.endpoint,
                )
            )
            if subscription is None:
                subscription = PushSubscription(id=uuid.uuid4(), user_id=user_id, endpoint=dto.endpoint)
                session.add(subscription)
            subscription.p256dh = dto.p256dh
            subscription.auth = dto.auth
            subscription.platform = dto.platform
            subscription.device_info = dto.device_info
            subscription.is_active = True
            session.commit()
            session.refresh(subscription)
        logger.info("push.subscribed", extra={"subscription_id": str(subscription.id), "user_id": user_id})
        return subscription

    def unsubscribe(self, session: Session, user_id: str, endpoint: str) -> None:
        with storage_errors("push_subscription.unsubscribe", session):
            subscription = session.scalar(
                select(PushSubscription).where(
                    PushSubscription.user_id == user_id,
                    PushSubscription.endpoint == endpoint,
                )
            )
            if subscription is None:
                raise NotFoundError("push subscription not found")
            subscription.is_active = False
            session.commit()

    def list_subscriptions(self, session: Session, *, user_id: str | None = None) -> list[PushSubscription]:
        stmt = select(PushSubscription).order_by(PushSubscription.created_at.desc())
        if user_id is not None:
            stmt = stmt.where(PushSubscription.user_id == user_id, PushSubscription.is_active.is_(True))
        with storage_errors("push_subscription.list"):
            return list(session.scalars(stmt).all())

    def list_rules(self, session: Session) -> list[NotificationRule]:
        with storage_errors("notification_rule.list"):
            return list(session.scalars(select(NotificationRule).order_by(NotificationRule.name.asc())).all())

    def get_rule(self, session: Session, rule_id: uuid.UUID) -> NotificationRule:
        with storage_errors("notification_rule.get"):
            rule = session.get(NotificationRule, rule_id)
        if rule is None:
            raise NotFoundError("notification rule not found")
        return rule

    def create_rule(self, session: Session, dto: NotificationRuleCreate, *, actor_id: str) -> NotificationRule:
        values = dto.model_dump(mode="json")
        rule = NotificationRule(id=uuid.uuid4(), created_by=actor_id, **values)
        with storage_errors("notification_rule.create", session):
            session.add(rule)
            session.commit()
            session.refresh(rule)
        audit.record(
            actor=actor_id,
            action="notification_rule.created",
            target_type="notification_rule",
            target_id=str(rule.id),
            details={"trigger_type": rule.trigger_type, "table_name": rule.table_name},
        )
        return rule

    def update_rule(self, session: Session, rule_id: uuid.UUID, dto: NotificationRuleUpdate, *, actor_id: str) -> NotificationRule:
        rule = self.get_rule(session, rule_id)
        changes = dto.model_dump(mode="json", exclude_unset=True)
        with storage_errors("notification_rule.update", session):
            for field_name, value in changes.items():
                setattr(rule, field_name, value)
            session.commit()
            session.refresh(rule)
        audit.record(
            actor=actor_id,
            action="notification_rule.updated",
            target_type="notification_rule",
            target_id=str(rule_id),
            details={"fields": sorted(changes)},
        )
        return rule

    def delete_rule(self, session: Session, rule_id: uuid.UUID, *, actor_id: str) -> None:
        rule = self.get_rule(session, rule_id)
        with storage_errors("notification_rule.delete", session):
            session.delete(rule)
            session.commit()
        audit.record(actor=actor_id, action="notification_rule.deleted", target_type="notification_rule", target_id=str(rule_id), details=None)

    def send(
        self,
        session: Session,
        notifications: NotificationDispatcher,
        dto: SendNotificationRequest,
        *,
        actor_id: str,
    ) -> DeliverySummary:
        payload = PushPayload(
            title=dto.title,
            body=dto.body,
            icon=dto.icon,
            image=dto.image,
            data=dto.data,
            ttl_seconds=dto.ttl_seconds,
            urgency=dto.priority,
        )
        summary = notifications.send_notification(session, dto.user_ids, payload)
        with storage_errors("push.send", session):
            session.commit()
        audit.record(
            actor=actor_id,
            action="push.sent",
            target_type="push",
            target_id=",".join(sorted(set(dto.user_ids)))[:255],
            details={"sent": summary.sent, "failed": summary.failed},
        )
        return summary

    def list_logs(self, session: Session, *, limit: int = 100, rule_id: uuid.UUID | None = None) -> list[NotificationLog]:
        stmt = select(NotificationLog)
        if rule_id is not None:
            stmt = stmt.where(NotificationLog.rule_id == rule_id)
        with storage_errors("notification_log.list"):
            return list(session.scalars(stmt.order_by(NotificationLog.created_at.desc()).limit(limit)).all())


push_service = PushService()

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.database import utcnow
from app.core.errors import storage_errors
from app.metrics import observe_push_delivery
from app.push.models import NotificationLog, NotificationRule, PushSubscription
from app.push.transport import DeliveryError, PushPayload, PushTarget, PushTransport


logger = logging.getLogger("app.push")

TEMPLATE_TOKEN_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")

TRIGGER_DB_CHANGE = "db_change"


def render_template(template: str, data: Mapping[str, Any]) -> str:
    """Substitute ``{{field}}`` tokens; missing or null fields render empty."""

    def _replace(match: re.Match[str]) -> str:
        value = data.get(match.group(1))
        return "" if value is None else str(value)

    return TEMPLATE_TOKEN_RE.sub(_replace, template)


def conditions_match(conditions: Mapping[str, Any] | None, data: Mapping[str, Any]) -> bool:
    if not conditions:
        return True
    return all(key in data and data[key] == expected for key, expected in conditions.items())


def build_payload(rule: NotificationRule, data: Mapping[str, Any]) -> PushPayload:
    extra: dict[str, Any] = {"rule_id": str(rule.id)}
    if rule.click_action:
        extra["click_action"] = render_template(rule.click_action, data)
    return PushPayload(
        title=render_template(rule.title_template, data),
        body=render_template(rule.body_template, data),
        icon=rule.icon_url,
        image=rule.image_url,
        data=extra,
        ttl_seconds=rule.ttl_seconds,
        urgency=rule.priority,
    )


@dataclass(slots=True)
class DeliverySummary:
    sent: int = 0
    failed: int = 0

    def add(self, other: DeliverySummary) -> None:
        self.sent += other.sent
        self.failed += other.failed


class NotificationDispatcher:
    """Evaluates notification rules and hands rendered payloads to the push transport.

    Nothing here commits; delivery logs and subscription deactivations join the
    caller's transaction.
    """

    def __init__(self, transport: PushTransport, *, max_attempts: int = 3) -> None:
        self._transport = transport
        self._max_attempts = max(1, max_attempts)

    def process_db_change(self, session: Session, table: str, event_type: str, data: Mapping[str, Any]) -> DeliverySummary:
        stmt = select(NotificationRule).where(
            NotificationRule.is_enabled.is_(True),
            NotificationRule.trigger_type == TRIGGER_DB_CHANGE,
            NotificationRule.table_name == table,
            NotificationRule.event_type == event_type,
        )
        with storage_errors("notification_rule.match"):
            rules = list(session.scalars(stmt).all())

        summary = DeliverySummary()
        for rule in rules:
            if conditions_match(rule.conditions, data):
                summary.add(self.execute_rule(session, rule, data))
        return summary

    def execute_rule(self, session: Session, rule: NotificationRule, data: Mapping[str, Any]) -> DeliverySummary:
        user_ids = self.recipients(session, rule, data)
        if not user_ids:
            return DeliverySummary()
        return self.send_notification(session, user_ids, build_payload(rule, data), rule_id=rule.id)

    def recipients(self, session: Session, rule: NotificationRule, data: Mapping[str, Any]) -> list[str]:
        match rule.recipient_type:
            case "specific_user":
                return [rule.recipient_value] if rule.recipient_value else []
            case "column_reference":
                value = data.get(rule.recipient_value or "")
                return [str(value)] if value is not None else []
            case "all_users":
                with storage_errors("push_subscription.users"):
                    rows = session.scalars(
                        select(PushSubscription.user_id).where(PushSubscription.is_active.is_(True)).distinct()
                    ).all()
                return sorted(rows)
            case _:
                logger.warning("push.unknown_recipient_type", extra={"rule_id": str(rule.id), "recipient_type": rule.recipient_type})
                return []

    def send_notification(
        self,
        session: Session,
        user_ids: Iterable[str],
        payload: PushPayload,
        *,
        rule_id: uuid.UUID | None = None,
    ) -> DeliverySummary:
        wanted = sorted(set(user_ids))
        summary = DeliverySummary()
        if not wanted:
            return summary
        with storage_errors("push_subscription.targets"):
            subscriptions = list(
                session.scalars(
                    select(PushSubscription).where(
                        PushSubscription.user_id.in_(wanted),
                        PushSubscription.is_active.is_(True),
                    )
                ).all()
            )
        for subscription in subscriptions:
            if self._deliver(session, subscription, payload, rule_id=rule_id):
                summary.sent += 1
            else:
                summary.failed += 1
        return summary

    def _deliver(
        self,
        session: Session,
        subscription: PushSubscription,
        payload: PushPayload,
        *,
        rule_id: uuid.UUID | None,
    ) -> bool:
        target = PushTarget(endpoint=subscription.endpoint, p256dh=subscription.p256dh, auth=subscription.auth)
        attempts = 0
        error: DeliveryError | None = None
        while attempts < self._max_attempts:
            attempts += 1
            try:
                self._transport.deliver(target, payload)
            except DeliveryError as exc:
                error = exc
                if exc.gone or not exc.retryable:
                    break
                continue
            error = None
            break

        log = NotificationLog(
            rule_id=rule_id,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            title=payload.title,
            body=payload.body,
            attempts=attempts,
        )
        if error is None:
            log.status = "sent"
            log.sent_at = utcnow()
            observe_push_delivery("sent")
        else:
            log.status = "failed"
            log.error_message = str(error)[:500]
            if error.gone:
                subscription.is_active = False
                log.status = "gone"
            observe_push_delivery(log.status)
            logger.warning(
                "push.delivery_failed",
                extra={
                    "subscription_id": str(subscription.id),
                    "user_id": subscription.user_id,
                    "status_code": error.status_code,
                    "attempt": attempts,
                    "error": str(error)[:500],
                },
            )
        session.add(log)
        return error is None

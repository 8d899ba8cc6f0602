from __future__ import annotations

import logging
import uuid
from collections.abc import Collection
from datetime import timedelta
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.core.database import as_utc, utcnow
from app.core.errors import ConflictError, NotFoundError, ValidationFailedError, storage_errors
from app.hooks.models import Hook, QueuedEvent, RealtimeSubscription
from app.hooks.schemas import HookCreate, HookEventType, SubscriptionCreate
from app.platform.security.context import Admin, APIKey, AuthContext, EndUser, principal_label
from app.platform.security.errors import AccessError
from app.platform.security.policies import PolicyResolver
from app.platform.security.rls import authorize, record_denial
from app.platform.security.scopes import Action, ScopeResource


logger = logging.getLogger("app.hooks")


def event_envelope(table: str, event_type: HookEventType, record_id: str, row: dict[str, Any]) -> dict[str, Any]:
    return {
        "table": table,
        "event_type": event_type.value,
        "record_id": record_id,
        "timestamp": utcnow().isoformat(),
        "data": jsonable_encoder(row),
    }


class HookService:
    """Hook registry, the durable event queue and realtime subscriptions."""

    def list_hooks(self, session: Session) -> list[Hook]:
        with storage_errors("hook.list"):
            return list(session.scalars(select(Hook).order_by(Hook.table_name.asc(), Hook.event_type.asc())).all())

    def get_hook(self, session: Session, hook_id: uuid.UUID) -> Hook:
        with storage_errors("hook.get"):
            hook = session.get(Hook, hook_id)
        if hook is None:
            raise NotFoundError("hook not found")
        return hook

    def create_hook(self, session: Session, dto: HookCreate, *, actor_id: str) -> Hook:
        hook = Hook(
            id=uuid.uuid4(),
            table_name=dto.table_name,
            event_type=dto.event_type.value,
            is_enabled=dto.is_enabled,
            created_by=actor_id,
        )
        try:
            session.add(hook)
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(
                "a hook for this table and event already exists",
                details={"table_name": dto.table_name, "event_type": dto.event_type.value},
            ) from exc
        session.refresh(hook)
        audit.record(
            actor=actor_id,
            action="hook.created",
            target_type="hook",
            target_id=str(hook.id),
            details={"table_name": hook.table_name, "event_type": hook.event_type},
        )
        return hook

    def set_enabled(self, session: Session, hook_id: uuid.UUID, enabled: bool, *, actor_id: str) -> Hook:
        hook = self.get_hook(session, hook_id)
        with storage_errors("hook.toggle", session):
            hook.is_enabled = enabled
            session.commit()
            session.refresh(hook)
        audit.record(actor=actor_id, action="hook.toggled", target_type="hook", target_id=str(hook_id), details={"is_enabled": enabled})
        return hook

    def delete_hook(self, session: Session, hook_id: uuid.UUID, *, actor_id: str) -> None:
        hook = self.get_hook(session, hook_id)
        with storage_errors("hook.delete", session):
            # sqlite does not enforce ON DELETE CASCADE without a pragma
            session.execute(delete(QueuedEvent).where(QueuedEvent.hook_id == hook_id))
            session.execute(delete(RealtimeSubscription).where(RealtimeSubscription.hook_id == hook_id))
            session.delete(hook)
            session.commit()
        audit.record(actor=actor_id, action="hook.deleted", target_type="hook", target_id=str(hook_id), details=None)

    def active_hooks(self, session: Session, table: str, event_type: HookEventType) -> list[Hook]:
        with storage_errors("hook.active"):
            return list(
                session.scalars(
                    select(Hook).where(
                        Hook.table_name == table,
                        Hook.event_type == event_type.value,
                        Hook.is_enabled.is_(True),
                    )
                ).all()
            )

    def record_mutation(
        self,
        session: Session,
        table: str,
        event_type: HookEventType,
        record_id: str,
        row: dict[str, Any],
    ) -> list[QueuedEvent]:
        """Queue one event per enabled hook; the caller commits with its mutation."""

        events: list[QueuedEvent] = []
        for hook in self.active_hooks(session, table, event_type):
            event = QueuedEvent(
                hook_id=hook.id,
                table_name=table,
                record_id=record_id,
                event_type=event_type.value,
                payload=event_envelope(table, event_type, record_id, row),
            )
            session.add(event)
            events.append(event)
        return events

    def list_events(self, session: Session, *, pending_only: bool = True, limit: int = 100) -> list[QueuedEvent]:
        stmt = select(QueuedEvent)
        if pending_only:
            stmt = stmt.where(QueuedEvent.processed_at.is_(None))
        with storage_errors("hook.events"):
            return list(session.scalars(stmt.order_by(QueuedEvent.created_at.asc(), QueuedEvent.id.asc()).limit(limit)).all())

    def pending_events(
        self,
        session: Session,
        *,
        limit: int,
        exclude_hooks: Collection[uuid.UUID] = (),
    ) -> list[QueuedEvent]:
        stmt = select(QueuedEvent).where(QueuedEvent.processed_at.is_(None))
        if exclude_hooks:
            stmt = stmt.where(QueuedEvent.hook_id.not_in(list(exclude_hooks)))
        with storage_errors("hook.events"):
            return list(session.scalars(stmt.order_by(QueuedEvent.created_at.asc(), QueuedEvent.id.asc()).limit(limit)).all())

    def mark_processed(self, session: Session, event: QueuedEvent) -> None:
        if event.processed_at is None:
            event.processed_at = utcnow()

    def cleanup_processed_events(self, session: Session, *, older_than_days: int) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        with storage_errors("hook.cleanup", session):
            result = session.execute(
                delete(QueuedEvent).where(QueuedEvent.processed_at.is_not(None), QueuedEvent.processed_at < cutoff)
            )
            session.commit()
        deleted = int(result.rowcount or 0)
        logger.info("hooks.cleanup", extra={"processed": deleted})
        return deleted

    def create_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        dto: SubscriptionCreate,
        policies: PolicyResolver,
    ) -> RealtimeSubscription:
        table = dto.table_name
        if dto.hook_id is not None:
            hook = self.get_hook(session, dto.hook_id)
            if table is not None and table != hook.table_name:
                raise ValidationFailedError("table_name does not match the hook's table")
            table = hook.table_name

        user_id: str | None = None
        filter_owner = dto.filter_owner
        if table is None:
            # a subscription to every table is an administrative feed
            match ctx:
                case Admin():
                    pass
                case APIKey() if ctx.allows(ScopeResource.ADMIN, Action.READ):
                    pass
                case _:
                    raise AccessError("a table or hook is required for this subscription")
        else:
            try:
                row_filter = authorize(ctx, table, Action.READ, policies)
            except AccessError:
                record_denial(ctx, table, Action.READ)
                raise
            if isinstance(ctx, EndUser):
                user_id = ctx.user_id
                if row_filter is not None:
                    filter_owner = True
            elif filter_owner:
                raise ValidationFailedError("filter_owner applies to end-user subscriptions only")

        expires_at = utcnow() + timedelta(seconds=dto.ttl_seconds) if dto.ttl_seconds else None
        subscription = RealtimeSubscription(
            id=uuid.uuid4(),
            client_id=dto.client_id,
            table_name=table,
            hook_id=dto.hook_id,
            user_id=user_id,
            filter_owner=filter_owner,
            created_by=principal_label(ctx),
            expires_at=expires_at,
        )
        with storage_errors("subscription.create", session):
            session.add(subscription)
            session.commit()
            session.refresh(subscription)
        return subscription

    def list_subscriptions(self, session: Session, ctx: AuthContext) -> list[RealtimeSubscription]:
        stmt = select(RealtimeSubscription).order_by(RealtimeSubscription.created_at.asc())
        if not isinstance(ctx, Admin):
            stmt = stmt.where(RealtimeSubscription.created_by == principal_label(ctx))
        with storage_errors("subscription.list"):
            rows = list(session.scalars(stmt).all())
        now = utcnow()
        return [row for row in rows if row.expires_at is None or as_utc(row.expires_at) > now]

    def delete_subscription(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> None:
        with storage_errors("subscription.get"):
            subscription = session.get(RealtimeSubscription, subscription_id)
        if subscription is None or (not isinstance(ctx, Admin) and subscription.created_by != principal_label(ctx)):
            raise NotFoundError("subscription not found")
        with storage_errors("subscription.delete", session):
            session.delete(subscription)
            session.commit()

    def matching_subscriptions(self, session: Session, event: QueuedEvent) -> list[RealtimeSubscription]:
        """Live subscriptions for ``event``; expired ones are pruned on the way."""

        stmt = select(RealtimeSubscription).where(
            or_(
                RealtimeSubscription.hook_id == event.hook_id,
                (RealtimeSubscription.hook_id.is_(None)) & (RealtimeSubscription.table_name == event.table_name),
                (RealtimeSubscription.hook_id.is_(None)) & (RealtimeSubscription.table_name.is_(None)),
            )
        )
        with storage_errors("subscription.match"):
            rows = list(session.scalars(stmt).all())

        now = utcnow()
        live: list[RealtimeSubscription] = []
        for row in rows:
            if row.expires_at is not None and as_utc(row.expires_at) <= now:
                session.delete(row)
                continue
            live.append(row)
        return live


hook_service = HookService()

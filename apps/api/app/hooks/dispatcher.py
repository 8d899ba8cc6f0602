from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from app.context import correlation_scope
from app.core.config import Settings, get_settings
from app.core.database import SessionLocal
from app.core.events import EVENT_QUEUED, InternalEvent, event_bus
from app.hooks.models import QueuedEvent
from app.hooks.realtime import RealtimeHub, RealtimePublisher
from app.hooks.service import hook_service
from app.metrics import observe_event_dispatched
from app.otel import get_tracer
from app.platform.security.policies import DbPolicyResolver
from app.push.notifications import NotificationDispatcher
from app.push.transport import WebPushTransport


logger = logging.getLogger("app.hooks")
tracer = get_tracer("app.hooks")


@dataclass(slots=True)
class DrainReport:
    processed: int = 0
    failed: int = 0
    deferred: int = 0


def event_message(event: QueuedEvent) -> dict[str, Any]:
    payload = event.payload or {}
    return {
        "type": "event",
        "event": {
            "id": event.id,
            "table": event.table_name,
            "record_id": event.record_id,
            "event_type": event.event_type,
            "data": payload.get("data") or {},
            "timestamp": payload.get("timestamp"),
        },
    }


class EventDispatcher:
    """Drains pending queued events to realtime subscribers and notification rules.

    Events are handled oldest-first. Once an event of a hook fails, the rest of that
    hook's events wait for the next cycle so per-hook order is kept; a failed event
    stays pending and is retried.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        realtime: RealtimePublisher,
        notifications: NotificationDispatcher,
        *,
        batch_size: int = 100,
        poll_interval: float = 5.0,
    ) -> None:
        self._session_factory = session_factory
        self._realtime = realtime
        self._notifications = notifications
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._stopping = False

    def drain_once(self) -> DrainReport:
        with correlation_scope("drain"):
            return self._drain()

    def _drain(self) -> DrainReport:
        report = DrainReport()
        with tracer.start_as_current_span("hooks.drain") as span, self._session_factory() as session:
            policies = DbPolicyResolver(session)
            failed_hooks: set[uuid.UUID] = set()
            attempted = 0
            # refetch past held-back hooks so one failing hook cannot starve the others
            while attempted < self._batch_size:
                batch = hook_service.pending_events(
                    session,
                    limit=self._batch_size - attempted,
                    exclude_hooks=failed_hooks,
                )
                if not batch:
                    break
                for event in batch:
                    event_id, hook_id = event.id, event.hook_id
                    if hook_id in failed_hooks:
                        report.deferred += 1
                        continue
                    attempted += 1
                    try:
                        self._dispatch(session, event, policies)
                        hook_service.mark_processed(session, event)
                        session.commit()
                    except Exception as exc:
                        session.rollback()
                        failed_hooks.add(hook_id)
                        report.failed += 1
                        logger.exception(
                            "hooks.dispatch_failed",
                            extra={"event_id": event_id, "hook_id": str(hook_id), "error": str(exc)[:500]},
                        )
                    else:
                        report.processed += 1

            span.set_attribute("hooks.processed", report.processed)
            span.set_attribute("hooks.failed", report.failed)
            span.set_attribute("hooks.deferred", report.deferred)

        for status, count in (("processed", report.processed), ("failed", report.failed), ("deferred", report.deferred)):
            if count:
                observe_event_dispatched(status, count)
        if report.processed or report.failed:
            logger.info(
                "hooks.drained",
                extra={"processed": report.processed, "failed": report.failed, "deferred": report.deferred},
            )
        return report

    def _dispatch(self, session: Session, event: QueuedEvent, policies: DbPolicyResolver) -> None:
        message = event_message(event)
        data = message["event"]["data"]
        owner: str | None = None
        owner_resolved = False

        for subscription in hook_service.matching_subscriptions(session, event):
            if subscription.filter_owner:
                if not owner_resolved:
                    value = data.get(policies.resolve(event.table_name).owner_column)
                    owner = None if value is None else str(value)
                    owner_resolved = True
                if owner is None or subscription.user_id != owner:
                    continue
            self._realtime.send(subscription.client_id, subscription.created_by, message)

        self._notifications.process_db_change(session, event.table_name, event.event_type, data)

    def wake(self) -> None:
        """Ask the running drain loop for an early cycle; safe from any thread."""

        loop, wake = self._loop, self._wake
        if loop is None or wake is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(wake.set)

    def _on_event_queued(self, event: InternalEvent) -> None:
        self.wake()

    def stop(self) -> None:
        self._stopping = True
        self.wake()

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._stopping = False
        event_bus.subscribe(EVENT_QUEUED, self._on_event_queued)
        logger.info("hooks.dispatcher_started")
        try:
            while not self._stopping:
                self._wake.clear()
                try:
                    await asyncio.to_thread(self.drain_once)
                except Exception as exc:
                    logger.exception("hooks.drain_failed", extra={"error": str(exc)[:500]})
                if self._stopping:
                    break
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
        finally:
            event_bus.unsubscribe(EVENT_QUEUED, self._on_event_queued)
            self._loop = None
            self._wake = None
            logger.info("hooks.dispatcher_stopped")


def build_dispatcher(settings: Settings | None = None) -> EventDispatcher:
    """Dispatcher for worker processes; realtime clients only connect to API processes."""

    settings = settings or get_settings()
    transport = WebPushTransport(settings.vapid_private_key, settings.vapid_subject)
    return EventDispatcher(
        SessionLocal,
        RealtimeHub(),
        NotificationDispatcher(transport, max_attempts=settings.push_max_attempts),
        batch_size=settings.dispatcher_batch_size,
        poll_interval=settings.dispatcher_poll_interval_seconds,
    )

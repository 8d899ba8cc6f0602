from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from app.auth.dependencies import get_auth_context, get_runtime, require_admin
from app.core.database import get_db
from app.core.errors import ServiceError
from app.hooks.schemas import (
    CleanupRead,
    DrainReportRead,
    HookCreate,
    HookRead,
    HookUpdate,
    QueuedEventRead,
    SubscriptionCreate,
    SubscriptionRead,
)
from app.hooks.service import hook_service
from app.platform.security.context import Admin, AuthContext, principal_label
from app.platform.security.policies import DbPolicyResolver
from app.runtime import Runtime


logger = logging.getLogger("app.hooks.realtime")

admin_router = APIRouter(prefix="/api/admin/hooks", tags=["hooks.admin"])
realtime_router = APIRouter(prefix="/api/realtime", tags=["realtime"])

WS_POLICY_VIOLATION = 1008


@admin_router.get("", response_model=list[HookRead])
def list_hooks(db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> list[HookRead]:
    return [HookRead.model_validate(row) for row in hook_service.list_hooks(db)]


@admin_router.post("", response_model=HookRead, status_code=status.HTTP_201_CREATED)
def create_hook(payload: HookCreate, db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> HookRead:
    return HookRead.model_validate(hook_service.create_hook(db, payload, actor_id=admin.user_id))


@admin_router.get("/events", response_model=list[QueuedEventRead])
def list_events(
    pending_only: bool = Query(default=True),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> list[QueuedEventRead]:
    return [QueuedEventRead.model_validate(row) for row in hook_service.list_events(db, pending_only=pending_only, limit=limit)]


@admin_router.post("/drain", response_model=DrainReportRead)
def drain_events(admin: Admin = Depends(require_admin), runtime: Runtime = Depends(get_runtime)) -> DrainReportRead:
    report = runtime.dispatcher.drain_once()
    return DrainReportRead(processed=report.processed, failed=report.failed, deferred=report.deferred)


@admin_router.post("/cleanup", response_model=CleanupRead)
def cleanup_events(
    older_than_days: int | None = Query(default=None, ge=0),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> CleanupRead:
    days = runtime.settings.processed_event_retention_days if older_than_days is None else older_than_days
    return CleanupRead(deleted=hook_service.cleanup_processed_events(db, older_than_days=days))


@admin_router.get("/{hook_id}", response_model=HookRead)
def get_hook(hook_id: uuid.UUID, db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> HookRead:
    return HookRead.model_validate(hook_service.get_hook(db, hook_id))


@admin_router.patch("/{hook_id}", response_model=HookRead)
def toggle_hook(
    hook_id: uuid.UUID,
    payload: HookUpdate,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> HookRead:
    return HookRead.model_validate(hook_service.set_enabled(db, hook_id, payload.is_enabled, actor_id=admin.user_id))


@admin_router.delete("/{hook_id}", response_model=None)
def delete_hook(hook_id: uuid.UUID, db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> dict[str, bool]:
    hook_service.delete_hook(db, hook_id, actor_id=admin.user_id)
    return {"deleted": True}


@realtime_router.post("/subscriptions", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return SubscriptionRead.model_validate(hook_service.create_subscription(db, ctx, payload, DbPolicyResolver(db)))


@realtime_router.get("/subscriptions", response_model=list[SubscriptionRead])
def list_subscriptions(db: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> list[SubscriptionRead]:
    return [SubscriptionRead.model_validate(row) for row in hook_service.list_subscriptions(db, ctx)]


@realtime_router.delete("/subscriptions/{subscription_id}", response_model=None)
def delete_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> dict[str, bool]:
    hook_service.delete_subscription(db, ctx, subscription_id)
    return {"deleted": True}


def _authenticate_socket(websocket: WebSocket, runtime: Runtime, token: str | None) -> AuthContext:
    # browsers cannot set headers on a websocket handshake; the token may ride the query string
    headers = dict(websocket.headers)
    if token:
        headers["authorization"] = f"Bearer {token}"
    with runtime.session_factory() as session:
        return runtime.resolver.resolve(session, headers, websocket.cookies)


@realtime_router.websocket("/ws/{client_id}")
async def realtime_socket(websocket: WebSocket, client_id: str, token: str | None = Query(default=None)) -> None:
    runtime: Runtime = websocket.app.state.runtime
    try:
        ctx = await asyncio.to_thread(_authenticate_socket, websocket, runtime, token)
    except ServiceError as exc:
        await websocket.close(code=WS_POLICY_VIOLATION, reason=exc.kind.value)
        return

    await websocket.accept()
    connection = runtime.realtime.connect(client_id, principal_label(ctx))
    receiver = asyncio.create_task(_drain_client_messages(websocket))
    try:
        await websocket.send_json({"type": "connected", "client_id": client_id})
        while not receiver.done():
            getter = asyncio.create_task(connection.queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    except WebSocketDisconnect:
        logger.debug("realtime.client_closed", extra={"subscription_id": client_id})
    finally:
        receiver.cancel()
        runtime.realtime.disconnect(connection)


async def _drain_client_messages(websocket: WebSocket) -> None:
    """Reads until the client goes away; inbound messages are only keep-alives."""

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.debug("realtime.client_closed")

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from app.auth.identity import HttpIdentityProvider, IdentityProvider
from app.auth.keys import APIKeyManager
from app.auth.resolver import AuthResolver
from app.auth.sessions import AdminSessionManager
from app.auth.tokens import UserTokenService
from app.core.config import Settings, get_settings
from app.core.database import SessionLocal
from app.core.kv import KeyValueStore, build_kv_store
from app.hooks.dispatcher import EventDispatcher
from app.hooks.realtime import RealtimeHub
from app.push.notifications import NotificationDispatcher
from app.push.transport import PushTransport, WebPushTransport
from app.queries.cache import QueryResultCache
from app.queries.engine import CustomQueryEngine


@dataclass
class Runtime:
    """Long-lived collaborators shared by every request of one API process."""

    settings: Settings
    session_factory: Callable[[], Session]
    session_store: KeyValueStore
    query_cache: QueryResultCache
    query_engine: CustomQueryEngine
    api_keys: APIKeyManager
    tokens: UserTokenService
    admin_sessions: AdminSessionManager
    resolver: AuthResolver
    identity: IdentityProvider
    realtime: RealtimeHub
    push_transport: PushTransport
    notifications: NotificationDispatcher
    dispatcher: EventDispatcher

    def close(self) -> None:
        self.dispatcher.stop()
        close = getattr(self.identity, "close", None)
        if callable(close):
            close()


def build_runtime(
    settings: Settings | None = None,
    *,
    session_factory: Callable[[], Session] | None = None,
    session_store: KeyValueStore | None = None,
    cache_store: KeyValueStore | None = None,
    identity: IdentityProvider | None = None,
    push_transport: PushTransport | None = None,
    **overrides: Any,
) -> Runtime:
    """Wire the runtime from settings; tests pass in-memory stores and fakes."""

    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    session_store = session_store or build_kv_store(settings, namespace="session")
    query_cache = QueryResultCache(cache_store or build_kv_store(settings, namespace="query"))

    api_keys = APIKeyManager(settings.api_key_prefix, settings.api_key_display_length)
    tokens = UserTokenService(settings)
    admin_sessions = AdminSessionManager(session_store, settings.admin_session_ttl_seconds)
    realtime = RealtimeHub()
    push_transport = push_transport or WebPushTransport(settings.vapid_private_key, settings.vapid_subject)
    notifications = NotificationDispatcher(push_transport, max_attempts=settings.push_max_attempts)

    parts: dict[str, Any] = {
        "settings": settings,
        "session_factory": session_factory,
        "session_store": session_store,
        "query_cache": query_cache,
        "query_engine": CustomQueryEngine(query_cache),
        "api_keys": api_keys,
        "tokens": tokens,
        "admin_sessions": admin_sessions,
        "resolver": AuthResolver(api_keys, tokens, admin_sessions, cookie_name=settings.admin_session_cookie),
        "identity": identity or HttpIdentityProvider(),
        "realtime": realtime,
        "push_transport": push_transport,
        "notifications": notifications,
        "dispatcher": EventDispatcher(
            session_factory,
            realtime,
            notifications,
            batch_size=settings.dispatcher_batch_size,
            poll_interval=settings.dispatcher_poll_interval_seconds,
        ),
    }
    parts.update(overrides)
    return Runtime(**parts)

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from pywebpush import WebPushException, webpush


logger = logging.getLogger("app.push")

GONE_STATUS_CODES = frozenset({404, 410})


@dataclass(frozen=True, slots=True)
class PushTarget:
    endpoint: str
    p256dh: str
    auth: str


@dataclass(frozen=True, slots=True)
class PushPayload:
    title: str
    body: str
    icon: str | None = None
    image: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    ttl_seconds: int = 86400
    urgency: str = "normal"

    def to_json(self) -> str:
        message: dict[str, Any] = {"title": self.title, "body": self.body, "data": self.data}
        if self.icon:
            message["icon"] = self.icon
        if self.image:
            message["image"] = self.image
        return json.dumps(message, default=str)


class DeliveryError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

    @property
    def gone(self) -> bool:
        """The push service no longer knows the subscription."""

        return self.status_code in GONE_STATUS_CODES


class PushTransport(Protocol):
    def deliver(self, target: PushTarget, payload: PushPayload) -> None:
        ...


URGENCY_VALUES = frozenset({"very-low", "low", "normal", "high"})


class WebPushTransport:
    """VAPID-signed, encrypted Web Push delivery through pywebpush."""

    def __init__(self, vapid_private_key: str, vapid_subject: str, *, timeout: float = 10.0) -> None:
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._timeout = timeout

    def deliver(self, target: PushTarget, payload: PushPayload) -> None:
        if not self._vapid_private_key:
            raise DeliveryError("web push is not configured", retryable=False)
        try:
            webpush(
                subscription_info={"endpoint": target.endpoint, "keys": {"p256dh": target.p256dh, "auth": target.auth}},
                data=payload.to_json(),
                vapid_private_key=self._vapid_private_key,
                vapid_claims={"sub": self._vapid_subject},
                ttl=payload.ttl_seconds,
                headers={"Urgency": payload.urgency if payload.urgency in URGENCY_VALUES else "normal"},
                timeout=self._timeout,
            )
        except WebPushException as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            retryable = status_code is None or status_code == 429 or status_code >= 500
            raise DeliveryError(str(exc)[:500], status_code=status_code, retryable=retryable) from exc
        except (OSError, ValueError) as exc:
            raise DeliveryError(str(exc)[:500]) from exc

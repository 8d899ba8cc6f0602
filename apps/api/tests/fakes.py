from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.auth.identity import IdentityProfile, IdentityProviderError
from app.auth.models import OAuthProviderCredential
from app.push.transport import DeliveryError, PushPayload, PushTarget


@dataclass
class Caller:
    principal_id: str
    headers: dict[str, str]
    token: str


class FakeIdentityProvider:
    """Authorization codes are keys into ``profiles``."""

    def __init__(self) -> None:
        self.profiles: dict[str, IdentityProfile] = {}

    def exchange_code(self, provider: OAuthProviderCredential, code: str, redirect_uri: str | None) -> str:
        if code not in self.profiles:
            raise IdentityProviderError("authorization code rejected")
        return f"token-{code}"

    def fetch_user_info(self, provider: OAuthProviderCredential, access_token: str) -> IdentityProfile:
        return self.profiles[access_token.removeprefix("token-")]


class RecordingPushTransport:
    def __init__(self) -> None:
        self.delivered: list[tuple[PushTarget, PushPayload]] = []
        self.attempts: dict[str, int] = {}
        self._failures: dict[str, list[DeliveryError]] = {}

    def fail(self, endpoint: str, *errors: DeliveryError) -> None:
        self._failures[endpoint] = list(errors)

    def deliver(self, target: PushTarget, payload: PushPayload) -> None:
        self.attempts[target.endpoint] = self.attempts.get(target.endpoint, 0) + 1
        pending = self._failures.get(target.endpoint)
        if pending:
            raise pending.pop(0)
        self.delivered.append((target, payload))


class RecordingPublisher:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, dict[str, Any]]] = []

    def send(self, client_id: str, principal: str, message: dict[str, Any]) -> int:
        self.messages.append((client_id, principal, message))
        return 1

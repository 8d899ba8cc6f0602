from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.auth.models import AdminAccount, OAuthProviderCredential, User
from app.auth.schemas import OAuthProviderRead, OAuthProviderUpsert, TokenPair
from app.auth.tokens import UserTokenService
from app.core.errors import ConflictError, DisabledError, ErrorKind, NotFoundError, ServiceError, StorageError, storage_errors
from app.platform.security.identifiers import validate_identifier


logger = logging.getLogger("app.auth.identity")


@dataclass(frozen=True, slots=True)
class IdentityProfile:
    provider_user_id: str
    email: str | None = None
    name: str | None = None
    avatar_url: str | None = None


class IdentityProvider(Protocol):
    """Outbound calls to an OAuth identity provider."""

    def exchange_code(self, provider: OAuthProviderCredential, code: str, redirect_uri: str | None) -> str:
        ...

    def fetch_user_info(self, provider: OAuthProviderCredential, access_token: str) -> IdentityProfile:
        ...


class IdentityProviderError(ServiceError):
    """The identity provider rejected the exchange or returned an unusable profile."""

    default_kind = ErrorKind.INVALID_CREDENTIAL


class HttpIdentityProvider:
    """Standard authorization-code exchange and user-info fetch over httpx."""

    def __init__(self, client: httpx.Client | None = None, *, timeout: float = 10.0) -> None:
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def exchange_code(self, provider: OAuthProviderCredential, code: str, redirect_uri: str | None) -> str:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": provider.client_id,
            "client_secret": provider.client_secret,
        }
        if redirect_uri or provider.redirect_uri:
            form["redirect_uri"] = redirect_uri or provider.redirect_uri or ""
        payload = self._request("POST", provider.token_url, data=form, headers={"Accept": "application/json"})
        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise IdentityProviderError("identity provider did not return an access token")
        return token

    def fetch_user_info(self, provider: OAuthProviderCredential, access_token: str) -> IdentityProfile:
        payload = self._request(
            "GET",
            provider.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        subject = payload.get("sub") or payload.get("id")
        if subject is None:
            raise IdentityProviderError("identity provider returned no user id")
        return IdentityProfile(
            provider_user_id=str(subject),
            email=payload.get("email"),
            name=payload.get("name") or payload.get("login"),
            avatar_url=payload.get("picture") or payload.get("avatar_url"),
        )

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("auth.identity_request_failed", extra={"operation": method, "error": str(exc)[:500]})
            raise IdentityProviderError("identity provider request failed") from exc
        if not isinstance(payload, dict):
            raise IdentityProviderError("identity provider returned an unexpected payload")
        return payload


class OAuthService:
    """Provider credentials (credential store) and the sign-in flows built on them."""

    def list_providers(self, session: Session) -> list[OAuthProviderRead]:
        with storage_errors("oauth_provider.list"):
            rows = session.scalars(select(OAuthProviderCredential).order_by(OAuthProviderCredential.provider.asc())).all()
        return [OAuthProviderRead.model_validate(row) for row in rows]

    def upsert_provider(self, session: Session, provider: str, dto: OAuthProviderUpsert, *, actor_id: str) -> OAuthProviderRead:
        validate_identifier(provider, kind="provider")
        with storage_errors("oauth_provider.upsert", session):
            record = session.get(OAuthProviderCredential, provider)
            if record is None:
                record = OAuthProviderCredential(provider=provider)
                session.add(record)
            record.client_id = dto.client_id
            record.client_secret = dto.client_secret
            record.token_url = dto.token_url
            record.userinfo_url = dto.userinfo_url
            record.redirect_uri = dto.redirect_uri
            record.scopes = list(dto.scopes)
            record.is_enabled = dto.is_enabled
            session.commit()
            session.refresh(record)
        audit.record(
            actor=actor_id,
            action="oauth_provider.updated",
            target_type="oauth_provider",
            target_id=provider,
            details={"is_enabled": dto.is_enabled},
        )
        return OAuthProviderRead.model_validate(record)

    def get_enabled_provider(self, session: Session, provider: str) -> OAuthProviderCredential:
        with storage_errors("oauth_provider.get"):
            record = session.get(OAuthProviderCredential, provider)
        if record is None:
            raise NotFoundError(f"unknown identity provider: {provider}")
        if not record.is_enabled:
            raise DisabledError(f"identity provider is disabled: {provider}")
        return record

    def _profile(
        self,
        session: Session,
        identity: IdentityProvider,
        provider: str,
        code: str,
        redirect_uri: str | None,
    ) -> IdentityProfile:
        credentials = self.get_enabled_provider(session, provider)
        access_token = identity.exchange_code(credentials, code, redirect_uri)
        return identity.fetch_user_info(credentials, access_token)

    def register_user(
        self,
        session: Session,
        identity: IdentityProvider,
        provider: str,
        code: str,
        redirect_uri: str | None = None,
    ) -> User:
        """Create or refresh the end user behind an authorization code."""

        profile = self._profile(session, identity, provider, code, redirect_uri)
        try:
            user = session.scalar(
                select(User).where(User.provider == provider, User.provider_user_id == profile.provider_user_id)
            )
            if user is None:
                user = User(provider=provider, provider_user_id=profile.provider_user_id)
                session.add(user)
            user.email = profile.email
            user.name = profile.name
            user.avatar_url = profile.avatar_url
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("user registration raced with another sign-in") from exc
        except Exception as exc:
            session.rollback()
            if isinstance(exc, ServiceError):
                raise
            logger.exception("storage.error", extra={"operation": "user.register", "error": str(exc)[:500]})
            raise StorageError() from exc
        session.refresh(user)
        if not user.is_active:
            raise DisabledError("user account is disabled")
        return user

    def complete_login(
        self,
        session: Session,
        identity: IdentityProvider,
        tokens: UserTokenService,
        provider: str,
        code: str,
        redirect_uri: str | None = None,
    ) -> TokenPair:
        user = self.register_user(session, identity, provider, code, redirect_uri)
        logger.info("auth.user_login", extra={"principal": str(user.id), "operation": provider})
        return tokens.issue_tokens(session, user)

    def resolve_admin(
        self,
        session: Session,
        identity: IdentityProvider,
        provider: str,
        code: str,
        redirect_uri: str | None = None,
    ) -> AdminAccount:
        profile = self._profile(session, identity, provider, code, redirect_uri)
        if not profile.email:
            raise NotFoundError("admin not found")
        with storage_errors("admin.lookup"):
            account = session.scalar(select(AdminAccount).where(AdminAccount.email == profile.email.lower()))
        if account is None or not account.is_active:
            raise NotFoundError("admin not found")
        return account


oauth_service = OAuthService()

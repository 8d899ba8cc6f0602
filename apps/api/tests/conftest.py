from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.auth.models import AdminAccount, User
from app.auth.schemas import APIKeyCreate
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.core.kv import InMemoryKeyValueStore
from app.main import app
from app.platform.security.policies import AccessPolicy, table_policy_service
from app.runtime import Runtime, build_runtime
from tests.fakes import Caller, FakeIdentityProvider, RecordingPushTransport


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    get_settings.cache_clear()


@pytest.fixture()
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture()
def push_transport() -> RecordingPushTransport:
    return RecordingPushTransport()


@pytest.fixture()
def runtime(
    session_factory: sessionmaker[Session],
    identity: FakeIdentityProvider,
    push_transport: RecordingPushTransport,
) -> Runtime:
    return build_runtime(
        get_settings(),
        session_factory=session_factory,
        session_store=InMemoryKeyValueStore(),
        cache_store=InMemoryKeyValueStore(),
        identity=identity,
        push_transport=push_transport,
    )


@pytest.fixture()
def client(db_session: Session, runtime: Runtime) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.runtime = runtime
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.runtime = None


@pytest.fixture()
def admin_account(db_session: Session) -> AdminAccount:
    account = AdminAccount(id=uuid.uuid4(), email="admin@example.com", name="Admin", role="admin")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture()
def admin(db_session: Session, runtime: Runtime, admin_account: AdminAccount) -> Caller:
    session_id, _, _ = runtime.admin_sessions.open_session(db_session, admin_account.id)
    return Caller(
        principal_id=str(admin_account.id),
        headers={"Cookie": f"{runtime.settings.admin_session_cookie}={session_id}"},
        token=session_id,
    )


@pytest.fixture()
def make_user(db_session: Session, runtime: Runtime) -> Callable[[str], Caller]:
    def _make(name: str = "alice") -> Caller:
        user = User(
            id=uuid.uuid4(),
            email=f"{name}@example.com",
            name=name.title(),
            provider="github",
            provider_user_id=f"gh-{name}",
        )
        db_session.add(user)
        db_session.commit()
        pair = runtime.tokens.issue_tokens(db_session, user)
        return Caller(
            principal_id=str(user.id),
            headers={"Authorization": f"Bearer {pair.access_token}"},
            token=pair.access_token,
        )

    return _make


@pytest.fixture()
def make_api_key(db_session: Session, runtime: Runtime) -> Callable[..., Caller]:
    def _make(*scopes: str, expires_in_days: int | None = None) -> Caller:
        created = runtime.api_keys.create_api_key(
            db_session,
            APIKeyCreate(name="integration", scopes=list(scopes), expires_in_days=expires_in_days),
            "admin-1",
        )
        return Caller(
            principal_id=str(created.id),
            headers={"Authorization": f"Bearer {created.key}"},
            token=created.key,
        )

    return _make


@pytest.fixture()
def tasks_table(db_session: Session) -> str:
    """Application table ``tasks`` whose rows belong to the user in ``assigned_to``."""

    db_session.execute(
        text(
            "CREATE TABLE tasks ("
            "id VARCHAR(36) PRIMARY KEY, "
            "title VARCHAR(200) NOT NULL, "
            "status VARCHAR(20) NOT NULL DEFAULT 'open', "
            "assigned_to VARCHAR(64))"
        )
    )
    db_session.commit()
    table_policy_service.set_policy(
        db_session,
        "tasks",
        AccessPolicy.OWNER_SCOPED,
        owner_column="assigned_to",
        actor_id="setup",
    )
    audit.audit_entries.clear()
    return "tasks"

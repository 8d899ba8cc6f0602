from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from sqlalchemy import inspect, select
from sqlalchemy.orm import Session

from app import audit
from app.core.database import Base
from app.core.errors import NotFoundError, ValidationFailedError, storage_errors
from app.platform.security.identifiers import validate_identifier
from app.platform.security.models import TablePolicyRecord


DEFAULT_OWNER_COLUMN = "owner_id"
_EXTRA_SYSTEM_TABLES = frozenset({"alembic_version"})


class AccessPolicy(StrEnum):
    SYSTEM_ONLY = "system_only"
    OWNER_SCOPED = "owner_scoped"
    TEAM_PUBLIC = "team_public"


@dataclass(frozen=True, slots=True)
class TablePolicy:
    table: str
    policy: AccessPolicy
    owner_column: str = DEFAULT_OWNER_COLUMN

    @property
    def is_system(self) -> bool:
        return self.policy == AccessPolicy.SYSTEM_ONLY


def system_table_names() -> frozenset[str]:
    """Tables owned by this service's own models; never exposed as application data."""

    return frozenset(Base.metadata.tables) | _EXTRA_SYSTEM_TABLES


def is_system_table(table: str) -> bool:
    return table in system_table_names()


class PolicyResolver(Protocol):
    """Resolves the access policy of a table by name."""

    def resolve(self, table: str) -> TablePolicy:
        ...


class InMemoryPolicyResolver:
    """Static table policy map; unlisted tables are owner scoped."""

    def __init__(self, policies: dict[str, TablePolicy] | None = None) -> None:
        self._policies = dict(policies or {})

    def resolve(self, table: str) -> TablePolicy:
        if is_system_table(table):
            return TablePolicy(table=table, policy=AccessPolicy.SYSTEM_ONLY)
        return self._policies.get(table) or TablePolicy(table=table, policy=AccessPolicy.OWNER_SCOPED)


class DbPolicyResolver:
    """Reads ``platform_table_policy`` once per table for the lifetime of a request session."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self._resolved: dict[str, TablePolicy] = {}

    def resolve(self, table: str) -> TablePolicy:
        cached = self._resolved.get(table)
        if cached is not None:
            return cached

        if is_system_table(table):
            policy = TablePolicy(table=table, policy=AccessPolicy.SYSTEM_ONLY)
        else:
            with storage_errors("table_policy.resolve"):
                record = self._session.get(TablePolicyRecord, table)
            policy = _to_policy(table, record)

        self._resolved[table] = policy
        return policy


def _to_policy(table: str, record: TablePolicyRecord | None) -> TablePolicy:
    if record is None:
        return TablePolicy(table=table, policy=AccessPolicy.OWNER_SCOPED)
    try:
        access_policy = AccessPolicy(record.access_policy)
    except ValueError:
        # unknown values fail closed
        access_policy = AccessPolicy.SYSTEM_ONLY
    return TablePolicy(table=table, policy=access_policy, owner_column=record.owner_column or DEFAULT_OWNER_COLUMN)


def _require_owner_column(session: Session, table: str, column: str) -> None:
    """Tables that exist must carry the owner column; policies may be set before a table is created."""

    with storage_errors("table_policy.inspect"):
        inspector = inspect(session.connection())
        if not inspector.has_table(table):
            return
        columns = {info["name"] for info in inspector.get_columns(table)}
    if column not in columns:
        raise ValidationFailedError(
            f"table '{table}' has no owner column '{column}'",
            details={"table": table, "owner_column": column},
        )


class TablePolicyService:
    def list_policies(self, session: Session) -> list[TablePolicy]:
        with storage_errors("table_policy.list"):
            rows = session.scalars(select(TablePolicyRecord).order_by(TablePolicyRecord.table_name.asc())).all()
        return [_to_policy(row.table_name, row) for row in rows]

    def get_policy(self, session: Session, table: str) -> TablePolicy:
        validate_identifier(table, kind="table")
        return DbPolicyResolver(session).resolve(table)

    def set_policy(
        self,
        session: Session,
        table: str,
        access_policy: AccessPolicy,
        *,
        owner_column: str | None = None,
        actor_id: str,
    ) -> TablePolicy:
        validate_identifier(table, kind="table")
        if is_system_table(table):
            raise ValidationFailedError(f"system table '{table}' policy cannot be changed", details={"table": table})
        resolved_owner = validate_identifier(owner_column or DEFAULT_OWNER_COLUMN, kind="owner_column")
        if access_policy == AccessPolicy.OWNER_SCOPED:
            _require_owner_column(session, table, resolved_owner)

        with storage_errors("table_policy.set", session):
            record = session.get(TablePolicyRecord, table)
            before = None if record is None else {"access_policy": record.access_policy, "owner_column": record.owner_column}
            if record is None:
                record = TablePolicyRecord(table_name=table)
                session.add(record)
            record.access_policy = access_policy.value
            record.owner_column = resolved_owner
            record.updated_by = actor_id
            session.commit()

        audit.record(
            actor=actor_id,
            action="table_policy.updated",
            target_type="table",
            target_id=table,
            details={"before": before, "after": {"access_policy": access_policy.value, "owner_column": resolved_owner}},
        )
        return TablePolicy(table=table, policy=access_policy, owner_column=resolved_owner)

    def delete_policy(self, session: Session, table: str, *, actor_id: str) -> None:
        with storage_errors("table_policy.delete", session):
            record = session.get(TablePolicyRecord, table)
            if record is None:
                raise NotFoundError("table policy not found", details={"table": table})
            session.delete(record)
            session.commit()
        audit.record(actor=actor_id, action="table_policy.deleted", target_type="table", target_id=table, details=None)


table_policy_service = TablePolicyService()

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, assert_never

from sqlalchemy import Table
from sqlalchemy.sql import Select

from app import audit
from app.metrics import observe_policy_denial
from app.platform.security.context import Admin, APIKey, AuthContext, EndUser, principal_label
from app.platform.security.errors import AccessError
from app.platform.security.policies import AccessPolicy, PolicyResolver
from app.platform.security.scopes import Action, ScopeResource


USER_OBJECT_PREFIX = "users"


@dataclass(frozen=True, slots=True)
class RowFilter:
    """Equality predicate restricting rows to a single owner."""

    column: str
    value: str

    def apply(self, query: Select[Any], table: Table) -> Select[Any]:
        return query.where(table.c[self.column] == self.value)

    def matches(self, row: Mapping[str, Any]) -> bool:
        owner = row.get(self.column)
        return owner is not None and str(owner) == self.value


def authorize(ctx: AuthContext, table: str, action: Action, policies: PolicyResolver) -> RowFilter | None:
    """Decide whether ``ctx`` may perform ``action`` on ``table``.

    Returns the row filter to apply (``None`` means unrestricted) or raises
    ``AccessError``. No side effects: callers may evaluate speculatively.
    """

    match ctx:
        case Admin():
            return None
        case APIKey():
            policy = policies.resolve(table)
            resource = ScopeResource.ADMIN if policy.is_system else ScopeResource.DATA
            if not ctx.allows(resource, action):
                raise AccessError(f"Missing scope: {resource.value}:{action.value}", table=table, action=action.value)
            return None
        case EndUser():
            policy = policies.resolve(table)
            if policy.policy == AccessPolicy.SYSTEM_ONLY:
                raise AccessError(f"Table '{table}' is not accessible", table=table, action=action.value)
            if policy.policy == AccessPolicy.OWNER_SCOPED:
                return RowFilter(column=policy.owner_column, value=ctx.user_id)
            return None
        case _:
            assert_never(ctx)


def user_object_prefix(user_id: str) -> str:
    return f"{USER_OBJECT_PREFIX}/{user_id}/"


def authorize_object_key(ctx: AuthContext, key: str, action: Action) -> None:
    """Object-store counterpart of ``authorize``: end users only reach their own namespace."""

    match ctx:
        case Admin():
            return
        case APIKey():
            if not ctx.allows(ScopeResource.STORAGE, action):
                raise AccessError(f"Missing scope: storage:{action.value}", table=None, action=action.value)
        case EndUser():
            segments = key.split("/")
            if ".." in segments or not key.startswith(user_object_prefix(ctx.user_id)):
                raise AccessError("Object key is outside the caller's namespace", table=None, action=action.value)
        case _:
            assert_never(ctx)


def record_denial(ctx: AuthContext, table: str, action: Action) -> None:
    observe_policy_denial(table=table, action=action.value)
    audit.record(
        actor=principal_label(ctx),
        action="access.denied",
        target_type="table",
        target_id=table,
        details={"action": action.value},
    )

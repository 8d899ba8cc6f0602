from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session

from app.auth.dependencies import get_auth_context, require_admin
from app.core.database import get_db
from app.data.schemas import RowPage, TablePolicyRead, TablePolicyUpdate
from app.data.service import table_data_service
from app.platform.security.context import Admin, AuthContext
from app.platform.security.policies import DbPolicyResolver, TablePolicy, table_policy_service


router = APIRouter(prefix="/api/data", tags=["data"])
admin_router = APIRouter(prefix="/api/admin/tables", tags=["data.admin"])


def _policy_read(policy: TablePolicy) -> TablePolicyRead:
    return TablePolicyRead(table=policy.table, policy=policy.policy, owner_column=policy.owner_column, is_system=policy.is_system)


@router.get("/{table}", response_model=RowPage)
def list_rows(
    table: str,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> RowPage:
    rows, total = table_data_service.list_rows(db, ctx, table, DbPolicyResolver(db), limit=limit, offset=offset)
    return RowPage(data=rows, total=total, limit=limit, offset=offset)


@router.get("/{table}/{record_id}", response_model=dict[str, Any])
def get_row(
    table: str,
    record_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> dict[str, Any]:
    return table_data_service.get_row(db, ctx, table, record_id, DbPolicyResolver(db))


@router.post("/{table}", response_model=dict[str, Any], status_code=status.HTTP_201_CREATED)
def create_row(
    table: str,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> dict[str, Any]:
    return table_data_service.create_row(db, ctx, table, payload, DbPolicyResolver(db))


@router.patch("/{table}/{record_id}", response_model=dict[str, Any])
def update_row(
    table: str,
    record_id: str,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> dict[str, Any]:
    return table_data_service.update_row(db, ctx, table, record_id, payload, DbPolicyResolver(db))


@router.delete("/{table}/{record_id}", response_model=None)
def delete_row(
    table: str,
    record_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> dict[str, bool]:
    table_data_service.delete_row(db, ctx, table, record_id, DbPolicyResolver(db))
    return {"deleted": True}


@admin_router.get("/policies", response_model=list[TablePolicyRead])
def list_table_policies(db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> list[TablePolicyRead]:
    return [_policy_read(policy) for policy in table_policy_service.list_policies(db)]


@admin_router.get("/{table}/policy", response_model=TablePolicyRead)
def get_table_policy(table: str, db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> TablePolicyRead:
    return _policy_read(table_policy_service.get_policy(db, table))


@admin_router.put("/{table}/policy", response_model=TablePolicyRead)
def set_table_policy(
    table: str,
    payload: TablePolicyUpdate,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> TablePolicyRead:
    policy = table_policy_service.set_policy(
        db,
        table,
        payload.policy,
        owner_column=payload.owner_column,
        actor_id=admin.user_id,
    )
    return _policy_read(policy)


@admin_router.delete("/{table}/policy", response_model=None)
def delete_table_policy(table: str, db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> dict[str, bool]:
    table_policy_service.delete_policy(db, table, actor_id=admin.user_id)
    return {"deleted": True}

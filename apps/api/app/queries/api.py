from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.auth.dependencies import get_auth_context, get_runtime, require_admin
from app.core.database import get_db
from app.core.errors import ValidationFailedError
from app.platform.security.context import Admin, AuthContext
from app.platform.security.policies import DbPolicyResolver
from app.queries.engine import QueryResult
from app.queries.schemas import (
    CustomQueryCreate,
    CustomQueryRead,
    CustomQueryUpdate,
    QueryExecutionLogRead,
    QueryResultRead,
    QueryTestRequest,
)
from app.queries.service import custom_query_service
from app.runtime import Runtime


admin_router = APIRouter(prefix="/api/admin/custom-queries", tags=["queries.admin"])
router = APIRouter(prefix="/api/custom", tags=["queries"])


def _result_read(result: QueryResult) -> QueryResultRead:
    return QueryResultRead(
        data=result.data,
        execution_time_ms=result.execution_time_ms,
        cached=result.cached,
        parameters=result.parameters,
        row_count=result.row_count,
        rows_affected=result.rows_affected,
    )


@admin_router.get("", response_model=list[CustomQueryRead])
def list_custom_queries(db: Session = Depends(get_db), admin: Admin = Depends(require_admin)) -> list[CustomQueryRead]:
    return [CustomQueryRead.model_validate(row) for row in custom_query_service.list_queries(db)]


@admin_router.post("", response_model=CustomQueryRead, status_code=status.HTTP_201_CREATED)
def create_custom_query(
    payload: CustomQueryCreate,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> CustomQueryRead:
    return CustomQueryRead.model_validate(custom_query_service.create_query(db, payload, actor_id=admin.user_id))


@admin_router.get("/{query_id}", response_model=CustomQueryRead)
def get_custom_query(
    query_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> CustomQueryRead:
    return CustomQueryRead.model_validate(custom_query_service.get_query(db, query_id))


@admin_router.put("/{query_id}", response_model=CustomQueryRead)
def update_custom_query(
    query_id: uuid.UUID,
    payload: CustomQueryUpdate,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> CustomQueryRead:
    return CustomQueryRead.model_validate(custom_query_service.update_query(db, query_id, payload, actor_id=admin.user_id))


@admin_router.delete("/{query_id}", response_model=None)
def delete_custom_query(
    query_id: uuid.UUID,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> dict[str, bool]:
    custom_query_service.delete_query(db, query_id, actor_id=admin.user_id)
    return {"deleted": True}


@admin_router.post("/{query_id}/test", response_model=QueryResultRead)
def test_custom_query(
    query_id: uuid.UUID,
    payload: QueryTestRequest,
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> QueryResultRead:
    result = custom_query_service.test_query(
        db,
        runtime.query_engine,
        query_id,
        payload.parameters,
        admin,
        DbPolicyResolver(db),
    )
    return _result_read(result)


@admin_router.get("/{query_id}/logs", response_model=list[QueryExecutionLogRead])
def list_custom_query_logs(
    query_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    admin: Admin = Depends(require_admin),
) -> list[QueryExecutionLogRead]:
    return [QueryExecutionLogRead.model_validate(row) for row in custom_query_service.list_logs(db, query_id, limit=limit)]


async def request_parameters(request: Request) -> dict[str, Any]:
    """Query-string values for GET, the JSON object body for POST."""

    if request.method == "GET":
        return dict(request.query_params)
    body = await request.body()
    if not body:
        return {}
    try:
        params = await request.json()
    except ValueError as exc:
        raise ValidationFailedError("request body must be a JSON object") from exc
    if not isinstance(params, dict):
        raise ValidationFailedError("request body must be a JSON object")
    return params


@router.api_route("/{slug}", methods=["GET", "POST"], response_model=QueryResultRead)
def execute_custom_query(
    slug: str,
    request: Request,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    params: dict[str, Any] = Depends(request_parameters),
    runtime: Runtime = Depends(get_runtime),
) -> QueryResultRead:
    result = custom_query_service.execute_by_slug(
        db,
        runtime.query_engine,
        slug,
        request.method,
        params,
        ctx,
        DbPolicyResolver(db),
    )
    return _result_read(result)

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, assert_never

from fastapi.encoders import jsonable_encoder
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.errors import DisabledError, storage_errors
from app.metrics import observe_query_cache_hit, observe_query_cache_miss
from app.otel import get_tracer
from app.platform.security.context import Admin, APIKey, AuthContext, EndUser
from app.platform.security.errors import AccessError
from app.platform.security.policies import PolicyResolver
from app.platform.security.rls import authorize, record_denial
from app.platform.security.scopes import Action, ScopeResource
from app.queries.cache import QueryResultCache
from app.queries.compiler import OWNER_PARAMETER, CompiledQuery, cache_key, coerce_parameters


logger = logging.getLogger("app.queries")
tracer = get_tracer("app.queries")


@dataclass(slots=True)
class QueryResult:
    data: list[dict[str, Any]]
    execution_time_ms: int
    cached: bool
    parameters: dict[str, Any]
    rows_affected: int | None = None

    @property
    def row_count(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class ScopedStatement:
    sql: str
    bind: dict[str, Any] = field(default_factory=dict)
    owner_id: str | None = None


def _query_action(compiled: CompiledQuery) -> Action:
    return Action.WRITE if compiled.writes else Action.READ


def scope_statement(
    compiled: CompiledQuery,
    coerced: Mapping[str, Any],
    ctx: AuthContext,
    policies: PolicyResolver,
) -> ScopedStatement:
    """Apply the primary table's access policy to a compiled query.

    End users on owner-scoped tables get the template wrapped in an outer
    ``SELECT`` restricted to their own rows.
    """

    action = _query_action(compiled)
    bind = {name: coerced.get(name) for name in compiled.placeholders}
    table = compiled.primary_table

    if table is None:
        match ctx:
            case Admin():
                return ScopedStatement(sql=compiled.sql, bind=bind)
            case APIKey():
                if not ctx.allows(ScopeResource.ADMIN, action):
                    raise AccessError(f"Missing scope: admin:{action.value}")
                return ScopedStatement(sql=compiled.sql, bind=bind)
            case EndUser():
                raise AccessError("query is not available to end users")
            case _:
                assert_never(ctx)

    try:
        row_filter = authorize(ctx, table, action, policies)
    except AccessError:
        record_denial(ctx, table, action)
        raise
    if row_filter is None:
        return ScopedStatement(sql=compiled.sql, bind=bind)

    if action != Action.READ:
        record_denial(ctx, table, action)
        raise AccessError(f"Table '{table}' cannot be written by this query", table=table, action=action.value)

    bind[OWNER_PARAMETER] = row_filter.value
    sql = f'SELECT * FROM ({compiled.sql}) AS scoped WHERE scoped."{row_filter.column}" = :{OWNER_PARAMETER}'
    return ScopedStatement(sql=sql, bind=bind, owner_id=row_filter.value)


class CustomQueryEngine:
    def __init__(self, cache: QueryResultCache) -> None:
        self._cache = cache

    def execute(
        self,
        session: Session,
        compiled: CompiledQuery,
        params: Mapping[str, Any],
        ctx: AuthContext,
        policies: PolicyResolver,
        *,
        use_cache: bool = True,
    ) -> QueryResult:
        if not compiled.is_enabled:
            raise DisabledError(f"custom query '{compiled.slug}' is disabled")

        coerced = coerce_parameters(compiled, params)
        statement = scope_statement(compiled, coerced, ctx, policies)

        key = cache_key(compiled.query_id, coerced, owner_id=statement.owner_id)
        caching = use_cache and compiled.cacheable
        if caching:
            hit = self._cache.get(key)
            if hit is not None:
                observe_query_cache_hit()
                return QueryResult(data=hit, execution_time_ms=0, cached=True, parameters=coerced)
            observe_query_cache_miss()

        started = time.perf_counter()
        with tracer.start_as_current_span("custom_query.execute") as span:
            span.set_attribute("query.slug", compiled.slug)
            span.set_attribute("query.writes", compiled.writes)
            rows, rows_affected = self._run(session, compiled, statement)
            span.set_attribute("query.row_count", len(rows))
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        if caching:
            self._cache.put(key, rows, compiled.cache_ttl_seconds)
        return QueryResult(
            data=rows,
            execution_time_ms=elapsed_ms,
            cached=False,
            parameters=coerced,
            rows_affected=rows_affected,
        )

    def _run(
        self,
        session: Session,
        compiled: CompiledQuery,
        statement: ScopedStatement,
    ) -> tuple[list[dict[str, Any]], int | None]:
        with storage_errors(f"custom_query.{compiled.slug}", session):
            result = session.execute(text(statement.sql), statement.bind)
            rows: list[dict[str, Any]] = []
            if result.returns_rows:
                rows = jsonable_encoder([dict(row) for row in result.mappings()])
            rows_affected = None if result.returns_rows else result.rowcount
            if compiled.writes:
                session.commit()
        return rows, rows_affected

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.core.errors import ConflictError, MethodNotAllowedError, NotFoundError, ServiceError, StorageError, storage_errors
from app.metrics import observe_query_execution
from app.platform.security.context import AuthContext, principal_label
from app.platform.security.policies import PolicyResolver
from app.queries.compiler import CompiledQuery, compile_query, derive_http_method, derive_is_readonly, normalize_sql
from app.queries.engine import CustomQueryEngine, QueryResult
from app.queries.models import CustomQuery, QueryExecutionLog
from app.queries.schemas import CustomQueryCreate, CustomQueryUpdate


logger = logging.getLogger("app.queries")


class CustomQueryService:
    """Definition store for custom queries plus execution by slug."""

    def list_queries(self, session: Session) -> list[CustomQuery]:
        with storage_errors("custom_query.list"):
            return list(session.scalars(select(CustomQuery).order_by(CustomQuery.name.asc())).all())

    def get_query(self, session: Session, query_id: uuid.UUID) -> CustomQuery:
        with storage_errors("custom_query.get"):
            record = session.get(CustomQuery, query_id)
        if record is None:
            raise NotFoundError("custom query not found")
        return record

    def get_by_slug(self, session: Session, slug: str) -> CustomQuery:
        with storage_errors("custom_query.get_by_slug"):
            record = session.scalar(select(CustomQuery).where(CustomQuery.slug == slug))
        if record is None:
            raise NotFoundError("custom query not found")
        return record

    def _ensure_slug_available(self, session: Session, slug: str, *, exclude_id: uuid.UUID | None = None) -> None:
        stmt = select(CustomQuery.id).where(CustomQuery.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(CustomQuery.id != exclude_id)
        with storage_errors("custom_query.slug_check"):
            taken = session.scalar(stmt)
        if taken is not None:
            raise ConflictError("a query with this slug already exists", details={"slug": slug})

    def _derive(self, record: CustomQuery) -> CompiledQuery:
        # validates the template before anything is persisted
        compiled = compile_query(record)
        record.sql_template = normalize_sql(record.sql_template)
        record.http_method = derive_http_method(record.sql_template)
        record.is_readonly = derive_is_readonly(record.sql_template)
        return compiled

    def _commit(self, session: Session, operation: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("a query with this slug already exists") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("storage.error", extra={"operation": operation, "error": str(exc)[:500]})
            raise StorageError() from exc

    def create_query(self, session: Session, dto: CustomQueryCreate, *, actor_id: str) -> CustomQuery:
        ttl = dto.cache_ttl_seconds
        record = CustomQuery(
            id=uuid.uuid4(),
            slug=dto.slug,
            name=dto.name.strip(),
            description=dto.description or None,
            sql_template=dto.sql_template,
            parameters=[param.model_dump(mode="json", exclude_none=True) for param in dto.parameters],
            cache_ttl_seconds=get_settings().query_default_cache_ttl_seconds if ttl is None else ttl,
            is_enabled=dto.is_enabled,
            allow_write=dto.allow_write,
            created_by=actor_id,
        )
        self._derive(record)
        self._ensure_slug_available(session, dto.slug)

        session.add(record)
        self._commit(session, "custom_query.create")
        session.refresh(record)
        audit.record(
            actor=actor_id,
            action="custom_query.created",
            target_type="custom_query",
            target_id=str(record.id),
            details={"slug": record.slug, "allow_write": record.allow_write},
        )
        return record

    def update_query(self, session: Session, query_id: uuid.UUID, dto: CustomQueryUpdate, *, actor_id: str) -> CustomQuery:
        record = self.get_query(session, query_id)
        changes = dto.model_dump(exclude_unset=True)
        if "parameters" in changes and dto.parameters is not None:
            changes["parameters"] = [param.model_dump(mode="json", exclude_none=True) for param in dto.parameters]
        if changes.get("slug") and changes["slug"] != record.slug:
            self._ensure_slug_available(session, changes["slug"], exclude_id=record.id)

        for field_name, value in changes.items():
            if value is None and field_name not in {"description"}:
                continue
            setattr(record, field_name, value)
        try:
            self._derive(record)
        except ServiceError:
            session.rollback()
            raise

        self._commit(session, "custom_query.update")
        session.refresh(record)
        audit.record(
            actor=actor_id,
            action="custom_query.updated",
            target_type="custom_query",
            target_id=str(record.id),
            details={"fields": sorted(changes)},
        )
        return record

    def delete_query(self, session: Session, query_id: uuid.UUID, *, actor_id: str) -> None:
        record = self.get_query(session, query_id)
        with storage_errors("custom_query.delete", session):
            session.delete(record)
            session.commit()
        audit.record(actor=actor_id, action="custom_query.deleted", target_type="custom_query", target_id=str(query_id), details=None)

    def execute_by_slug(
        self,
        session: Session,
        engine: CustomQueryEngine,
        slug: str,
        method: str,
        params: Mapping[str, Any],
        ctx: AuthContext,
        policies: PolicyResolver,
    ) -> QueryResult:
        record = self.get_by_slug(session, slug)
        compiled = compile_query(record)
        if compiled.is_enabled and method.upper() != compiled.http_method:
            raise MethodNotAllowedError(
                f"method not allowed; this endpoint expects {compiled.http_method}",
                details={"allowed": compiled.http_method},
            )
        return self._execute(session, engine, compiled, params, ctx, policies, use_cache=True)

    def test_query(
        self,
        session: Session,
        engine: CustomQueryEngine,
        query_id: uuid.UUID,
        params: Mapping[str, Any],
        ctx: AuthContext,
        policies: PolicyResolver,
    ) -> QueryResult:
        compiled = compile_query(self.get_query(session, query_id))
        return self._execute(session, engine, compiled, params, ctx, policies, use_cache=False)

    def _execute(
        self,
        session: Session,
        engine: CustomQueryEngine,
        compiled: CompiledQuery,
        params: Mapping[str, Any],
        ctx: AuthContext,
        policies: PolicyResolver,
        *,
        use_cache: bool,
    ) -> QueryResult:
        started = time.perf_counter()
        try:
            result = engine.execute(session, compiled, params, ctx, policies, use_cache=use_cache)
        except ServiceError as exc:
            elapsed = time.perf_counter() - started
            observe_query_execution(compiled.slug, exc.kind.value, elapsed)
            cause = exc.__cause__ or exc
            self._log_execution(
                session,
                compiled,
                ctx,
                params=dict(params),
                execution_time_ms=int(elapsed * 1000),
                row_count=0,
                cached=False,
                error=str(cause)[:500],
            )
            raise

        observe_query_execution(compiled.slug, "cached" if result.cached else "ok", time.perf_counter() - started)
        logger.info(
            "query.executed",
            extra={
                "query_id": compiled.query_id,
                "slug": compiled.slug,
                "cached": result.cached,
                "row_count": result.row_count,
                "duration_ms": result.execution_time_ms,
                "principal": principal_label(ctx),
            },
        )
        self._log_execution(
            session,
            compiled,
            ctx,
            params=result.parameters,
            execution_time_ms=result.execution_time_ms,
            row_count=result.row_count,
            cached=result.cached,
            error=None,
        )
        return result

    def _log_execution(
        self,
        session: Session,
        compiled: CompiledQuery,
        ctx: AuthContext,
        *,
        params: dict[str, Any],
        execution_time_ms: int,
        row_count: int,
        cached: bool,
        error: str | None,
    ) -> None:
        try:
            session.add(
                QueryExecutionLog(
                    query_id=uuid.UUID(compiled.query_id),
                    principal=principal_label(ctx),
                    execution_time_ms=execution_time_ms,
                    row_count=row_count,
                    cached=cached,
                    parameters=_json_safe(params),
                    error=error,
                )
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("query.log_failed", extra={"query_id": compiled.query_id, "error": str(exc)[:500]})

    def list_logs(self, session: Session, query_id: uuid.UUID, *, limit: int = 50) -> list[QueryExecutionLog]:
        self.get_query(session, query_id)
        with storage_errors("custom_query.logs"):
            return list(
                session.scalars(
                    select(QueryExecutionLog)
                    .where(QueryExecutionLog.query_id == query_id)
                    .order_by(QueryExecutionLog.executed_at.desc())
                    .limit(limit)
                ).all()
            )


def _json_safe(params: dict[str, Any]) -> dict[str, Any]:
    return {key: value if isinstance(value, (str, int, float, bool)) or value is None else str(value) for key, value in params.items()}


custom_query_service = CustomQueryService()

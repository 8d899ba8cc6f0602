from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import Column, MetaData, Table, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, NotFoundError, StorageError, ValidationFailedError, storage_errors
from app.core.events import EVENT_QUEUED, event_bus
from app.hooks.schemas import HookEventType
from app.hooks.service import hook_service
from app.metrics import observe_event_queued
from app.platform.security.context import AuthContext
from app.platform.security.errors import AccessError
from app.platform.security.identifiers import validate_identifier
from app.platform.security.policies import PolicyResolver, is_system_table
from app.platform.security.rls import RowFilter, authorize, record_denial
from app.platform.security.scopes import Action


logger = logging.getLogger("app.data")

ID_COLUMN = "id"


class TableDataService:
    """Row access to application tables under their access policy.

    Every mutation appends its hook events in the same transaction, so an event
    exists exactly when the mutation committed.
    """

    def _table(self, session: Session, name: str) -> Table:
        validate_identifier(name, kind="table")
        with storage_errors("data.reflect"):
            try:
                table = Table(name, MetaData(), autoload_with=session.connection())
            except NoSuchTableError as exc:
                raise NotFoundError(f"table '{name}' not found", details={"table": name}) from exc
        if ID_COLUMN not in table.c:
            raise ValidationFailedError(f"table '{name}' has no '{ID_COLUMN}' column", details={"table": name})
        return table

    def _authorize(self, ctx: AuthContext, table: str, action: Action, policies: PolicyResolver) -> RowFilter | None:
        validate_identifier(table, kind="table")
        try:
            if action != Action.READ and is_system_table(table):
                raise AccessError(f"Table '{table}' is read-only", table=table, action=action.value)
            return authorize(ctx, table, action, policies)
        except AccessError:
            record_denial(ctx, table, action)
            raise

    def _scoped_table(
        self,
        session: Session,
        ctx: AuthContext,
        table_name: str,
        action: Action,
        policies: PolicyResolver,
    ) -> tuple[Table, RowFilter | None]:
        row_filter = self._authorize(ctx, table_name, action, policies)
        table = self._table(session, table_name)
        if row_filter is not None and row_filter.column not in table.c:
            # owner scoped without an owner column: nothing is provably the caller's
            record_denial(ctx, table_name, action)
            raise AccessError(
                f"Table '{table_name}' has no owner column '{row_filter.column}'",
                table=table_name,
                action=action.value,
            )
        return table, row_filter

    @staticmethod
    def _record_key(table: Table, record_id: str) -> Any:
        column: Column[Any] = table.c[ID_COLUMN]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return record_id
        if python_type is str:
            return record_id
        try:
            return python_type(record_id)
        except (TypeError, ValueError) as exc:
            raise NotFoundError("record not found") from exc

    @staticmethod
    def _check_columns(table: Table, values: Mapping[str, Any]) -> None:
        unknown = sorted(set(values) - set(table.c.keys()))
        if unknown:
            raise ValidationFailedError("unknown columns", details={"columns": unknown})

    def _fetch(self, session: Session, table: Table, key: Any, row_filter: RowFilter | None) -> dict[str, Any] | None:
        stmt = select(table).where(table.c[ID_COLUMN] == key)
        if row_filter is not None:
            stmt = row_filter.apply(stmt, table)
        with storage_errors("data.get"):
            row = session.execute(stmt).mappings().first()
        return None if row is None else dict(row)

    def list_rows(
        self,
        session: Session,
        ctx: AuthContext,
        table_name: str,
        policies: PolicyResolver,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        table, row_filter = self._scoped_table(session, ctx, table_name, Action.READ, policies)

        stmt = select(table)
        count_stmt = select(func.count()).select_from(table)
        if row_filter is not None:
            stmt = row_filter.apply(stmt, table)
            count_stmt = row_filter.apply(count_stmt, table)
        with storage_errors("data.list"):
            total = int(session.scalar(count_stmt) or 0)
            rows = session.execute(stmt.order_by(table.c[ID_COLUMN].asc()).limit(limit).offset(offset)).mappings().all()
        return [jsonable_encoder(dict(row)) for row in rows], total

    def get_row(self, session: Session, ctx: AuthContext, table_name: str, record_id: str, policies: PolicyResolver) -> dict[str, Any]:
        table, row_filter = self._scoped_table(session, ctx, table_name, Action.READ, policies)
        row = self._fetch(session, table, self._record_key(table, record_id), row_filter)
        if row is None:
            raise NotFoundError("record not found")
        return jsonable_encoder(row)

    @contextmanager
    def _mutation(self, session: Session, operation: str, table_name: str) -> Iterator[None]:
        """Commit the block as one transaction; constraint violations become conflicts."""

        try:
            yield
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("row violates a table constraint", details={"table": table_name}) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("storage.error", extra={"operation": operation, "table": table_name, "error": str(exc)[:500]})
            raise StorageError() from exc
        except Exception:
            session.rollback()
            raise

    def create_row(
        self,
        session: Session,
        ctx: AuthContext,
        table_name: str,
        values: Mapping[str, Any],
        policies: PolicyResolver,
    ) -> dict[str, Any]:
        table, row_filter = self._scoped_table(session, ctx, table_name, Action.WRITE, policies)
        data = dict(values)
        if row_filter is not None:
            supplied = data.get(row_filter.column)
            if supplied is not None and str(supplied) != row_filter.value:
                raise AccessError("cannot create rows owned by another user", table=table_name, action=Action.WRITE.value)
            data[row_filter.column] = row_filter.value
        self._check_columns(table, data)

        with self._mutation(session, "data.create", table_name):
            result = session.execute(insert(table).values(**data))
            key = data.get(ID_COLUMN)
            if key is None and result.inserted_primary_key:
                key = result.inserted_primary_key[0]
            row = self._fetch(session, table, key, None)
            if row is None:
                raise NotFoundError("created record could not be read back")
            events = hook_service.record_mutation(session, table_name, HookEventType.INSERT, str(row[ID_COLUMN]), row)
        self._announce(table_name, HookEventType.INSERT, len(events))
        return jsonable_encoder(row)

    def update_row(
        self,
        session: Session,
        ctx: AuthContext,
        table_name: str,
        record_id: str,
        values: Mapping[str, Any],
        policies: PolicyResolver,
    ) -> dict[str, Any]:
        table, row_filter = self._scoped_table(session, ctx, table_name, Action.WRITE, policies)
        data = {key: value for key, value in values.items() if key != ID_COLUMN}
        if not data:
            raise ValidationFailedError("no columns to update")
        self._check_columns(table, data)
        if row_filter is not None and row_filter.column in data and str(data[row_filter.column]) != row_filter.value:
            raise AccessError("row ownership cannot be reassigned", table=table_name, action=Action.WRITE.value)

        key = self._record_key(table, record_id)
        if self._fetch(session, table, key, row_filter) is None:
            raise NotFoundError("record not found")

        stmt = update(table).where(table.c[ID_COLUMN] == key).values(**data)
        if row_filter is not None:
            stmt = stmt.where(table.c[row_filter.column] == row_filter.value)
        with self._mutation(session, "data.update", table_name):
            session.execute(stmt)
            row = self._fetch(session, table, key, None) or {}
            events = hook_service.record_mutation(session, table_name, HookEventType.UPDATE, record_id, row)
        self._announce(table_name, HookEventType.UPDATE, len(events))
        return jsonable_encoder(row)

    def delete_row(self, session: Session, ctx: AuthContext, table_name: str, record_id: str, policies: PolicyResolver) -> None:
        table, row_filter = self._scoped_table(session, ctx, table_name, Action.DELETE, policies)
        key = self._record_key(table, record_id)
        row = self._fetch(session, table, key, row_filter)
        if row is None:
            raise NotFoundError("record not found")

        stmt = delete(table).where(table.c[ID_COLUMN] == key)
        if row_filter is not None:
            stmt = stmt.where(table.c[row_filter.column] == row_filter.value)
        with self._mutation(session, "data.delete", table_name):
            session.execute(stmt)
            events = hook_service.record_mutation(session, table_name, HookEventType.DELETE, record_id, row)
        self._announce(table_name, HookEventType.DELETE, len(events))

    @staticmethod
    def _announce(table_name: str, event_type: HookEventType, queued: int) -> None:
        if not queued:
            return
        observe_event_queued(table_name, event_type.value)
        logger.info("data.events_queued", extra={"table": table_name, "event_type": event_type.value, "row_count": queued})
        event_bus.publish(EVENT_QUEUED, {"table": table_name, "event_type": event_type.value, "count": queued})


table_data_service = TableDataService()

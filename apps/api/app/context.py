from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def new_correlation_id(prefix: str | None = None) -> str:
    value = uuid.uuid4().hex
    return f"{prefix}-{value[:16]}" if prefix else value


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Bind a fresh id for background work; work started from a request keeps the request's id."""

    current = get_correlation_id()
    if current:
        yield current
        return
    token = set_correlation_id(new_correlation_id(prefix))
    try:
        yield correlation_id_var.get() or ""
    finally:
        reset_correlation_id(token)

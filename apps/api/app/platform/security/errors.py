from __future__ import annotations

from app.core.errors import ErrorKind, ServiceError


class AuthError(ServiceError):
    """Credential missing or rejected; ``kind`` tells which."""

    default_kind = ErrorKind.UNAUTHENTICATED


class AccessError(ServiceError):
    """Authenticated caller denied by table policy or scope."""

    default_kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str, *, table: str | None = None, action: str | None = None) -> None:
        super().__init__(message, details={"table": table, "action": action} if table else None)
        self.table = table
        self.action = action

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from app.platform.security.identifiers import IDENTIFIER_RE
from app.platform.security.policies import AccessPolicy


class RowPage(BaseModel):
    data: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


class TablePolicyRead(BaseModel):
    table: str
    policy: AccessPolicy
    owner_column: str
    is_system: bool


class TablePolicyUpdate(BaseModel):
    policy: AccessPolicy
    owner_column: str | None = Field(default=None, max_length=64, pattern=IDENTIFIER_RE.pattern)

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.queries.compiler import ParameterType


SLUG_PATTERN = r"^[a-z0-9_-]+$"


class QueryParameter(BaseModel):
    name: str = Field(pattern=r"^[a-zA-Z_][a-zA-Z0-9_]*$", max_length=64)
    type: ParameterType = ParameterType.STRING
    required: bool = False
    description: str | None = None
    default: str | int | float | bool | None = None


class CustomQueryCreate(BaseModel):
    slug: str = Field(min_length=1, max_length=100, pattern=SLUG_PATTERN)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    sql_template: str = Field(min_length=1)
    parameters: list[QueryParameter] = Field(default_factory=list)
    cache_ttl_seconds: int | None = Field(default=None, ge=0)
    is_enabled: bool = True
    allow_write: bool = False


class CustomQueryUpdate(BaseModel):
    slug: str | None = Field(default=None, min_length=1, max_length=100, pattern=SLUG_PATTERN)
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    sql_template: str | None = Field(default=None, min_length=1)
    parameters: list[QueryParameter] | None = None
    cache_ttl_seconds: int | None = Field(default=None, ge=0)
    is_enabled: bool | None = None
    allow_write: bool | None = None


class CustomQueryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    slug: str
    name: str
    description: str | None
    sql_template: str
    parameters: list[QueryParameter]
    http_method: str
    is_readonly: bool
    allow_write: bool
    cache_ttl_seconds: int
    is_enabled: bool
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class QueryTestRequest(BaseModel):
    parameters: dict[str, Any] = Field(default_factory=dict)


class QueryResultRead(BaseModel):
    data: list[dict[str, Any]]
    execution_time_ms: int
    cached: bool
    parameters: dict[str, Any]
    row_count: int
    rows_affected: int | None = None


class QueryExecutionLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    query_id: UUID
    principal: str | None
    execution_time_ms: int
    row_count: int
    cached: bool
    parameters: dict[str, Any] | None
    error: str | None
    executed_at: datetime

"""Static analysis and parameter handling for admin-authored SQL templates.

Templates use SQLAlchemy ``text()`` bind syntax (``:name``). Everything here works on
the template text only; nothing is executed and nothing is interpolated into SQL.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import StrEnum
from typing import Any

from app.core.errors import ErrorKind, ParameterError, ValidationFailedError


# same rule SQLAlchemy applies to text(): skips "::" casts and escaped "\:"
PLACEHOLDER_RE = re.compile(r"(?<![:\w\\]):(\w+)(?!:)")
PARAMETER_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
OWNER_PARAMETER = "_owner_id"
CACHE_KEY_PREFIX = "custom_query"

_LITERALS_AND_COMMENTS_RE = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"|--[^\n]*|/\*.*?\*/", re.DOTALL)
_STRINGS_AND_COMMENTS_RE = re.compile(r"'(?:[^']|'')*'|--[^\n]*|/\*.*?\*/", re.DOTALL)
_WRITE_VERB_RE = re.compile(
    r"\b(insert|update|delete|drop|create|alter|truncate|attach|detach|grant|revoke)\b|^\s*(replace)\s+into\b",
    re.IGNORECASE,
)
_PRIMARY_TABLE_RE = re.compile(r"\b(?:from|into|update)\s+[\"`\[]?([A-Za-z_]\w*)", re.IGNORECASE)


class ParameterType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"


@dataclass(frozen=True, slots=True)
class ParameterSpec:
    name: str
    type: ParameterType = ParameterType.STRING
    required: bool = False
    default: Any = None


@dataclass(frozen=True, slots=True)
class CompiledQuery:
    query_id: str
    slug: str
    sql: str
    parameters: tuple[ParameterSpec, ...]
    placeholders: tuple[str, ...]
    http_method: str
    is_readonly: bool
    allow_write: bool
    primary_table: str | None
    cache_ttl_seconds: int
    is_enabled: bool

    @property
    def writes(self) -> bool:
        return self.allow_write and not self.is_readonly

    @property
    def cacheable(self) -> bool:
        return self.cache_ttl_seconds > 0 and not self.writes


def normalize_sql(sql: str) -> str:
    normalized = sql.strip()
    while normalized.endswith(";"):
        normalized = normalized[:-1].rstrip()
    return normalized


def strip_literals_and_comments(sql: str) -> str:
    return _LITERALS_AND_COMMENTS_RE.sub(" ", sql)


def extract_placeholders(sql: str) -> tuple[str, ...]:
    """Distinct ``:name`` placeholders in order of first occurrence.

    Scans the raw template exactly as ``text()`` binds it, so a ``:name`` inside a
    string literal is still a placeholder; write ``\\:name`` for a literal colon.
    """

    seen: dict[str, None] = {}
    for match in PLACEHOLDER_RE.finditer(sql):
        seen.setdefault(match.group(1), None)
    return tuple(seen)


def derive_http_method(sql: str) -> str:
    return "GET" if sql.strip().lower().startswith("select") else "POST"


def derive_is_readonly(sql: str) -> bool:
    lowered = sql.strip().lower()
    return lowered.startswith("select") or "pragma" in lowered


def find_write_verbs(sql: str) -> list[str]:
    verbs: dict[str, None] = {}
    for match in _WRITE_VERB_RE.finditer(strip_literals_and_comments(sql)):
        verbs.setdefault((match.group(1) or match.group(2)).lower(), None)
    return list(verbs)


def find_primary_table(sql: str) -> str | None:
    # quoted identifiers stay; only string literals and comments are blanked
    match = _PRIMARY_TABLE_RE.search(_STRINGS_AND_COMMENTS_RE.sub(" ", sql))
    return match.group(1) if match else None


def parameter_specs(raw: Sequence[Mapping[str, Any]]) -> tuple[ParameterSpec, ...]:
    specs: list[ParameterSpec] = []
    for item in raw:
        try:
            param_type = ParameterType(item.get("type") or ParameterType.STRING)
        except ValueError as exc:
            raise ValidationFailedError(
                f"parameter '{item.get('name')}' has unknown type '{item.get('type')}'",
                details={"parameters": [item.get("name")]},
            ) from exc
        specs.append(
            ParameterSpec(
                name=str(item.get("name") or ""),
                type=param_type,
                required=bool(item.get("required", False)),
                default=item.get("default"),
            )
        )
    return tuple(specs)


def validate_template(sql: str, parameters: Sequence[ParameterSpec], *, allow_write: bool) -> tuple[str, ...]:
    """Reject unsafe or inconsistent templates; return the placeholder names."""

    if not sql:
        raise ValidationFailedError("SQL template is empty")

    bare = strip_literals_and_comments(sql)
    if ";" in bare:
        raise ValidationFailedError("SQL template must contain a single statement")

    verbs = find_write_verbs(sql)
    if verbs and not allow_write:
        raise ValidationFailedError(
            f"write statements are not allowed without allow_write: {', '.join(v.upper() for v in verbs)}",
            details={"verbs": verbs},
        )
    lowered = bare.strip().lower()
    if not allow_write and not (lowered.startswith("select") or lowered.startswith("pragma")):
        raise ValidationFailedError("only SELECT or PRAGMA statements are allowed without allow_write")

    names = [spec.name for spec in parameters]
    invalid = [name for name in names if not PARAMETER_NAME_RE.match(name)]
    if invalid:
        raise ValidationFailedError(f"invalid parameter names: {', '.join(invalid)}", details={"parameters": invalid})
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValidationFailedError(
            f"duplicate parameter declarations: {', '.join(duplicates)}", details={"parameters": duplicates}
        )

    placeholders = extract_placeholders(sql)
    if OWNER_PARAMETER in placeholders or OWNER_PARAMETER in names:
        raise ValidationFailedError(f"'{OWNER_PARAMETER}' is a reserved parameter name", details={"parameters": [OWNER_PARAMETER]})

    undeclared = [name for name in placeholders if name not in names]
    if undeclared:
        raise ValidationFailedError(
            f"SQL template contains undeclared parameters: {', '.join(undeclared)}",
            details={"parameters": undeclared},
        )
    unused = [spec.name for spec in parameters if spec.required and spec.name not in placeholders]
    if unused:
        raise ValidationFailedError(
            f"required parameters missing from SQL template: {', '.join(unused)}",
            details={"parameters": unused},
        )
    return placeholders


def compile_query(definition: Any) -> CompiledQuery:
    """Compile a stored (or draft) ``CustomQuery`` row."""

    sql = normalize_sql(definition.sql_template or "")
    specs = parameter_specs(definition.parameters or [])
    allow_write = bool(definition.allow_write)
    placeholders = validate_template(sql, specs, allow_write=allow_write)
    return CompiledQuery(
        query_id=str(definition.id),
        slug=definition.slug,
        sql=sql,
        parameters=specs,
        placeholders=placeholders,
        http_method=derive_http_method(sql),
        is_readonly=derive_is_readonly(sql),
        allow_write=allow_write,
        primary_table=find_primary_table(sql),
        cache_ttl_seconds=max(int(definition.cache_ttl_seconds or 0), 0),
        is_enabled=bool(definition.is_enabled),
    )


def _mismatch(spec: ParameterSpec, expected: str) -> ParameterError:
    return ParameterError(spec.name, f"parameter '{spec.name}' must be {expected}", kind=ErrorKind.TYPE_MISMATCH)


def coerce_value(spec: ParameterSpec, value: Any) -> Any:
    match spec.type:
        case ParameterType.NUMBER:
            if isinstance(value, bool):
                raise _mismatch(spec, "a number")
            if isinstance(value, (int, float)):
                number: int | float = value
            elif isinstance(value, str):
                text = value.strip()
                try:
                    number = int(text)
                except ValueError:
                    try:
                        number = float(text)
                    except ValueError:
                        raise _mismatch(spec, "a number") from None
            else:
                raise _mismatch(spec, "a number")
            if isinstance(number, float) and not math.isfinite(number):
                raise _mismatch(spec, "a finite number")
            return number
        case ParameterType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
                return value.strip().lower() == "true"
            raise _mismatch(spec, "true or false")
        case ParameterType.DATE:
            if isinstance(value, datetime):
                parsed = value
            elif isinstance(value, date):
                parsed = datetime(value.year, value.month, value.day)
            elif isinstance(value, str):
                try:
                    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
                except ValueError:
                    raise _mismatch(spec, "an ISO-8601 date") from None
            else:
                raise _mismatch(spec, "an ISO-8601 date")
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc).isoformat()
        case ParameterType.STRING:
            if isinstance(value, str):
                return value
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return str(value)
            raise _mismatch(spec, "a string")


def coerce_parameters(compiled: CompiledQuery, supplied: Mapping[str, Any]) -> dict[str, Any]:
    """Typed values for every declared parameter; undeclared input is ignored."""

    coerced: dict[str, Any] = {}
    for spec in compiled.parameters:
        value = supplied.get(spec.name)
        if value is None:
            value = spec.default
        if value is None:
            if spec.required:
                raise ParameterError(spec.name, f"required parameter '{spec.name}' is missing")
            coerced[spec.name] = None
            continue
        coerced[spec.name] = coerce_value(spec, value)
    return coerced


def canonical_json(value: Mapping[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def cache_key(query_id: str, parameters: Mapping[str, Any], *, owner_id: str | None = None) -> str:
    material = dict(parameters)
    if owner_id is not None:
        material[OWNER_PARAMETER] = owner_id
    return f"{CACHE_KEY_PREFIX}:{query_id}:{canonical_json(material)}"

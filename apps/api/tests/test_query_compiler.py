from __future__ import annotations

import uuid
from types import SimpleNamespace
from typing import Any

import pytest

from app.core.errors import ErrorKind, ParameterError, ValidationFailedError
from app.queries.compiler import (
    CompiledQuery,
    ParameterSpec,
    ParameterType,
    cache_key,
    coerce_parameters,
    compile_query,
    extract_placeholders,
    find_primary_table,
)


def _definition(sql: str, parameters: list[dict[str, Any]] | None = None, **overrides: Any) -> SimpleNamespace:
    values: dict[str, Any] = {
        "id": uuid.UUID("00000000-0000-0000-0000-000000000001"),
        "slug": "sample",
        "sql_template": sql,
        "parameters": parameters or [],
        "allow_write": False,
        "cache_ttl_seconds": 60,
        "is_enabled": True,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_select_template_compiles_to_readonly_get() -> None:
    compiled = compile_query(
        _definition(
            "SELECT * FROM users WHERE id = :user_id AND status = :status;",
            [{"name": "user_id", "type": "string", "required": True}, {"name": "status", "type": "string"}],
        )
    )

    assert set(compiled.placeholders) == {"user_id", "status"}
    assert compiled.http_method == "GET"
    assert compiled.is_readonly is True
    assert compiled.writes is False
    assert compiled.primary_table == "users"
    assert compiled.sql.endswith(":status")


def test_placeholder_extraction_is_idempotent_and_skips_casts() -> None:
    sql = "SELECT created_at::date FROM events WHERE kind = :kind OR parent = :kind AND x = :other"

    first = extract_placeholders(sql)

    assert first == ("kind", "other")
    assert extract_placeholders(sql) == first


def test_write_verbs_are_rejected_without_allow_write() -> None:
    with pytest.raises(ValidationFailedError, match="DELETE") as exc_info:
        compile_query(_definition("DELETE FROM orders WHERE id = :id", [{"name": "id", "type": "number", "required": True}]))

    assert exc_info.value.details == {"verbs": ["delete"]}


def test_write_verbs_hidden_in_a_select_are_rejected() -> None:
    with pytest.raises(ValidationFailedError):
        compile_query(_definition("SELECT * FROM orders WHERE id IN (SELECT id FROM x); DROP TABLE orders"))


def test_verbs_inside_string_literals_are_ignored() -> None:
    compiled = compile_query(_definition("SELECT * FROM audit WHERE note = 'delete me' -- update later"))

    assert compiled.is_readonly is True


def test_allow_write_templates_compile_to_post() -> None:
    compiled = compile_query(
        _definition(
            "UPDATE orders SET status = :status WHERE id = :id",
            [{"name": "status", "required": True}, {"name": "id", "type": "number", "required": True}],
            allow_write=True,
        )
    )

    assert compiled.http_method == "POST"
    assert compiled.writes is True
    assert compiled.cacheable is False
    assert compiled.primary_table == "orders"


def test_multiple_statements_are_rejected_even_with_allow_write() -> None:
    with pytest.raises(ValidationFailedError, match="single statement"):
        compile_query(_definition("UPDATE a SET x = 1; UPDATE b SET y = 2", allow_write=True))


def test_undeclared_placeholders_are_rejected() -> None:
    with pytest.raises(ValidationFailedError) as exc_info:
        compile_query(_definition("SELECT * FROM users WHERE id = :user_id AND org = :org", [{"name": "user_id"}]))

    assert exc_info.value.details == {"parameters": ["org"]}


def test_required_parameters_must_appear_in_the_template() -> None:
    with pytest.raises(ValidationFailedError) as exc_info:
        compile_query(_definition("SELECT * FROM users", [{"name": "user_id", "required": True}]))

    assert exc_info.value.details == {"parameters": ["user_id"]}


def test_owner_parameter_name_is_reserved() -> None:
    with pytest.raises(ValidationFailedError, match="reserved"):
        compile_query(_definition("SELECT * FROM tasks WHERE assigned_to = :_owner_id", [{"name": "_owner_id"}]))


def test_pragma_is_readonly_and_table_less() -> None:
    compiled = compile_query(_definition("PRAGMA table_info(tasks)"))

    assert compiled.is_readonly is True
    assert compiled.http_method == "POST"
    assert compiled.primary_table is None


def test_primary_table_skips_comments() -> None:
    assert find_primary_table("/* from secrets */ SELECT id FROM public_posts") == "public_posts"


def test_primary_table_accepts_quoted_identifiers() -> None:
    assert find_primary_table('SELECT * FROM "tasks" WHERE status = :status') == "tasks"
    assert find_primary_table("SELECT 'from secrets' AS label FROM \"tasks\"") == "tasks"
    assert compile_query(_definition('SELECT id FROM "tasks"')).primary_table == "tasks"


def test_placeholders_inside_literals_bind_like_text_unless_escaped() -> None:
    assert extract_placeholders("SELECT * FROM notes WHERE body = 'see :ref'") == ("ref",)
    assert extract_placeholders(r"SELECT * FROM notes WHERE body = 'see \:ref'") == ()

    with pytest.raises(ValidationFailedError) as exc_info:
        compile_query(_definition("SELECT * FROM notes WHERE body = 'see :ref'"))

    assert exc_info.value.details == {"parameters": ["ref"]}


def _compiled(*specs: ParameterSpec) -> CompiledQuery:
    return compile_query(
        _definition(
            "SELECT * FROM t WHERE " + " AND ".join(f"{spec.name} = :{spec.name}" for spec in specs),
            [{"name": spec.name, "type": spec.type.value, "required": spec.required, "default": spec.default} for spec in specs],
        )
    )


def test_coercion_applies_declared_types_and_ignores_extras() -> None:
    compiled = _compiled(
        ParameterSpec("limit", ParameterType.NUMBER, required=True),
        ParameterSpec("ratio", ParameterType.NUMBER),
        ParameterSpec("active", ParameterType.BOOLEAN),
        ParameterSpec("since", ParameterType.DATE),
        ParameterSpec("name", ParameterType.STRING),
    )

    coerced = coerce_parameters(
        compiled,
        {"limit": "10", "ratio": "0.5", "active": "TRUE", "since": "2026-01-02", "name": 7, "unexpected": "x"},
    )

    assert coerced == {
        "limit": 10,
        "ratio": 0.5,
        "active": True,
        "since": "2026-01-02T00:00:00+00:00",
        "name": "7",
    }


def test_missing_required_parameter_is_named() -> None:
    compiled = _compiled(ParameterSpec("user_id", ParameterType.STRING, required=True))

    with pytest.raises(ParameterError) as exc_info:
        coerce_parameters(compiled, {})

    assert exc_info.value.kind == ErrorKind.MISSING_PARAMETER
    assert exc_info.value.parameter == "user_id"


def test_defaults_fill_absent_parameters_and_optional_ones_bind_null() -> None:
    compiled = _compiled(
        ParameterSpec("status", ParameterType.STRING, default="open"),
        ParameterSpec("owner", ParameterType.STRING),
    )

    assert coerce_parameters(compiled, {}) == {"status": "open", "owner": None}


@pytest.mark.parametrize(
    ("param_type", "value"),
    [
        (ParameterType.NUMBER, "ten"),
        (ParameterType.NUMBER, True),
        (ParameterType.NUMBER, "nan"),
        (ParameterType.BOOLEAN, "yes"),
        (ParameterType.DATE, "last tuesday"),
        (ParameterType.STRING, ["a"]),
    ],
)
def test_type_mismatches_name_the_parameter(param_type: ParameterType, value: Any) -> None:
    compiled = _compiled(ParameterSpec("value", param_type))

    with pytest.raises(ParameterError) as exc_info:
        coerce_parameters(compiled, {"value": value})

    assert exc_info.value.kind == ErrorKind.TYPE_MISMATCH
    assert exc_info.value.parameter == "value"


def test_cache_key_is_canonical_and_scoped_by_owner() -> None:
    first = cache_key("q1", {"b": 2, "a": "x"})

    assert first == 'custom_query:q1:{"a":"x","b":2}'
    assert cache_key("q1", {"a": "x", "b": 2}) == first
    assert cache_key("q1", {"a": "x", "b": 2}, owner_id="U1") != first

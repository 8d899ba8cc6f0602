from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum


class ScopeResource(StrEnum):
    DATA = "data"
    TABLES = "tables"
    STORAGE = "storage"
    ADMIN = "admin"


class Action(StrEnum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


@dataclass(frozen=True, slots=True, order=True)
class Scope:
    """A ``resource:action`` grant carried by an API key."""

    resource: ScopeResource
    action: Action

    @classmethod
    def parse(cls, raw: str) -> Scope:
        resource, sep, action = raw.strip().partition(":")
        if not sep:
            raise ValueError(f"invalid scope '{raw}': expected resource:action")
        try:
            return cls(ScopeResource(resource), Action(action))
        except ValueError as exc:
            raise ValueError(f"invalid scope '{raw}'") from exc

    def __str__(self) -> str:
        return f"{self.resource.value}:{self.action.value}"


API_SCOPES: tuple[str, ...] = tuple(str(Scope(resource, action)) for resource in ScopeResource for action in Action)


def parse_scopes(values: Iterable[str]) -> frozenset[Scope]:
    return frozenset(Scope.parse(value) for value in values)


def normalize_scopes(values: Iterable[str]) -> list[str]:
    """Validate and de-duplicate scope strings, keeping first-seen order."""

    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(str(Scope.parse(value)), None)
    return list(seen)

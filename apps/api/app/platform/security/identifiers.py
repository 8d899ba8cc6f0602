from __future__ import annotations

import re

from app.core.errors import ValidationFailedError


IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_IDENTIFIER_LENGTH = 64


def is_valid_identifier(name: str) -> bool:
    return bool(name) and len(name) <= MAX_IDENTIFIER_LENGTH and IDENTIFIER_RE.match(name) is not None


def validate_identifier(name: str, *, kind: str = "identifier") -> str:
    if not is_valid_identifier(name):
        raise ValidationFailedError(f"invalid {kind}: {name!r}", details={kind: name})
    return name

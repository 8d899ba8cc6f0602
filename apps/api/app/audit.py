from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []


def record(
    actor: str,
    action: str,
    target_type: str,
    target_id: str,
    details: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    """Append a security-relevant event to the in-process audit trail."""

    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor": actor,
            "action": action,
            "target_type": target_type,
            "target_id": target_id,
            "details": details,
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )

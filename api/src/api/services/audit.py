"""Audit log helper for money-state changes."""

from __future__ import annotations

import uuid
from typing import Any

from gavel.models import AuditLog
from gavel.models.audit_log import AUDIT_REASONS
from sqlalchemy.ext.asyncio import AsyncSession


def record_audit(
    db: AsyncSession,
    *,
    action: str,
    reason: str,
    target_type: str | None = None,
    target_id: Any = None,
    detail: dict[str, Any] | None = None,
    actor_id: uuid.UUID | None = None,
) -> AuditLog:
    if reason not in AUDIT_REASONS:
        raise ValueError(f"Unknown audit reason: {reason}")
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        reason=reason,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        detail=detail,
    )
    db.add(entry)
    return entry

"""Audit logging service for catalog and result mutations."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from labexam.config import settings
from labexam.models.results import AuditLog

logger = logging.getLogger(__name__)


def log_action(
    db: Session,
    *,
    action: str,
    resource_type: str,
    resource_id: int | str,
    actor: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Write an immutable audit log entry."""
    actor = actor or settings.SYSTEM_ACTOR
    entry = AuditLog(
        actor=actor,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id),
        detail=detail,
    )
    db.add(entry)
    db.flush()
    logger.info("AUDIT: %s %s %s/%s", actor, action, resource_type, resource_id)

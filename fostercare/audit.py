"""Audit logging for carer and referral changes.

Entries are appended to the caller's unit of work; writing an audit entry
never breaks the business operation that triggered it.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models

logger = logging.getLogger(__name__)


class EntityType(str, Enum):
    CARER = "carer"
    REFERRAL = "referral"


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ASSIGNED = "assigned"
    STATUS_CHANGED = "status_changed"


def create_audit_log(
    session: AsyncSession,
    *,
    entity_type: EntityType,
    entity_id: str,
    action: AuditAction,
    user_id: str,
    user_name: str,
    changes: dict[str, Any] | None = None,
    notes: str | None = None,
) -> models.AuditLog | None:
    """Append an audit entry to the session.

    The entry is committed together with the caller's changes.

    Returns:
        The pending AuditLog, or None if it could not be recorded
    """
    try:
        entry = models.AuditLog(
            entity_type=EntityType(entity_type).value,
            entity_id=entity_id,
            action=AuditAction(action).value,
            user_id=user_id,
            user_name=user_name,
            changes=dict(changes or {}),
            notes=notes,
        )
        session.add(entry)
    except Exception as e:
        logger.error(f"Failed to record audit log for {entity_type} {entity_id}: {e}", exc_info=True)
        return None

    logger.debug(f"Audit: {entry.action} {entry.entity_type} {entity_id} by {user_id}")
    return entry


async def get_audit_logs(
    session: AsyncSession,
    entity_type: EntityType,
    entity_id: str,
    limit: int = 50,
) -> list[models.AuditLog]:
    """Audit entries for one entity, most recent first."""
    query = (
        select(models.AuditLog)
        .where(
            models.AuditLog.entity_type == EntityType(entity_type).value,
            models.AuditLog.entity_id == entity_id,
        )
        .order_by(models.AuditLog.timestamp.desc())
        .limit(limit)
    )
    result = await session.execute(query)
    return list(result.scalars().all())

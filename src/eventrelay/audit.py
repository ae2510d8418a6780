"""Append-only audit trail."""

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.db.enums import AuditAction, AuditSeverity
from eventrelay.db.models import AuditLog

logger = logging.getLogger(__name__)


async def record_audit_log(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    action: AuditAction | str,
    *,
    severity: AuditSeverity | str = AuditSeverity.INFO,
    resource_type: str | None = None,
    resource_id: uuid.UUID | None = None,
    details: dict[str, Any] | None = None,
    user_id: uuid.UUID | None = None,
) -> AuditLog:
    """Write an audit entry in the caller's transaction."""
    entry = AuditLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=AuditAction(action).value,
        severity=AuditSeverity(severity).value,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details or {},
    )
    session.add(entry)
    await session.flush()

    logger.debug(f"Audit {entry.action} ({entry.severity}) for tenant {tenant_id}")
    return entry

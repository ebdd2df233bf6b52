"""Administrative audit trail."""
import math
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.database.models import AuditLog

logger = structlog.get_logger(__name__)


async def log_admin_action(
    db: AsyncSession,
    actor_id: Optional[uuid.UUID],
    action: str,
    resource_type: str,
    resource_id: Any = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Append an audit log entry in the caller's transaction.

    Args:
        db: Database session
        actor_id: Profile performing the action (None for system jobs)
        action: Action name, e.g. 'user_suspend'
        resource_type: Kind of resource acted on
        resource_id: Identifier of the resource
        details: JSON-serialisable context

    Returns:
        AuditLog: The pending row
    """
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
    )
    db.add(entry)
    await db.flush()

    logger.info(
        "audit_logged",
        action=action,
        actor_id=str(actor_id) if actor_id else None,
        resource_type=resource_type,
        resource_id=entry.resource_id,
    )
    return entry


async def query_audit_logs(
    db: AsyncSession,
    action: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
    resource_type: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = 1,
    page_size: int = 50,
) -> Dict[str, Any]:
    """
    Filter and paginate the audit trail, newest first.

    Returns:
        Dict[str, Any]: items, page, page_size, total_count, total_pages
    """
    page = max(page, 1)
    page_size = min(max(page_size, 1), 200)

    conditions = []
    if action:
        conditions.append(AuditLog.action == action)
    if actor_id:
        conditions.append(AuditLog.actor_id == actor_id)
    if resource_type:
        conditions.append(AuditLog.resource_type == resource_type)
    if since:
        conditions.append(AuditLog.created_at >= since)
    if until:
        conditions.append(AuditLog.created_at <= until)

    total_count = (
        await db.execute(select(func.count()).select_from(AuditLog).where(*conditions))
    ).scalar_one()

    rows = (
        await db.execute(
            select(AuditLog)
            .where(*conditions)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    ).scalars().all()

    return {
        "items": [
            {
                "id": row.id,
                "actor_id": str(row.actor_id) if row.actor_id else None,
                "action": row.action,
                "resource_type": row.resource_type,
                "resource_id": row.resource_id,
                "details": row.details,
                "created_at": row.created_at.isoformat(),
            }
            for row in rows
        ],
        "page": page,
        "page_size": page_size,
        "total_count": total_count,
        "total_pages": math.ceil(total_count / page_size) if total_count else 0,
    }

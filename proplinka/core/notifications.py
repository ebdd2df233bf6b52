"""In-app notifications."""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.exceptions import NotFoundError
from proplinka.database.models import Notification

logger = structlog.get_logger(__name__)


async def create_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    notification_type: str,
    title: str,
    body: Optional[str] = None,
    link: Optional[str] = None,
) -> Notification:
    """Queue a notification for a user in the caller's transaction."""
    notification = Notification(
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        body=body,
        link=link,
    )
    db.add(notification)
    await db.flush()
    logger.info(
        "notification_created",
        user_id=str(user_id),
        notification_type=notification_type,
    )
    return notification


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    return {
        "id": str(notification.id),
        "type": notification.notification_type,
        "title": notification.title,
        "body": notification.body,
        "link": notification.link,
        "read": notification.read,
        "created_at": notification.created_at.isoformat(),
    }


async def list_notifications(
    db: AsyncSession, user_id: uuid.UUID, unread_only: bool = False, limit: int = 50
) -> List[Notification]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def mark_read(db: AsyncSession, user_id: uuid.UUID, notification_id: uuid.UUID) -> Notification:
    """
    Mark one notification as read.

    Raises:
        NotFoundError: If the notification does not belong to the user
    """
    notification = await db.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise NotFoundError("Notification not found")
    notification.read = True
    await db.flush()
    return notification


async def mark_all_read(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Mark every unread notification of a user as read. Returns the count."""
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
    )
    return result.rowcount

"""
Listing moderation and user content reports.

Moderators review listings waiting for approval and act on content flags
raised by users. Every decision leaves a PropertyReview row (for listings)
and an audit log entry.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.config import get_settings
from proplinka.core import platform_settings
from proplinka.core.audit import log_admin_action
from proplinka.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from proplinka.core.notifications import create_notification
from proplinka.core.offers import close_open_offers
from proplinka.database.models import (
    ContentFlag,
    Message,
    Profile,
    Property,
    PropertyReview,
)
from proplinka.integrations.email_client import (
    EmailClient,
    property_approved_email,
    property_rejected_email,
    send_best_effort,
)
from proplinka.utils.time import utc_now

logger = structlog.get_logger(__name__)

MODERATION_ACTIONS = ("approve", "reject", "flag", "unflag")
FLAG_RESOURCE_TYPES = ("property", "message", "profile")
FLAG_REASONS = ("spam", "fraud", "inappropriate", "duplicate", "misleading", "other")
FLAG_DECISIONS = ("approved", "rejected")


def _require_moderator(user: Profile) -> None:
    if not user.is_moderator:
        raise PermissionDeniedError("Moderator access required")


def serialize_flag(flag: ContentFlag) -> Dict[str, Any]:
    return {
        "id": str(flag.id),
        "reporter_id": str(flag.reporter_id),
        "resource_type": flag.resource_type,
        "resource_id": str(flag.resource_id),
        "reason": flag.reason,
        "details": flag.details,
        "status": flag.status,
        "reviewed_by": str(flag.reviewed_by) if flag.reviewed_by else None,
        "resolution_notes": flag.resolution_notes,
        "reviewed_at": flag.reviewed_at.isoformat() if flag.reviewed_at else None,
        "created_at": flag.created_at.isoformat(),
    }


async def moderate_property(
    db: AsyncSession,
    moderator: Profile,
    property_id: uuid.UUID,
    action: str,
    reason: Optional[str] = None,
    email_client: Optional[EmailClient] = None,
) -> Property:
    """
    Apply a moderation decision to a listing.

    Args:
        db: Database session
        moderator: Moderator or admin acting
        property_id: Listing
        action: approve, reject, flag or unflag
        reason: Required for reject and flag
        email_client: Optional client for seller emails

    Returns:
        Property: Updated listing

    Raises:
        PermissionDeniedError: If the caller is not a moderator
        ValidationError: If the action is unknown or a reason is missing
        NotFoundError: If the listing does not exist
    """
    _require_moderator(moderator)
    if action not in MODERATION_ACTIONS:
        raise ValidationError(f"Action must be one of: {', '.join(MODERATION_ACTIONS)}")
    if action in ("reject", "flag") and not (reason and reason.strip()):
        raise ValidationError(f"A reason is required to {action} a property")

    prop = await db.get(Property, property_id)
    if prop is None:
        raise NotFoundError("Property not found")
    seller = await db.get(Profile, prop.seller_id)

    if action == "approve":
        prop.status = "active"
        prop.moderation_status = "approved"
        prop.published_at = prop.published_at or utc_now()
        await create_notification(
            db,
            user_id=seller.id,
            notification_type="property_approved",
            title="Listing approved",
            body=f"\"{prop.title}\" is now live.",
            link=f"/properties/{prop.id}",
        )
        if email_client is not None:
            await send_best_effort(
                email_client,
                property_approved_email(
                    seller.email, prop.title, f"{get_settings().site_url}/properties/{prop.id}"
                ),
            )
    elif action == "reject":
        prop.status = "rejected"
        prop.moderation_status = "rejected"
        await create_notification(
            db,
            user_id=seller.id,
            notification_type="property_rejected",
            title="Listing not approved",
            body=reason,
            link=f"/properties/{prop.id}/edit",
        )
        if email_client is not None:
            await send_best_effort(
                email_client, property_rejected_email(seller.email, prop.title, reason)
            )
    elif action == "flag":
        prop.moderation_status = "flagged"
    else:
        prop.moderation_status = "approved"

    prop.moderation_notes = reason
    db.add(
        PropertyReview(property_id=prop.id, reviewer_id=moderator.id, action=action, notes=reason)
    )
    await log_admin_action(
        db,
        actor_id=moderator.id,
        action=f"property_{action}",
        resource_type="property",
        resource_id=prop.id,
        details={"reason": reason} if reason else None,
    )
    await db.flush()

    logger.info(
        "property_moderated",
        property_id=str(prop.id),
        action=action,
        moderator_id=str(moderator.id),
        status=prop.status,
    )
    return prop


async def moderation_queue(db: AsyncSession, moderator: Profile, limit: int = 50) -> List[Property]:
    """Listings waiting for review, oldest first."""
    _require_moderator(moderator)
    result = await db.execute(
        select(Property)
        .where(Property.status == "pending_review")
        .order_by(Property.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def _resource_exists(db: AsyncSession, resource_type: str, resource_id: uuid.UUID) -> bool:
    model = {"property": Property, "message": Message, "profile": Profile}[resource_type]
    return await db.get(model, resource_id) is not None


async def _auto_suspend(db: AsyncSession, property_id: uuid.UUID) -> bool:
    if not await platform_settings.get_setting(db, "auto_suspend_flagged_content"):
        return False
    threshold = await platform_settings.get_setting(db, "flag_threshold")
    open_flags = (
        await db.execute(
            select(func.count())
            .select_from(ContentFlag)
            .where(
                ContentFlag.resource_type == "property",
                ContentFlag.resource_id == property_id,
                ContentFlag.status == "pending",
            )
        )
    ).scalar_one()
    if open_flags < threshold:
        return False

    prop = await db.get(Property, property_id)
    if prop.status == "suspended":
        return False
    prop.status = "suspended"
    prop.moderation_status = "flagged"
    prop.featured = False
    await close_open_offers(db, prop.id, "This listing was suspended pending review.")
    await create_notification(
        db,
        user_id=prop.seller_id,
        notification_type="property_suspended",
        title="Listing suspended",
        body=f"\"{prop.title}\" was hidden pending review after multiple reports.",
        link=f"/properties/{prop.id}",
    )
    await log_admin_action(
        db,
        actor_id=None,
        action="property_auto_suspend",
        resource_type="property",
        resource_id=prop.id,
        details={"open_flags": open_flags, "threshold": threshold},
    )
    logger.warning("property_auto_suspended", property_id=str(prop.id), open_flags=open_flags)
    return True


async def report_content(
    db: AsyncSession,
    reporter: Profile,
    resource_type: str,
    resource_id: uuid.UUID,
    reason: str,
    details: Optional[str] = None,
) -> ContentFlag:
    """
    Report a listing, message or profile.

    Raises:
        ValidationError: If the resource type or reason is unknown
        NotFoundError: If the resource does not exist
        ConflictError: If the reporter already flagged this resource
    """
    if resource_type not in FLAG_RESOURCE_TYPES:
        raise ValidationError(f"Resource type must be one of: {', '.join(FLAG_RESOURCE_TYPES)}")
    if reason not in FLAG_REASONS:
        raise ValidationError(f"Reason must be one of: {', '.join(FLAG_REASONS)}")
    if not await _resource_exists(db, resource_type, resource_id):
        raise NotFoundError(f"{resource_type.capitalize()} not found")

    existing = (
        await db.execute(
            select(ContentFlag.id).where(
                ContentFlag.reporter_id == reporter.id,
                ContentFlag.resource_type == resource_type,
                ContentFlag.resource_id == resource_id,
            )
        )
    ).first()
    if existing is not None:
        raise ConflictError("You have already reported this content")

    flag = ContentFlag(
        reporter_id=reporter.id,
        resource_type=resource_type,
        resource_id=resource_id,
        reason=reason,
        details=details,
        status="pending",
    )
    db.add(flag)
    await db.flush()

    if resource_type == "property":
        await _auto_suspend(db, resource_id)
        await db.flush()

    logger.info(
        "content_reported",
        flag_id=str(flag.id),
        resource_type=resource_type,
        resource_id=str(resource_id),
        reason=reason,
    )
    return flag


async def list_flags(
    db: AsyncSession, moderator: Profile, status: Optional[str] = "pending", limit: int = 100
) -> List[ContentFlag]:
    _require_moderator(moderator)
    stmt = select(ContentFlag).order_by(ContentFlag.created_at).limit(limit)
    if status:
        stmt = stmt.where(ContentFlag.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def review_flag(
    db: AsyncSession,
    moderator: Profile,
    flag_id: uuid.UUID,
    decision: str,
    notes: Optional[str] = None,
) -> ContentFlag:
    """
    Resolve a content flag.

    'approved' upholds the report: a reported listing is removed. 'rejected'
    dismisses it.

    Raises:
        ValidationError: If the decision is unknown
        NotFoundError: If the flag does not exist
        ConflictError: If the flag was already reviewed
    """
    _require_moderator(moderator)
    if decision not in FLAG_DECISIONS:
        raise ValidationError("Decision must be 'approved' or 'rejected'")

    flag = await db.get(ContentFlag, flag_id)
    if flag is None:
        raise NotFoundError("Flag not found")
    if flag.status != "pending":
        raise ConflictError("This flag has already been reviewed")

    flag.status = decision
    flag.reviewed_by = moderator.id
    flag.reviewed_at = utc_now()
    flag.resolution_notes = notes

    if decision == "approved" and flag.resource_type == "property":
        prop = await db.get(Property, flag.resource_id)
        if prop is not None:
            prop.status = "suspended"
            prop.moderation_status = "rejected"
            prop.featured = False
            await close_open_offers(db, prop.id, "This listing was removed by a moderator.")
            db.add(
                PropertyReview(
                    property_id=prop.id, reviewer_id=moderator.id, action="remove", notes=notes
                )
            )

    await log_admin_action(
        db,
        actor_id=moderator.id,
        action=f"flag_{decision}",
        resource_type=flag.resource_type,
        resource_id=flag.resource_id,
        details={"flag_id": str(flag.id), "notes": notes},
    )
    await db.flush()
    logger.info("flag_reviewed", flag_id=str(flag.id), decision=decision)
    return flag

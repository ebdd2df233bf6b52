"""
Administrative operations: user management and platform statistics.
"""
import math
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.audit import log_admin_action
from proplinka.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from proplinka.core.notifications import create_notification
from proplinka.core.offers import close_open_offers
from proplinka.core.profiles import serialize_profile
from proplinka.database.models import (
    ContentFlag,
    Payment,
    Profile,
    Property,
    Transaction,
)
from proplinka.integrations.email_client import (
    EmailClient,
    account_suspended_email,
    send_best_effort,
)
from proplinka.utils.time import utc_now

logger = structlog.get_logger(__name__)

ROLES = ("user", "moderator", "admin")


def _require_admin(user: Profile) -> None:
    if not user.is_admin:
        raise PermissionDeniedError("Admin access required")


async def list_users(
    db: AsyncSession,
    admin: Profile,
    search: Optional[str] = None,
    role: Optional[str] = None,
    suspended: Optional[bool] = None,
    page: int = 1,
    page_size: int = 50,
) -> Dict[str, Any]:
    """Page through profiles, newest first, filtered by email/name and role."""
    _require_admin(admin)
    page = max(page, 1)
    page_size = min(max(page_size, 1), 200)

    conditions = []
    if search:
        pattern = f"%{search.lower()}%"
        conditions.append(
            or_(func.lower(Profile.email).like(pattern), func.lower(Profile.full_name).like(pattern))
        )
    if role:
        if role not in ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(ROLES)}")
        conditions.append(Profile.role == role)
    if suspended is not None:
        conditions.append(Profile.is_suspended.is_(suspended))

    total = (
        await db.execute(select(func.count()).select_from(Profile).where(*conditions))
    ).scalar_one()
    rows = (
        await db.execute(
            select(Profile)
            .where(*conditions)
            .order_by(Profile.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    ).scalars().all()

    return {
        "items": [serialize_profile(p) for p in rows],
        "page": page,
        "page_size": page_size,
        "total_count": total,
        "total_pages": math.ceil(total / page_size) if total else 0,
    }


async def suspend_user(
    db: AsyncSession,
    admin: Profile,
    user_id: uuid.UUID,
    reason: str,
    email_client: Optional[EmailClient] = None,
) -> Profile:
    """
    Suspend an account and hide its active listings.

    Raises:
        PermissionDeniedError: If the caller is not an admin, or targets
            themselves or another admin
        NotFoundError: If the profile does not exist
        ConflictError: If the account is already suspended
        ValidationError: If no reason is given
    """
    _require_admin(admin)
    if not (reason and reason.strip()):
        raise ValidationError("A suspension reason is required")
    if user_id == admin.id:
        raise PermissionDeniedError("You cannot suspend your own account")

    target = await db.get(Profile, user_id)
    if target is None:
        raise NotFoundError("User not found")
    if target.is_admin:
        raise PermissionDeniedError("Admins cannot be suspended")
    if target.is_suspended:
        raise ConflictError("User is already suspended")

    target.is_suspended = True
    target.suspended_at = utc_now()
    target.suspension_reason = reason.strip()

    active_ids = (
        await db.execute(
            select(Property.id).where(
                Property.seller_id == target.id, Property.status == "active"
            )
        )
    ).scalars().all()
    hidden = await db.execute(
        update(Property)
        .where(Property.seller_id == target.id, Property.status == "active")
        .values(status="suspended", featured=False)
    )
    for property_id in active_ids:
        await close_open_offers(db, property_id, "The seller's account was suspended.")

    await log_admin_action(
        db,
        actor_id=admin.id,
        action="user_suspend",
        resource_type="profile",
        resource_id=target.id,
        details={"reason": target.suspension_reason, "properties_hidden": hidden.rowcount},
    )
    await db.flush()

    if email_client is not None:
        await send_best_effort(email_client, account_suspended_email(target.email, reason))

    logger.warning(
        "user_suspended",
        user_id=str(target.id),
        admin_id=str(admin.id),
        properties_hidden=hidden.rowcount,
    )
    return target


async def unsuspend_user(db: AsyncSession, admin: Profile, user_id: uuid.UUID) -> Profile:
    """Lift a suspension. Hidden listings are restored to active."""
    _require_admin(admin)
    target = await db.get(Profile, user_id)
    if target is None:
        raise NotFoundError("User not found")
    if not target.is_suspended:
        raise ConflictError("User is not suspended")

    target.is_suspended = False
    target.suspended_at = None
    target.suspension_reason = None

    restored = await db.execute(
        update(Property)
        .where(Property.seller_id == target.id, Property.status == "suspended")
        .values(status="active")
    )

    await create_notification(
        db,
        user_id=target.id,
        notification_type="account_restored",
        title="Your account has been restored",
    )
    await log_admin_action(
        db,
        actor_id=admin.id,
        action="user_unsuspend",
        resource_type="profile",
        resource_id=target.id,
        details={"properties_restored": restored.rowcount},
    )
    await db.flush()
    logger.info("user_unsuspended", user_id=str(target.id), admin_id=str(admin.id))
    return target


async def platform_stats(db: AsyncSession, admin: Profile) -> Dict[str, Any]:
    """Headline counts for the admin dashboard."""
    _require_admin(admin)

    async def count(model, *conditions) -> int:
        return (
            await db.execute(select(func.count()).select_from(model).where(*conditions))
        ).scalar_one()

    revenue = (
        await db.execute(
            select(func.coalesce(func.sum(Payment.amount - Payment.refund_amount), 0)).where(
                Payment.status.in_(("succeeded", "partially_refunded")),
                Payment.payment_type != "lawyer_referral",
            )
        )
    ).scalar_one()

    return {
        "total_users": await count(Profile),
        "suspended_users": await count(Profile, Profile.is_suspended.is_(True)),
        "active_listings": await count(Property, Property.status == "active"),
        "pending_review": await count(Property, Property.status == "pending_review"),
        "open_flags": await count(ContentFlag, ContentFlag.status == "pending"),
        "completed_transactions": await count(Transaction, Transaction.status == "completed"),
        "revenue": Decimal(str(revenue)),
    }

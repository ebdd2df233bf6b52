"""
In-person viewings of listings.

A buyer requests a date and time slot; the seller confirms an exact time,
then marks the viewing completed or a no-show. Either side can cancel a
viewing that has not happened yet. Each step notifies the other party.
"""
import re
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from proplinka.core.notifications import create_notification
from proplinka.database.models import Profile, Property, Viewing
from proplinka.utils.time import utc_now

logger = structlog.get_logger(__name__)

TIME_SLOTS = ("morning", "afternoon", "evening")
FINANCING_STATUSES = ("cash", "pre_approved", "financing_in_progress", "exploring")
VIEWING_STATUSES = ("pending", "confirmed", "completed", "cancelled", "no_show")
OPEN_STATUSES = ("pending", "confirmed")
MAX_MESSAGE_LENGTH = 1000

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def serialize_viewing(viewing: Viewing) -> Dict[str, Any]:
    return {
        "id": str(viewing.id),
        "property_id": str(viewing.property_id),
        "buyer_id": str(viewing.buyer_id),
        "seller_id": str(viewing.seller_id),
        "requested_date": viewing.requested_date.isoformat(),
        "requested_time_slot": viewing.requested_time_slot,
        "financing_status": viewing.financing_status,
        "pre_approval_amount": viewing.pre_approval_amount,
        "buyer_message": viewing.buyer_message,
        "status": viewing.status,
        "confirmed_date": viewing.confirmed_date.isoformat() if viewing.confirmed_date else None,
        "confirmed_time": viewing.confirmed_time,
        "seller_response": viewing.seller_response,
        "cancellation_reason": viewing.cancellation_reason,
        "created_at": viewing.created_at.isoformat(),
    }


async def _load_viewing(db: AsyncSession, user: Profile, viewing_id: uuid.UUID) -> Viewing:
    viewing = await db.get(Viewing, viewing_id)
    if viewing is None or not viewing.has_participant(user.id):
        raise NotFoundError("Viewing not found")
    return viewing


def _seller_only(viewing: Viewing, user: Profile) -> None:
    if viewing.seller_id != user.id:
        raise PermissionDeniedError("Only the seller can do this")


def _today() -> date:
    return utc_now().date()


async def request_viewing(
    db: AsyncSession,
    user: Profile,
    property_id: uuid.UUID,
    requested_date: date,
    time_slot: str,
    financing_status: str,
    pre_approval_amount: Optional[Decimal] = None,
    message: Optional[str] = None,
) -> Viewing:
    """
    Ask the seller for a viewing.

    Args:
        db: Database session
        user: Buyer
        property_id: Listing to view
        requested_date: Preferred day, today or later
        time_slot: morning, afternoon or evening
        financing_status: How the buyer would pay
        pre_approval_amount: Bond pre-approval, if any
        message: Optional note to the seller

    Returns:
        Viewing: The pending request

    Raises:
        ValidationError: If the slot, financing status or date is invalid
        NotFoundError: If the listing does not exist
        ConflictError: If the listing is not active or the date is already requested
        PermissionDeniedError: If the caller owns the listing
    """
    if time_slot not in TIME_SLOTS:
        raise ValidationError(f"Time slot must be one of: {', '.join(TIME_SLOTS)}")
    if financing_status not in FINANCING_STATUSES:
        raise ValidationError(
            f"Financing status must be one of: {', '.join(FINANCING_STATUSES)}"
        )
    if requested_date < _today():
        raise ValidationError("Viewing date cannot be in the past")
    if pre_approval_amount is not None and pre_approval_amount <= 0:
        raise ValidationError("Pre-approval amount must be positive")
    note = (message or "").strip() or None
    if note and len(note) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")

    prop = await db.get(Property, property_id)
    if prop is None:
        raise NotFoundError("Property not found")
    if prop.status != "active":
        raise ConflictError("This property is not available for viewing")
    if prop.seller_id == user.id:
        raise PermissionDeniedError("You cannot request a viewing of your own property")

    duplicate = (
        await db.execute(
            select(Viewing.id).where(
                Viewing.property_id == prop.id,
                Viewing.buyer_id == user.id,
                Viewing.requested_date == requested_date,
                Viewing.status.in_(OPEN_STATUSES),
            )
        )
    ).first()
    if duplicate is not None:
        raise ConflictError("You already have a viewing request for this date")

    viewing = Viewing(
        property_id=prop.id,
        buyer_id=user.id,
        seller_id=prop.seller_id,
        requested_date=requested_date,
        requested_time_slot=time_slot,
        financing_status=financing_status,
        pre_approval_amount=pre_approval_amount,
        buyer_message=note,
        status="pending",
    )
    db.add(viewing)
    await db.flush()

    await create_notification(
        db,
        user_id=prop.seller_id,
        notification_type="viewing_requested",
        title="New viewing request",
        body=f'Someone wants to view "{prop.title}" on {requested_date.isoformat()} '
        f"({time_slot}).",
        link=f"/viewings/{viewing.id}",
    )
    logger.info(
        "viewing_requested",
        viewing_id=str(viewing.id),
        property_id=str(prop.id),
        requested_date=requested_date.isoformat(),
    )
    return viewing


async def confirm_viewing(
    db: AsyncSession,
    user: Profile,
    viewing_id: uuid.UUID,
    confirmed_date: date,
    confirmed_time: str,
    response: Optional[str] = None,
) -> Viewing:
    """
    Seller fixes the date and time of a pending viewing.

    Raises:
        NotFoundError: If the viewing is not the caller's
        PermissionDeniedError: If the caller is the buyer
        ConflictError: If the viewing is no longer pending
        ValidationError: If the date is past or the time is not HH:MM
    """
    viewing = await _load_viewing(db, user, viewing_id)
    _seller_only(viewing, user)
    if viewing.status != "pending":
        raise ConflictError("This viewing has already been processed")
    if confirmed_date < _today():
        raise ValidationError("Viewing date cannot be in the past")
    if not _TIME_PATTERN.match(confirmed_time or ""):
        raise ValidationError("Time must be given as HH:MM")

    viewing.status = "confirmed"
    viewing.confirmed_date = confirmed_date
    viewing.confirmed_time = confirmed_time
    viewing.seller_response = (response or "").strip() or None
    viewing.confirmed_at = utc_now()
    await db.flush()

    await create_notification(
        db,
        user_id=viewing.buyer_id,
        notification_type="viewing_confirmed",
        title="Viewing confirmed",
        body=f"Your viewing is confirmed for {confirmed_date.isoformat()} at {confirmed_time}.",
        link=f"/viewings/{viewing.id}",
    )
    logger.info("viewing_confirmed", viewing_id=str(viewing.id))
    return viewing


async def cancel_viewing(
    db: AsyncSession, user: Profile, viewing_id: uuid.UUID, reason: Optional[str] = None
) -> Viewing:
    """
    Cancel a pending or confirmed viewing; either party may.

    Raises:
        NotFoundError: If the viewing is not the caller's
        ConflictError: If the viewing already happened or was cancelled
    """
    viewing = await _load_viewing(db, user, viewing_id)
    if viewing.status not in OPEN_STATUSES:
        raise ConflictError("This viewing cannot be cancelled")

    viewing.status = "cancelled"
    viewing.cancellation_reason = (reason or "").strip() or None
    viewing.cancelled_by = user.id
    viewing.cancelled_at = utc_now()
    await db.flush()

    other = viewing.seller_id if user.id == viewing.buyer_id else viewing.buyer_id
    await create_notification(
        db,
        user_id=other,
        notification_type="viewing_cancelled",
        title="Viewing cancelled",
        body=viewing.cancellation_reason,
        link=f"/viewings/{viewing.id}",
    )
    logger.info("viewing_cancelled", viewing_id=str(viewing.id), cancelled_by=str(user.id))
    return viewing


async def _close_confirmed(
    db: AsyncSession, user: Profile, viewing_id: uuid.UUID, status: str
) -> Viewing:
    viewing = await _load_viewing(db, user, viewing_id)
    _seller_only(viewing, user)
    if viewing.status != "confirmed":
        raise ConflictError("Only confirmed viewings can be closed")
    viewing.status = status
    if status == "completed":
        viewing.completed_at = utc_now()
    await db.flush()
    logger.info("viewing_closed", viewing_id=str(viewing.id), status=status)
    return viewing


async def complete_viewing(db: AsyncSession, user: Profile, viewing_id: uuid.UUID) -> Viewing:
    return await _close_confirmed(db, user, viewing_id, "completed")


async def mark_no_show(db: AsyncSession, user: Profile, viewing_id: uuid.UUID) -> Viewing:
    return await _close_confirmed(db, user, viewing_id, "no_show")


async def get_viewing(db: AsyncSession, user: Profile, viewing_id: uuid.UUID) -> Viewing:
    return await _load_viewing(db, user, viewing_id)


async def list_my_viewings(
    db: AsyncSession, user: Profile, role: str = "buyer", status: Optional[str] = None
) -> List[Viewing]:
    """
    Viewings where the caller is the buyer or the seller, soonest first.

    Raises:
        ValidationError: If the role or status filter is unknown
    """
    if role not in ("buyer", "seller"):
        raise ValidationError("Role must be 'buyer' or 'seller'")
    column = Viewing.buyer_id if role == "buyer" else Viewing.seller_id
    stmt = select(Viewing).where(column == user.id)
    if status is not None:
        if status not in VIEWING_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(VIEWING_STATUSES)}")
        stmt = stmt.where(Viewing.status == status)
    stmt = stmt.order_by(Viewing.requested_date, Viewing.created_at)
    return list((await db.execute(stmt)).scalars().all())


async def list_property_viewings(
    db: AsyncSession, user: Profile, property_id: uuid.UUID
) -> List[Viewing]:
    """
    All viewings of one listing, for its seller.

    Raises:
        NotFoundError: If the listing does not exist
        PermissionDeniedError: If the caller is not the seller
    """
    prop = await db.get(Property, property_id)
    if prop is None:
        raise NotFoundError("Property not found")
    if prop.seller_id != user.id and not user.is_moderator:
        raise PermissionDeniedError("Only the seller can see viewings of this property")
    result = await db.execute(
        select(Viewing)
        .where(Viewing.property_id == prop.id)
        .order_by(Viewing.requested_date, Viewing.created_at)
    )
    return list(result.scalars().all())


async def has_open_viewing(db: AsyncSession, user: Profile, property_id: uuid.UUID) -> bool:
    """Whether the caller has a pending or confirmed viewing of the listing."""
    row = (
        await db.execute(
            select(Viewing.id)
            .where(
                Viewing.property_id == property_id,
                Viewing.buyer_id == user.id,
                Viewing.status.in_(OPEN_STATUSES),
            )
            .limit(1)
        )
    ).first()
    return row is not None

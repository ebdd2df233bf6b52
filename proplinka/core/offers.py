"""
Offer negotiation between buyers and sellers.

Lifecycle:
    pending -> accepted | rejected | countered | withdrawn
    countered -> accepted (buyer takes the counter) | rejected | withdrawn
Offers past valid_until are treated as expired and can no longer move.
"""
import uuid
from datetime import datetime, timedelta
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
from proplinka.database.models import Offer, Profile, Property, Transaction
from proplinka.utils.time import ensure_aware, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_VALIDITY_DAYS = 7
OPEN_STATUSES = ("pending", "countered")


def effective_status(offer: Offer, now: Optional[datetime] = None) -> str:
    """Status with stale open offers reported as expired."""
    now = now or utc_now()
    if offer.status in OPEN_STATUSES and ensure_aware(offer.valid_until) < now:
        return "expired"
    return offer.status


def serialize_offer(offer: Offer) -> Dict[str, Any]:
    return {
        "id": str(offer.id),
        "property_id": str(offer.property_id),
        "buyer_id": str(offer.buyer_id),
        "seller_id": str(offer.seller_id),
        "amount": offer.amount,
        "counter_amount": offer.counter_amount,
        "message": offer.message,
        "status": effective_status(offer),
        "rejection_reason": offer.rejection_reason,
        "valid_until": offer.valid_until.isoformat(),
        "created_at": offer.created_at.isoformat(),
    }


def _positive_amount(amount: Any) -> Decimal:
    value = Decimal(str(amount))
    if value <= 0:
        raise ValidationError("Offer amount must be greater than zero")
    return value


async def _load_offer(db: AsyncSession, offer_id: uuid.UUID) -> Offer:
    offer = await db.get(Offer, offer_id)
    if offer is None:
        raise NotFoundError("Offer not found")
    return offer


def _require_open(offer: Offer, allowed: tuple = OPEN_STATUSES) -> None:
    status = effective_status(offer)
    if status == "expired":
        raise ConflictError("Offer has expired")
    if status not in allowed:
        raise ConflictError(f"Cannot act on an offer with status: {status}")


async def submit_offer(
    db: AsyncSession,
    buyer: Profile,
    property_id: uuid.UUID,
    amount: Any,
    message: Optional[str] = None,
    valid_until: Optional[datetime] = None,
) -> Offer:
    """
    Make an offer on an active listing.

    Args:
        db: Database session
        buyer: Profile making the offer
        property_id: Listing
        amount: Offered price
        message: Optional note to the seller
        valid_until: Expiry, defaults to 7 days from now

    Returns:
        Offer: New pending offer

    Raises:
        ValidationError: If the amount or expiry is invalid
        NotFoundError: If the listing does not exist
        ConflictError: If the listing is not active or an open offer exists
        PermissionDeniedError: If the buyer owns the listing
    """
    value = _positive_amount(amount)
    now = utc_now()
    expires = ensure_aware(valid_until) if valid_until else now + timedelta(days=DEFAULT_VALIDITY_DAYS)
    if expires <= now:
        raise ValidationError("Offer expiry must be in the future")

    prop = await db.get(Property, property_id)
    if prop is None:
        raise NotFoundError("Property not found")
    if prop.status != "active":
        raise ConflictError("This property is not accepting offers")
    if prop.seller_id == buyer.id:
        raise PermissionDeniedError("You cannot make an offer on your own property")

    existing = (
        await db.execute(
            select(Offer).where(
                Offer.property_id == property_id,
                Offer.buyer_id == buyer.id,
                Offer.status.in_(OPEN_STATUSES),
                Offer.valid_until > now,
            )
        )
    ).scalars().first()
    if existing is not None:
        raise ConflictError("You already have an open offer on this property")

    offer = Offer(
        property_id=prop.id,
        buyer_id=buyer.id,
        seller_id=prop.seller_id,
        amount=value,
        message=message,
        status="pending",
        valid_until=expires,
    )
    db.add(offer)
    await db.flush()

    await create_notification(
        db,
        user_id=prop.seller_id,
        notification_type="offer_received",
        title="New offer received",
        body=f"You received an offer of {prop.currency} {value:,.0f} on \"{prop.title}\".",
        link=f"/offers/{offer.id}",
    )

    logger.info(
        "offer_submitted",
        offer_id=str(offer.id),
        property_id=str(prop.id),
        buyer_id=str(buyer.id),
        amount=str(value),
    )
    return offer


async def close_open_offers(db: AsyncSession, property_id: uuid.UUID, reason: str) -> int:
    """Reject every open offer on a listing that left the market."""
    offers = (
        await db.execute(
            select(Offer).where(
                Offer.property_id == property_id,
                Offer.status.in_(OPEN_STATUSES),
            )
        )
    ).scalars().all()
    for offer in offers:
        offer.status = "rejected"
        offer.rejection_reason = reason
        await create_notification(
            db,
            user_id=offer.buyer_id,
            notification_type="offer_rejected",
            title="Offer closed",
            body=reason,
            link=f"/offers/{offer.id}",
        )
    await db.flush()
    if offers:
        logger.info("open_offers_closed", property_id=str(property_id), offers=len(offers))
    return len(offers)


async def _create_transaction(
    db: AsyncSession, offer: Offer, agreed_price: Decimal
) -> Transaction:
    prop = await db.get(Property, offer.property_id)
    if prop is None or prop.status != "active":
        raise ConflictError("This property is no longer accepting offers")

    others = (
        await db.execute(
            select(Offer).where(
                Offer.property_id == offer.property_id,
                Offer.id != offer.id,
                Offer.status.in_(OPEN_STATUSES),
            )
        )
    ).scalars().all()
    for other in others:
        other.status = "rejected"
        other.rejection_reason = "Another offer was accepted"
        await create_notification(
            db,
            user_id=other.buyer_id,
            notification_type="offer_rejected",
            title="Offer not accepted",
            body=f"The seller accepted another offer on \"{prop.title}\".",
            link=f"/properties/{prop.id}",
        )

    offer.status = "accepted"
    prop.status = "under_offer"
    prop.featured = False

    transaction = Transaction(
        property_id=prop.id,
        offer_id=offer.id,
        buyer_id=offer.buyer_id,
        seller_id=offer.seller_id,
        agreed_price=agreed_price,
        currency=prop.currency,
        status="initiated",
    )
    db.add(transaction)
    await db.flush()

    logger.info(
        "transaction_initiated",
        transaction_id=str(transaction.id),
        offer_id=str(offer.id),
        agreed_price=str(agreed_price),
        rejected_offers=len(others),
    )
    return transaction


async def accept_offer(db: AsyncSession, seller: Profile, offer_id: uuid.UUID) -> Transaction:
    """
    Accept an offer and open a transaction at the offered price.

    Every other open offer on the property is rejected.

    Raises:
        PermissionDeniedError: If the caller is not the seller
        ConflictError: If the offer is not pending or countered, or the listing
            is no longer active
    """
    offer = await _load_offer(db, offer_id)
    if offer.seller_id != seller.id:
        raise PermissionDeniedError("Only the seller can accept this offer")
    _require_open(offer)

    transaction = await _create_transaction(db, offer, offer.amount)
    await create_notification(
        db,
        user_id=offer.buyer_id,
        notification_type="offer_accepted",
        title="Offer accepted",
        body="Your offer was accepted. Select a lawyer to continue.",
        link=f"/transactions/{transaction.id}",
    )
    return transaction


async def reject_offer(
    db: AsyncSession, seller: Profile, offer_id: uuid.UUID, reason: Optional[str] = None
) -> Offer:
    """Reject a pending or countered offer."""
    offer = await _load_offer(db, offer_id)
    if offer.seller_id != seller.id:
        raise PermissionDeniedError("Only the seller can reject this offer")
    _require_open(offer)

    offer.status = "rejected"
    offer.rejection_reason = reason
    await create_notification(
        db,
        user_id=offer.buyer_id,
        notification_type="offer_rejected",
        title="Offer rejected",
        body=reason or "The seller rejected your offer.",
        link=f"/offers/{offer.id}",
    )
    await db.flush()
    logger.info("offer_rejected", offer_id=str(offer.id))
    return offer


async def counter_offer(
    db: AsyncSession,
    seller: Profile,
    offer_id: uuid.UUID,
    counter_amount: Any,
    message: Optional[str] = None,
) -> Offer:
    """Counter a pending offer with a different price."""
    offer = await _load_offer(db, offer_id)
    if offer.seller_id != seller.id:
        raise PermissionDeniedError("Only the seller can counter this offer")
    _require_open(offer, allowed=("pending",))

    offer.counter_amount = _positive_amount(counter_amount)
    offer.status = "countered"
    await create_notification(
        db,
        user_id=offer.buyer_id,
        notification_type="offer_countered",
        title="Counter offer received",
        body=message or f"The seller countered with {offer.counter_amount:,.0f}.",
        link=f"/offers/{offer.id}",
    )
    await db.flush()
    logger.info(
        "offer_countered", offer_id=str(offer.id), counter_amount=str(offer.counter_amount)
    )
    return offer


async def accept_counter_offer(
    db: AsyncSession, buyer: Profile, offer_id: uuid.UUID
) -> Transaction:
    """Buyer accepts the seller's counter; the transaction uses the counter amount."""
    offer = await _load_offer(db, offer_id)
    if offer.buyer_id != buyer.id:
        raise PermissionDeniedError("Only the buyer can accept this counter offer")
    _require_open(offer, allowed=("countered",))

    transaction = await _create_transaction(db, offer, offer.counter_amount)
    await create_notification(
        db,
        user_id=offer.seller_id,
        notification_type="offer_accepted",
        title="Counter offer accepted",
        body="The buyer accepted your counter offer.",
        link=f"/transactions/{transaction.id}",
    )
    return transaction


async def withdraw_offer(db: AsyncSession, buyer: Profile, offer_id: uuid.UUID) -> Offer:
    """Buyer withdraws an open offer."""
    offer = await _load_offer(db, offer_id)
    if offer.buyer_id != buyer.id:
        raise PermissionDeniedError("Only the buyer can withdraw this offer")
    _require_open(offer)

    offer.status = "withdrawn"
    await create_notification(
        db,
        user_id=offer.seller_id,
        notification_type="offer_withdrawn",
        title="Offer withdrawn",
        body="A buyer withdrew their offer.",
        link=f"/properties/{offer.property_id}",
    )
    await db.flush()
    logger.info("offer_withdrawn", offer_id=str(offer.id))
    return offer


async def list_offers(db: AsyncSession, user: Profile, role: str = "buyer") -> List[Offer]:
    """Offers the user made (role='buyer') or received (role='seller')."""
    column = Offer.buyer_id if role == "buyer" else Offer.seller_id
    result = await db.execute(
        select(Offer).where(column == user.id).order_by(Offer.created_at.desc())
    )
    return list(result.scalars().all())


async def get_offer(db: AsyncSession, user: Profile, offer_id: uuid.UUID) -> Offer:
    offer = await _load_offer(db, offer_id)
    if user.id not in (offer.buyer_id, offer.seller_id) and not user.is_admin:
        raise NotFoundError("Offer not found")
    return offer

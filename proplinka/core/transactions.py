"""
Transactions and the conveyancing lawyer directory.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.audit import log_admin_action
from proplinka.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from proplinka.core.fees import normalize_country
from proplinka.core.notifications import create_notification
from proplinka.database.models import Lawyer, Profile, Property, Transaction
from proplinka.utils.time import utc_now

logger = structlog.get_logger(__name__)

MIN_LAWYER_FEE = Decimal("1000")
MAX_LAWYER_FEE = Decimal("1000000")
LAWYER_SELECTION_STATUSES = ("initiated", "lawyers_selected")


def serialize_transaction(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": str(transaction.id),
        "property_id": str(transaction.property_id),
        "offer_id": str(transaction.offer_id) if transaction.offer_id else None,
        "buyer_id": str(transaction.buyer_id),
        "seller_id": str(transaction.seller_id),
        "lawyer_buyer_id": str(transaction.lawyer_buyer_id) if transaction.lawyer_buyer_id else None,
        "lawyer_seller_id": (
            str(transaction.lawyer_seller_id) if transaction.lawyer_seller_id else None
        ),
        "agreed_price": transaction.agreed_price,
        "currency": transaction.currency,
        "status": transaction.status,
        "buyer_success_fee_paid": transaction.buyer_success_fee_paid,
        "seller_success_fee_paid": transaction.seller_success_fee_paid,
        "platform_fee_amount": transaction.platform_fee_amount,
        "completed_at": transaction.completed_at.isoformat() if transaction.completed_at else None,
        "created_at": transaction.created_at.isoformat(),
    }


def serialize_lawyer(lawyer: Lawyer) -> Dict[str, Any]:
    return {
        "id": str(lawyer.id),
        "profile_id": str(lawyer.profile_id),
        "firm_name": lawyer.firm_name,
        "country_code": lawyer.country_code,
        "flat_fee_buyer": lawyer.flat_fee_buyer,
        "flat_fee_seller": lawyer.flat_fee_seller,
        "verified": lawyer.verified,
        "available": lawyer.available,
        "remittance_status": lawyer.remittance_status,
        "outstanding_fees": lawyer.outstanding_fees,
        "rating": lawyer.rating,
        "reviews_count": lawyer.reviews_count,
    }


def _validate_lawyer_fee(value: Any, label: str) -> Decimal:
    fee = Decimal(str(value))
    if not MIN_LAWYER_FEE <= fee <= MAX_LAWYER_FEE:
        raise ValidationError(f"{label} must be between 1,000 and 1,000,000")
    return fee


async def register_lawyer(
    db: AsyncSession,
    user: Profile,
    firm_name: str,
    flat_fee_buyer: Any,
    flat_fee_seller: Any,
    country_code: Optional[str] = None,
) -> Lawyer:
    """
    Create an unverified lawyer listing for the caller.

    Raises:
        ConflictError: If the caller is already registered
        ValidationError: If a fee is out of range
    """
    existing = (
        await db.execute(select(Lawyer).where(Lawyer.profile_id == user.id))
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("You are already registered as a lawyer")
    if not firm_name or len(firm_name.strip()) < 2:
        raise ValidationError("Firm name is required")

    lawyer = Lawyer(
        profile_id=user.id,
        firm_name=firm_name.strip(),
        country_code=normalize_country(country_code or user.country_code),
        flat_fee_buyer=_validate_lawyer_fee(flat_fee_buyer, "Buyer fee"),
        flat_fee_seller=_validate_lawyer_fee(flat_fee_seller, "Seller fee"),
        verified=False,
        available=True,
    )
    user.user_type = "lawyer"
    db.add(lawyer)
    await db.flush()
    logger.info("lawyer_registered", lawyer_id=str(lawyer.id), profile_id=str(user.id))
    return lawyer


async def list_lawyers(db: AsyncSession, country_code: Optional[str] = None) -> List[Lawyer]:
    """Verified, available lawyers, cheapest buyer fee first."""
    stmt = select(Lawyer).where(Lawyer.verified.is_(True), Lawyer.available.is_(True))
    if country_code:
        stmt = stmt.where(Lawyer.country_code == country_code.upper())
    result = await db.execute(stmt.order_by(Lawyer.flat_fee_buyer, Lawyer.firm_name))
    return list(result.scalars().all())


async def set_lawyer_verification(
    db: AsyncSession, admin: Profile, lawyer_id: uuid.UUID, verified: bool
) -> Lawyer:
    """Verify or unverify a lawyer (admin)."""
    lawyer = await db.get(Lawyer, lawyer_id)
    if lawyer is None:
        raise NotFoundError("Lawyer not found")
    lawyer.verified = verified
    await log_admin_action(
        db,
        actor_id=admin.id,
        action="lawyer_verify" if verified else "lawyer_unverify",
        resource_type="lawyer",
        resource_id=lawyer.id,
    )
    await create_notification(
        db,
        user_id=lawyer.profile_id,
        notification_type="lawyer_verification",
        title="Lawyer profile verified" if verified else "Lawyer verification removed",
    )
    await db.flush()
    return lawyer


async def _lawyer_profile_ids(db: AsyncSession, transaction: Transaction) -> List[uuid.UUID]:
    lawyer_ids = [i for i in (transaction.lawyer_buyer_id, transaction.lawyer_seller_id) if i]
    if not lawyer_ids:
        return []
    result = await db.execute(select(Lawyer.profile_id).where(Lawyer.id.in_(lawyer_ids)))
    return list(result.scalars().all())


async def get_transaction(
    db: AsyncSession, user: Profile, transaction_id: uuid.UUID
) -> Transaction:
    """
    Load a transaction visible to its parties, their lawyers and admins.

    Raises:
        NotFoundError: If missing or not visible
    """
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None:
        raise NotFoundError("Transaction not found")
    if user.is_admin or transaction.party_role(user.id):
        return transaction
    if user.id in await _lawyer_profile_ids(db, transaction):
        return transaction
    raise NotFoundError("Transaction not found")


async def list_transactions(db: AsyncSession, user: Profile) -> List[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(or_(Transaction.buyer_id == user.id, Transaction.seller_id == user.id))
        .order_by(Transaction.created_at.desc())
    )
    return list(result.scalars().all())


async def select_lawyer(
    db: AsyncSession, user: Profile, transaction_id: uuid.UUID, lawyer_id: uuid.UUID
) -> Transaction:
    """
    Choose the conveyancer for the caller's side of a transaction.

    The buyer picks the buyer's lawyer and the seller the seller's lawyer.
    Once both are chosen the transaction moves to lawyers_selected.

    Raises:
        NotFoundError: If the transaction or lawyer does not exist
        PermissionDeniedError: If the caller is not a party
        ConflictError: If the transaction is past lawyer selection
        ValidationError: If the lawyer is not verified and available
    """
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None:
        raise NotFoundError("Transaction not found")
    role = transaction.party_role(user.id)
    if role is None:
        raise PermissionDeniedError("Only the buyer or seller can select a lawyer")
    if transaction.status not in LAWYER_SELECTION_STATUSES:
        raise ConflictError(f"Cannot select a lawyer for a {transaction.status} transaction")

    lawyer = await db.get(Lawyer, lawyer_id)
    if lawyer is None:
        raise NotFoundError("Lawyer not found")
    if not lawyer.verified or not lawyer.available:
        raise ValidationError("This lawyer is not currently accepting clients")

    if role == "buyer":
        transaction.lawyer_buyer_id = lawyer.id
    else:
        transaction.lawyer_seller_id = lawyer.id

    if transaction.lawyer_buyer_id and transaction.lawyer_seller_id:
        transaction.status = "lawyers_selected"

    await create_notification(
        db,
        user_id=lawyer.profile_id,
        notification_type="lawyer_selected",
        title="New client",
        body=f"You were selected as the {role}'s lawyer on a transaction.",
        link=f"/transactions/{transaction.id}",
    )
    await db.flush()
    logger.info(
        "lawyer_selected",
        transaction_id=str(transaction.id),
        lawyer_id=str(lawyer.id),
        role=role,
        status=transaction.status,
    )
    return transaction


async def cancel_transaction(
    db: AsyncSession, admin: Profile, transaction_id: uuid.UUID, reason: str
) -> Transaction:
    """
    Cancel a transaction that has not completed (admin).

    The property goes back on the market.
    """
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None:
        raise NotFoundError("Transaction not found")
    if transaction.status in ("completed", "cancelled"):
        raise ConflictError(f"Cannot cancel a {transaction.status} transaction")

    transaction.status = "cancelled"
    transaction.cancelled_at = utc_now()
    prop = await db.get(Property, transaction.property_id)
    if prop is not None and prop.status == "under_offer":
        prop.status = "active"

    for user_id in (transaction.buyer_id, transaction.seller_id):
        await create_notification(
            db,
            user_id=user_id,
            notification_type="transaction_cancelled",
            title="Transaction cancelled",
            body=reason,
            link=f"/transactions/{transaction.id}",
        )
    await log_admin_action(
        db,
        actor_id=admin.id,
        action="transaction_cancel",
        resource_type="transaction",
        resource_id=transaction.id,
        details={"reason": reason},
    )
    await db.flush()
    return transaction

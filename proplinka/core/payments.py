"""
Payment state transitions shared by webhooks and reconciliation.

Every function here is idempotent: applying the same Stripe outcome twice
leaves the database as it was after the first application.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core import platform_settings
from proplinka.core.exceptions import NotFoundError, ValidationError
from proplinka.core.fees import platform_fee_for_price
from proplinka.core.listings import extend_featured_until
from proplinka.core.notifications import create_notification
from proplinka.database.models import Payment, PaymentEvent, Property, Transaction
from proplinka.integrations.stripe_client import from_minor_units
from proplinka.monitoring.metrics import metrics
from proplinka.utils.time import utc_now

logger = structlog.get_logger(__name__)

SUCCESS_FEE_TYPES = ("success_fee_buyer", "success_fee_seller")
# premium_30 has no fixed price: it follows the premium_listing_price setting
FEATURED_PLANS = {
    "featured_7": {"days": 7, "premium": False, "price": Decimal("49")},
    "featured_30": {"days": 30, "premium": False, "price": Decimal("149")},
    "premium_30": {"days": 30, "premium": True, "price": None},
}
REFUND_TERMINAL_STATUSES = ("refunded",)


def record_payment_event(
    db: AsyncSession,
    payment_id: uuid.UUID,
    event_type: str,
    event_data: Dict[str, Any],
    source: str = "api",
) -> None:
    """Append a payment audit row in the caller's transaction."""
    db.add(
        PaymentEvent(
            payment_id=payment_id,
            event_type=event_type,
            event_data=event_data,
            source=source,
        )
    )


def resolve_payment_type(metadata: Mapping[str, Any]) -> Optional[str]:
    """
    Payment type of a checkout session.

    Sessions created before payment_type was added to the metadata only
    carry user_role.
    """
    payment_type = metadata.get("payment_type")
    if payment_type:
        return payment_type
    role = metadata.get("user_role")
    if role in ("buyer", "seller"):
        return f"success_fee_{role}"
    return None


def _parse_uuid(value: Any, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {field} in checkout metadata: {value}") from e


async def payments_for_session(db: AsyncSession, session_id: str) -> List[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.stripe_checkout_session_id == session_id)
    )
    return list(result.scalars().all())


def _mark_succeeded(
    db: AsyncSession,
    payment: Payment,
    payment_intent_id: Optional[str],
    source: str,
    amount_total: Optional[int] = None,
) -> bool:
    if payment.status != "pending":
        return False
    payment.status = "succeeded"
    if amount_total:
        # What Stripe charged wins over the estimate stored at checkout
        payment.amount = from_minor_units(amount_total)
    payment.stripe_payment_intent_id = payment_intent_id or payment.stripe_payment_intent_id
    payment.paid_at = utc_now()
    record_payment_event(
        db,
        payment.id,
        "payment.succeeded",
        {"payment_intent_id": payment_intent_id, "session_id": payment.stripe_checkout_session_id},
        source=source,
    )
    return True


async def _create_referral_fees(db: AsyncSession, transaction: Transaction) -> List[Payment]:
    """
    One pending lawyer_referral payment per selected lawyer, never duplicated.

    Nothing is owed while the referrals feature is switched off.
    """
    if not await platform_settings.is_feature_enabled(db, "referrals"):
        logger.info("referral_fees_disabled", transaction_id=str(transaction.id))
        return []
    fee = Decimal(str(await platform_settings.get_setting(db, "lawyer_referral_fee")))
    created = []
    # A lawyer acting for both sides is owed one fee
    lawyer_ids = {transaction.lawyer_buyer_id, transaction.lawyer_seller_id} - {None}
    for lawyer_id in sorted(lawyer_ids, key=str):
        existing = (
            await db.execute(
                select(Payment.id).where(
                    Payment.payment_type == "lawyer_referral",
                    Payment.transaction_id == transaction.id,
                    Payment.lawyer_id == lawyer_id,
                )
            )
        ).first()
        if existing is not None:
            continue
        payment = Payment(
            payment_type="lawyer_referral",
            transaction_id=transaction.id,
            lawyer_id=lawyer_id,
            amount=fee,
            currency=transaction.currency,
            status="pending",
        )
        db.add(payment)
        created.append(payment)
    await db.flush()
    for payment in created:
        record_payment_event(
            db, payment.id, "referral_fee.created", {"transaction_id": str(transaction.id)}
        )
    return created


async def complete_transaction(db: AsyncSession, transaction: Transaction) -> bool:
    """
    Complete a transaction once both success fees are paid.

    Returns:
        bool: True if this call completed it
    """
    if transaction.status in ("completed", "cancelled"):
        return False
    if not (transaction.buyer_success_fee_paid and transaction.seller_success_fee_paid):
        return False

    transaction.status = "completed"
    transaction.completed_at = utc_now()
    transaction.platform_fee_amount = platform_fee_for_price(transaction.agreed_price)

    prop = await db.get(Property, transaction.property_id)
    if prop is not None:
        prop.status = "sold"

    referrals = await _create_referral_fees(db, transaction)

    for user_id in (transaction.buyer_id, transaction.seller_id):
        await create_notification(
            db,
            user_id=user_id,
            notification_type="transaction_completed",
            title="Transaction completed",
            body="Both success fees are paid. Your lawyers will take it from here.",
            link=f"/transactions/{transaction.id}",
        )

    metrics.record_transaction_completed()
    logger.info(
        "transaction_completed",
        transaction_id=str(transaction.id),
        platform_fee=str(transaction.platform_fee_amount),
        referral_fees=len(referrals),
    )
    return True


async def apply_success_fee_paid(
    db: AsyncSession,
    session_id: str,
    payment_intent_id: Optional[str],
    metadata: Mapping[str, Any],
    source: str = "webhook",
    amount_total: Optional[int] = None,
) -> Transaction:
    """
    Record a paid success fee and cascade to transaction completion.

    Raises:
        ValidationError: If the metadata is unusable
        NotFoundError: If the transaction does not exist
    """
    payment_type = resolve_payment_type(metadata)
    if payment_type not in SUCCESS_FEE_TYPES:
        raise ValidationError(f"Not a success fee session: {payment_type}")
    transaction_id = _parse_uuid(metadata.get("transaction_id"), "transaction_id")

    for payment in await payments_for_session(db, session_id):
        _mark_succeeded(db, payment, payment_intent_id, source, amount_total)

    transaction = await db.get(Transaction, transaction_id)
    if transaction is None:
        raise NotFoundError(f"Transaction not found: {transaction_id}")

    if payment_type == "success_fee_buyer":
        transaction.buyer_success_fee_paid = True
    else:
        transaction.seller_success_fee_paid = True

    await complete_transaction(db, transaction)
    await db.flush()

    logger.info(
        "success_fee_paid",
        transaction_id=str(transaction.id),
        payment_type=payment_type,
        status=transaction.status,
    )
    return transaction


async def apply_featured_listing_paid(
    db: AsyncSession,
    session_id: str,
    payment_intent_id: Optional[str],
    metadata: Mapping[str, Any],
    amount_total: Optional[int] = None,
    currency: Optional[str] = None,
    source: str = "webhook",
) -> Property:
    """
    Feature a listing for a paid plan.

    A session that already has a succeeded payment is not applied again.

    Raises:
        ValidationError: If required metadata is missing
        NotFoundError: If the property does not exist
    """
    missing = [k for k in ("property_id", "user_id", "plan", "days") if not metadata.get(k)]
    if missing:
        raise ValidationError(f"Featured listing metadata missing: {', '.join(missing)}")

    property_id = _parse_uuid(metadata["property_id"], "property_id")
    user_id = _parse_uuid(metadata["user_id"], "user_id")
    plan = metadata["plan"]
    days = int(metadata["days"])
    premium = FEATURED_PLANS.get(plan, {}).get("premium", False)

    prop = await db.get(Property, property_id)
    if prop is None:
        raise NotFoundError(f"Property not found: {property_id}")

    payments = await payments_for_session(db, session_id)
    if any(p.status == "succeeded" for p in payments):
        logger.info("featured_listing_already_applied", session_id=session_id)
        return prop

    if payments:
        for payment in payments:
            _mark_succeeded(db, payment, payment_intent_id, source, amount_total)
    else:
        payment = Payment(
            payment_type="premium_listing",
            user_id=user_id,
            property_id=property_id,
            amount=from_minor_units(amount_total),
            currency=(currency or prop.currency).upper(),
            status="succeeded",
            stripe_checkout_session_id=session_id,
            stripe_payment_intent_id=payment_intent_id,
            paid_at=utc_now(),
            metadata_={"plan": plan, "days": days},
        )
        db.add(payment)
        await db.flush()
        record_payment_event(
            db, payment.id, "payment.succeeded", {"session_id": session_id}, source=source
        )

    prop.featured = True
    prop.featured_until = extend_featured_until(prop.featured_until, days, utc_now())
    if premium:
        prop.premium = True
    await db.flush()

    logger.info(
        "featured_listing_activated",
        property_id=str(prop.id),
        plan=plan,
        featured_until=prop.featured_until.isoformat(),
    )
    return prop


async def mark_session_expired(db: AsyncSession, session_id: str, source: str = "webhook") -> int:
    """Fail pending payments of an expired checkout session."""
    count = 0
    for payment in await payments_for_session(db, session_id):
        if payment.status != "pending":
            continue
        payment.status = "failed"
        payment.error_message = "Checkout session expired"
        record_payment_event(
            db, payment.id, "checkout.expired", {"session_id": session_id}, source=source
        )
        count += 1
    await db.flush()
    logger.info("checkout_session_expired", session_id=session_id, payments=count)
    return count


async def mark_intent_failed(
    db: AsyncSession, payment_intent_id: str, error_message: Optional[str]
) -> int:
    result = await db.execute(
        select(Payment).where(Payment.stripe_payment_intent_id == payment_intent_id)
    )
    count = 0
    for payment in result.scalars().all():
        if payment.status not in ("pending", "failed"):
            continue
        payment.status = "failed"
        payment.error_message = error_message
        record_payment_event(
            db,
            payment.id,
            "payment.failed",
            {"payment_intent_id": payment_intent_id, "error": error_message},
            source="webhook",
        )
        count += 1
    await db.flush()
    logger.warning(
        "payment_intent_failed", payment_intent_id=payment_intent_id, payments=count
    )
    return count


async def apply_charge_refunded(
    db: AsyncSession, payment_intent_id: str, amount_refunded_cents: int
) -> Optional[Payment]:
    """
    Sync a refund reported by Stripe.

    Refunds issued from the dashboard arrive only through this path.
    """
    payment = (
        await db.execute(
            select(Payment).where(Payment.stripe_payment_intent_id == payment_intent_id)
        )
    ).scalars().first()
    if payment is None:
        logger.warning("refund_for_unknown_payment", payment_intent_id=payment_intent_id)
        return None

    refunded = from_minor_units(amount_refunded_cents)
    if payment.status in REFUND_TERMINAL_STATUSES and payment.refund_amount >= refunded:
        return payment

    payment.refund_amount = refunded
    payment.refunded_at = payment.refunded_at or utc_now()
    payment.status = "refunded" if refunded >= payment.amount else "partially_refunded"
    record_payment_event(
        db,
        payment.id,
        "charge.refunded",
        {"amount_refunded": amount_refunded_cents, "status": payment.status},
        source="webhook",
    )
    await db.flush()
    logger.info(
        "charge_refund_synced",
        payment_id=str(payment.id),
        refund_amount=str(refunded),
        status=payment.status,
    )
    return payment

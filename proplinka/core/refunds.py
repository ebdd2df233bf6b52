"""
Admin-initiated refunds.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.audit import log_admin_action
from proplinka.core.exceptions import (
    ConflictError,
    NotFoundError,
    PaymentError,
    PermissionDeniedError,
    ValidationError,
)
from proplinka.core.listings import unfeature_property
from proplinka.core.payments import record_payment_event
from proplinka.database.models import Payment, Profile
from proplinka.integrations.stripe_client import StripeClient, StripeError, to_minor_units
from proplinka.monitoring.metrics import metrics
from proplinka.utils.time import utc_now

logger = structlog.get_logger(__name__)

REFUNDABLE_STATUSES = ("succeeded", "partially_refunded")
STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def map_refund_reason(reason: Optional[str]) -> str:
    """Map a free-text reason onto one of Stripe's refund reasons."""
    text = (reason or "").lower()
    if "duplicate" in text:
        return "duplicate"
    if "fraud" in text:
        return "fraudulent"
    return "requested_by_customer"


def refund_status(payment: Payment) -> Dict[str, Any]:
    return {
        "payment_id": str(payment.id),
        "status": payment.status,
        "amount": payment.amount,
        "refund_amount": payment.refund_amount,
        "refundable_amount": payment.refundable_amount,
        "refund_reason": payment.refund_reason,
        "stripe_refund_id": payment.stripe_refund_id,
        "refunded_at": payment.refunded_at.isoformat() if payment.refunded_at else None,
    }


class RefundService:
    """Issues refunds through Stripe and records them."""

    def __init__(self, stripe_client: Optional[StripeClient] = None):
        self._stripe_client = stripe_client

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    async def refund_payment(
        self,
        db: AsyncSession,
        admin: Profile,
        payment_id: uuid.UUID,
        amount: Any = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Refund all or part of a payment.

        The amount is capped at what remains refundable. A fully refunded
        featured listing payment also unfeatures the listing.

        Args:
            db: Database session
            admin: Admin issuing the refund
            payment_id: Payment to refund
            amount: Optional partial amount in major units
            reason: Free-text reason

        Returns:
            Dict[str, Any]: Refund status after the refund

        Raises:
            PermissionDeniedError: If the caller is not an admin
            NotFoundError: If the payment does not exist
            ConflictError: If the payment is not refundable
            ValidationError: If the amount is not positive
            PaymentError: If Stripe fails
        """
        if not admin.is_admin:
            raise PermissionDeniedError("Admin access required")

        payment = await db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status not in REFUNDABLE_STATUSES:
            raise ConflictError(f"Cannot refund a payment with status: {payment.status}")
        if not payment.stripe_payment_intent_id:
            raise ConflictError("Payment has no Stripe payment intent")

        remaining = payment.refundable_amount
        requested = Decimal(str(amount)) if amount is not None else remaining
        refund_amount = min(requested, remaining)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be greater than zero")

        stripe_reason = map_refund_reason(reason)
        try:
            refund = await self.stripe_client.create_refund(
                payment_intent_id=payment.stripe_payment_intent_id,
                amount_cents=to_minor_units(refund_amount),
                reason=stripe_reason,
                metadata={"payment_id": str(payment.id), "admin_id": str(admin.id)},
                idempotency_key=f"refund-{payment.id}-{payment.refund_amount + refund_amount}",
            )
        except StripeError as e:
            logger.error("refund_failed", payment_id=str(payment.id), error=str(e))
            raise PaymentError(f"Refund failed: {str(e)}") from e

        payment.refund_amount = payment.refund_amount + refund_amount
        payment.refund_reason = reason
        payment.refunded_at = utc_now()
        payment.stripe_refund_id = refund.id
        full = payment.refund_amount >= payment.amount
        payment.status = "refunded" if full else "partially_refunded"

        if full and payment.payment_type == "premium_listing" and payment.property_id:
            await unfeature_property(db, payment.property_id)

        record_payment_event(
            db,
            payment.id,
            "refund.created",
            {
                "refund_id": refund.id,
                "amount": str(refund_amount),
                "reason": stripe_reason,
                "admin_id": str(admin.id),
            },
        )
        await log_admin_action(
            db,
            actor_id=admin.id,
            action="payment_refund",
            resource_type="payment",
            resource_id=payment.id,
            details={
                "amount": str(refund_amount),
                "reason": reason,
                "stripe_reason": stripe_reason,
                "refund_id": refund.id,
                "full": full,
            },
        )
        await db.flush()

        metrics.record_refund(payment.payment_type, full)
        logger.info(
            "payment_refunded",
            payment_id=str(payment.id),
            refund_amount=str(refund_amount),
            status=payment.status,
        )
        return refund_status(payment)

    async def get_refund_status(
        self, db: AsyncSession, admin: Profile, payment_id: uuid.UUID
    ) -> Dict[str, Any]:
        if not admin.is_admin:
            raise PermissionDeniedError("Admin access required")
        payment = await db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        return refund_status(payment)

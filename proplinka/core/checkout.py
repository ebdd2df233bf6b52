"""
Stripe Checkout for success fees and featured listings.

Flow:
1. Validate the caller and the resource
2. Compute the amount server side
3. Get or create the Stripe customer
4. Create the Checkout session
5. Insert a pending payment keyed by the session id

The payment is settled later by the webhook handler or by reconciliation.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.config import get_settings
from proplinka.core import platform_settings
from proplinka.core.exceptions import (
    ConflictError,
    FeatureDisabledError,
    NotFoundError,
    PaymentError,
    PermissionDeniedError,
    ValidationError,
)
from proplinka.core.fees import platform_fee_for_price, split_success_fee
from proplinka.core.payments import FEATURED_PLANS, record_payment_event
from proplinka.database.models import Payment, Profile, Property, Transaction
from proplinka.integrations.stripe_client import StripeClient, StripeError, price_line_item
from proplinka.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": str(payment.id),
        "payment_type": payment.payment_type,
        "transaction_id": str(payment.transaction_id) if payment.transaction_id else None,
        "property_id": str(payment.property_id) if payment.property_id else None,
        "lawyer_id": str(payment.lawyer_id) if payment.lawyer_id else None,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "refund_amount": payment.refund_amount,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
        "created_at": payment.created_at.isoformat(),
    }


class CheckoutService:
    """Creates Checkout sessions and their pending payment rows."""

    def __init__(self, stripe_client: Optional[StripeClient] = None):
        self.settings = get_settings()
        self._stripe_client = stripe_client

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    async def _ensure_customer(self, db: AsyncSession, user: Profile) -> str:
        if user.stripe_customer_id:
            return user.stripe_customer_id
        customer = await self.stripe_client.create_customer(
            email=user.email,
            name=user.full_name,
            metadata={"profile_id": str(user.id)},
            idempotency_key=f"customer-{user.id}",
        )
        user.stripe_customer_id = customer.id
        await db.flush()
        return customer.id

    async def _open_session(
        self,
        db: AsyncSession,
        user: Profile,
        line_item: Dict[str, Any],
        metadata: Dict[str, str],
        success_path: str,
        cancel_path: str,
    ) -> Any:
        site = self.settings.site_url.rstrip("/")
        try:
            customer_id = await self._ensure_customer(db, user)
            return await self.stripe_client.create_checkout_session(
                line_items=[line_item],
                success_url=f"{site}{success_path}?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{site}{cancel_path}",
                metadata=metadata,
                customer_id=customer_id,
            )
        except StripeError as e:
            logger.error(
                "checkout_session_failed",
                payment_type=metadata.get("payment_type"),
                error=str(e),
                error_type=e.error_type.value,
            )
            raise PaymentError(f"Could not start checkout: {str(e)}") from e

    async def create_success_fee_checkout(
        self, db: AsyncSession, user: Profile, transaction_id: uuid.UUID, role: str
    ) -> Dict[str, Any]:
        """
        Start checkout for the caller's share of the success fee.

        Args:
            db: Database session
            user: Paying party
            transaction_id: Transaction
            role: 'buyer' or 'seller'

        Returns:
            Dict[str, Any]: session_id, url, amount, currency and payment_id

        Raises:
            ValidationError: If the role is unknown or the fee is zero
            NotFoundError: If the transaction does not exist
            PermissionDeniedError: If the caller is not that party
            ConflictError: If the fee is already paid or the transaction is closed
            PaymentError: If Stripe fails
        """
        if role not in ("buyer", "seller"):
            raise ValidationError("Role must be 'buyer' or 'seller'")

        transaction = await db.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")
        if transaction.party_role(user.id) != role:
            raise PermissionDeniedError(f"Only the {role} can pay the {role} success fee")
        if transaction.status in ("completed", "cancelled"):
            raise ConflictError(f"Transaction is {transaction.status}")
        already_paid = (
            transaction.buyer_success_fee_paid
            if role == "buyer"
            else transaction.seller_success_fee_paid
        )
        if already_paid:
            raise ConflictError("Success fee already paid")

        fee_settings = await platform_settings.get_fee_settings(db)
        amount = split_success_fee(
            platform_fee_for_price(transaction.agreed_price),
            fee_settings["success_fee_buyer_percent"],
            fee_settings["success_fee_seller_percent"],
        )[role]
        if amount <= 0:
            raise ValidationError("No success fee is due for this transaction")

        payment_type = f"success_fee_{role}"
        metadata = {
            "transaction_id": str(transaction.id),
            "user_id": str(user.id),
            "user_role": role,
            "payment_type": payment_type,
        }
        line_item = price_line_item(
            f"PropLinka success fee ({role})", amount, transaction.currency
        )
        session = await self._open_session(
            db,
            user,
            line_item,
            metadata,
            success_path=f"/transactions/{transaction.id}/payment-success",
            cancel_path=f"/transactions/{transaction.id}",
        )

        payment = Payment(
            payment_type="success_fee",
            transaction_id=transaction.id,
            user_id=user.id,
            amount=amount,
            currency=transaction.currency,
            status="pending",
            stripe_checkout_session_id=session.id,
            metadata_=metadata,
        )
        db.add(payment)
        await db.flush()
        record_payment_event(db, payment.id, "checkout.created", {"session_id": session.id})

        metrics.record_checkout_session(payment_type)
        logger.info(
            "success_fee_checkout_created",
            transaction_id=str(transaction.id),
            role=role,
            amount=str(amount),
            session_id=session.id,
        )
        return {
            "session_id": session.id,
            "url": session.url,
            "amount": amount,
            "currency": transaction.currency,
            "payment_id": str(payment.id),
        }

    async def create_featured_listing_checkout(
        self, db: AsyncSession, user: Profile, property_id: uuid.UUID, plan: str
    ) -> Dict[str, Any]:
        """
        Start checkout for a featured listing plan.

        Raises:
            FeatureDisabledError: If premium listings are switched off
            ValidationError: If the plan is unknown
            NotFoundError: If the property does not exist
            PermissionDeniedError: If the caller does not own it
            ConflictError: If the property is not active
            PaymentError: If Stripe fails
        """
        if not await platform_settings.is_feature_enabled(db, "premium_listings"):
            raise FeatureDisabledError("Premium listings are currently disabled")
        if plan not in FEATURED_PLANS:
            raise ValidationError(f"Plan must be one of: {', '.join(FEATURED_PLANS)}")

        prop = await db.get(Property, property_id)
        if prop is None:
            raise NotFoundError("Property not found")
        if prop.seller_id != user.id:
            raise PermissionDeniedError("You can only feature your own properties")
        if prop.status != "active":
            raise ConflictError("Only active properties can be featured")

        days = FEATURED_PLANS[plan]["days"]
        amount = FEATURED_PLANS[plan]["price"]
        if amount is None:
            amount = Decimal(str(await platform_settings.get_setting(db, "premium_listing_price")))

        price_id = self.settings.get_featured_price_ids().get(plan)
        if price_id:
            line_item: Dict[str, Any] = {"price": price_id, "quantity": 1}
        else:
            line_item = price_line_item(f"Featured listing ({plan})", amount, prop.currency)

        metadata = {
            "property_id": str(prop.id),
            "user_id": str(user.id),
            "plan": plan,
            "days": str(days),
            "payment_type": "featured_listing",
        }
        session = await self._open_session(
            db,
            user,
            line_item,
            metadata,
            success_path=f"/properties/{prop.id}/featured-success",
            cancel_path=f"/properties/{prop.id}",
        )

        payment = Payment(
            payment_type="premium_listing",
            user_id=user.id,
            property_id=prop.id,
            amount=amount,
            currency=prop.currency,
            status="pending",
            stripe_checkout_session_id=session.id,
            metadata_=metadata,
        )
        db.add(payment)
        await db.flush()
        record_payment_event(db, payment.id, "checkout.created", {"session_id": session.id})

        metrics.record_checkout_session("featured_listing")
        logger.info(
            "featured_listing_checkout_created",
            property_id=str(prop.id),
            plan=plan,
            session_id=session.id,
        )
        return {
            "session_id": session.id,
            "url": session.url,
            "amount": amount,
            "currency": prop.currency,
            "payment_id": str(payment.id),
        }


async def get_payment(db: AsyncSession, user: Profile, payment_id: uuid.UUID) -> Payment:
    """Load a payment visible to its payer or an admin."""
    payment = await db.get(Payment, payment_id)
    if payment is None or (payment.user_id != user.id and not user.is_admin):
        raise NotFoundError("Payment not found")
    return payment

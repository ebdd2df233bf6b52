"""
Unit tests for Stripe webhook verification and event processing.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest
import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.platform_settings import update_setting
from proplinka.database.models import Payment, Profile, Transaction
from proplinka.integrations.webhook_handler import (
    WebhookHandler,
    WebhookProcessingError,
    WebhookSignatureError,
)
from proplinka.utils.time import ensure_aware, utc_now
from tests.factories import create_lawyer, create_payment, create_property, create_transaction
from tests.helpers import checkout_session, sign_webhook, stripe_event_payload


@pytest.fixture
def handler(redis_client: Any) -> WebhookHandler:
    webhook_handler = WebhookHandler(redis_client=redis_client)
    webhook_handler.register_default_handlers()
    return webhook_handler


def verified_event(handler: WebhookHandler, event_type: str, obj: dict, event_id: str = None) -> Any:
    payload = stripe_event_payload(event_type, obj, event_id=event_id)
    return handler.verify_signature(payload.encode("utf-8"), sign_webhook(payload))


def success_fee_metadata(transaction: Transaction, user: Profile, role: str) -> dict:
    return {
        "transaction_id": str(transaction.id),
        "user_id": str(user.id),
        "user_role": role,
        "payment_type": f"success_fee_{role}",
    }


class TestSignatureVerification:
    @pytest.mark.unit
    def test_valid_signature(self, handler: WebhookHandler) -> None:
        payload = stripe_event_payload("checkout.session.completed", {"id": "cs_1"}, "evt_valid")
        event = handler.verify_signature(payload.encode("utf-8"), sign_webhook(payload))

        assert event.id == "evt_valid"
        assert event.type == "checkout.session.completed"

    @pytest.mark.unit
    def test_wrong_secret_rejected(self, handler: WebhookHandler) -> None:
        payload = stripe_event_payload("checkout.session.completed", {"id": "cs_1"})
        with pytest.raises(WebhookSignatureError, match="Invalid webhook signature"):
            handler.verify_signature(payload.encode("utf-8"), sign_webhook(payload, "whsec_other"))

    @pytest.mark.unit
    def test_tampered_payload_rejected(self, handler: WebhookHandler) -> None:
        payload = stripe_event_payload("checkout.session.completed", {"id": "cs_1"})
        header = sign_webhook(payload)
        tampered = payload.replace("cs_1", "cs_2")
        with pytest.raises(WebhookSignatureError):
            handler.verify_signature(tampered.encode("utf-8"), header)

    @pytest.mark.unit
    def test_missing_header_rejected(self, handler: WebhookHandler) -> None:
        with pytest.raises(WebhookSignatureError, match="Missing"):
            handler.verify_signature(b"{}", None)


class TestSuccessFeeSettlement:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_fee_does_not_complete(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile, seller: Profile
    ) -> None:
        transaction = await create_transaction(db, buyer, seller)
        payment = await create_payment(
            db,
            transaction_id=transaction.id,
            user_id=buyer.id,
            stripe_checkout_session_id="cs_buyer",
        )

        event = verified_event(
            handler,
            "checkout.session.completed",
            checkout_session("cs_buyer", success_fee_metadata(transaction, buyer, "buyer"), "pi_b"),
        )
        result = await handler.process_event(event, db)

        assert result["status"] == "success"
        assert transaction.buyer_success_fee_paid is True
        assert transaction.seller_success_fee_paid is False
        assert transaction.status == "initiated"
        assert payment.status == "succeeded"
        assert payment.stripe_payment_intent_id == "pi_b"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_both_fees_complete_transaction(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile, seller: Profile
    ) -> None:
        lawyer_b = await create_lawyer(db)
        lawyer_s = await create_lawyer(db, firm_name="Jones Attorneys")
        prop = await create_property(db, seller, price=Decimal("1200000"), status="under_offer")
        transaction = await create_transaction(
            db,
            buyer,
            seller,
            prop=prop,
            lawyer_buyer_id=lawyer_b.id,
            lawyer_seller_id=lawyer_s.id,
            status="lawyers_selected",
        )

        for role, user in (("buyer", buyer), ("seller", seller)):
            event = verified_event(
                handler,
                "checkout.session.completed",
                checkout_session(
                    f"cs_{role}", success_fee_metadata(transaction, user, role), f"pi_{role}"
                ),
            )
            await handler.process_event(event, db)

        assert transaction.status == "completed"
        assert transaction.completed_at is not None
        assert transaction.platform_fee_amount == Decimal("9500")
        assert prop.status == "sold"

        referrals = (
            await db.execute(select(Payment).where(Payment.payment_type == "lawyer_referral"))
        ).scalars().all()
        assert {p.lawyer_id for p in referrals} == {lawyer_b.id, lawyer_s.id}
        assert all(p.amount == Decimal("750") and p.status == "pending" for p in referrals)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_legacy_metadata_with_only_user_role(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile, seller: Profile
    ) -> None:
        transaction = await create_transaction(db, buyer, seller)
        metadata = {"transaction_id": str(transaction.id), "user_role": "seller"}

        event = verified_event(
            handler, "checkout.session.completed", checkout_session("cs_legacy", metadata)
        )
        await handler.process_event(event, db)

        assert transaction.seller_success_fee_paid is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_event_is_skipped(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile, seller: Profile
    ) -> None:
        transaction = await create_transaction(db, buyer, seller)
        obj = checkout_session("cs_dup", success_fee_metadata(transaction, buyer, "buyer"))

        first = await handler.process_event(
            verified_event(handler, "checkout.session.completed", obj, "evt_dup"), db
        )
        second = await handler.process_event(
            verified_event(handler, "checkout.session.completed", obj, "evt_dup"), db
        )

        assert first["status"] == "success"
        assert second["status"] == "duplicate"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_after_completion_changes_nothing(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile, seller: Profile
    ) -> None:
        lawyer = await create_lawyer(db)
        transaction = await create_transaction(
            db,
            buyer,
            seller,
            lawyer_buyer_id=lawyer.id,
            buyer_success_fee_paid=True,
        )
        obj = checkout_session("cs_seller", success_fee_metadata(transaction, seller, "seller"))

        # Distinct event ids: the dedup store does not help here
        await handler.process_event(verified_event(handler, "checkout.session.completed", obj), db)
        completed_at = transaction.completed_at
        await handler.process_event(verified_event(handler, "checkout.session.completed", obj), db)

        assert transaction.status == "completed"
        assert transaction.completed_at == completed_at
        referrals = (
            await db.execute(select(Payment).where(Payment.payment_type == "lawyer_referral"))
        ).scalars().all()
        assert len(referrals) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_transaction_fails_and_is_retried(
        self, db: AsyncSession, handler: WebhookHandler, redis_client: Any
    ) -> None:
        metadata = {
            "transaction_id": "00000000-0000-0000-0000-000000000000",
            "payment_type": "success_fee_buyer",
        }
        event = verified_event(
            handler, "checkout.session.completed", checkout_session("cs_x", metadata), "evt_fail"
        )

        with pytest.raises(WebhookProcessingError):
            await handler.process_event(event, db)

        assert not await handler.is_event_processed("evt_fail")


class TestFeaturedListingSettlement:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_featured_listing_activated(
        self, db: AsyncSession, handler: WebhookHandler, seller: Profile
    ) -> None:
        prop = await create_property(db, seller)
        metadata = {
            "property_id": str(prop.id),
            "user_id": str(seller.id),
            "plan": "premium_30",
            "days": "30",
            "payment_type": "featured_listing",
        }
        obj = checkout_session("cs_feat", metadata, "pi_feat", amount_total=50000)

        result = await handler.process_event(
            verified_event(handler, "checkout.session.completed", obj), db
        )

        assert result["result"]["payment_type"] == "featured_listing"
        assert prop.featured is True
        assert prop.premium is True
        delta = ensure_aware(prop.featured_until) - utc_now()
        assert timedelta(days=29, hours=23) < delta <= timedelta(days=30)

        payment = (
            await db.execute(select(Payment).where(Payment.stripe_checkout_session_id == "cs_feat"))
        ).scalar_one()
        assert payment.payment_type == "premium_listing"
        assert payment.status == "succeeded"
        assert payment.amount == Decimal("500")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replayed_session_does_not_extend_twice(
        self, db: AsyncSession, handler: WebhookHandler, seller: Profile
    ) -> None:
        prop = await create_property(db, seller)
        metadata = {
            "property_id": str(prop.id),
            "user_id": str(seller.id),
            "plan": "featured_7",
            "days": "7",
            "payment_type": "featured_listing",
        }
        obj = checkout_session("cs_once", metadata)

        await handler.process_event(verified_event(handler, "checkout.session.completed", obj), db)
        first_until = prop.featured_until
        await handler.process_event(verified_event(handler, "checkout.session.completed", obj), db)

        assert prop.featured_until == first_until

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_metadata_fails(
        self, db: AsyncSession, handler: WebhookHandler
    ) -> None:
        obj = checkout_session("cs_bad", {"payment_type": "featured_listing", "plan": "featured_7"})
        with pytest.raises(WebhookProcessingError):
            await handler.process_event(
                verified_event(handler, "checkout.session.completed", obj), db
            )


class TestOtherEvents:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, db: AsyncSession, handler: WebhookHandler) -> None:
        event = verified_event(handler, "customer.created", {"id": "cus_1"}, "evt_other")
        result = await handler.process_event(event, db)

        assert result["status"] == "no_handler"
        assert await handler.is_event_processed("evt_other")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_payment_type_is_skipped(
        self, db: AsyncSession, handler: WebhookHandler
    ) -> None:
        event = verified_event(
            handler, "checkout.session.completed", checkout_session("cs_unknown", {})
        )
        result = await handler.process_event(event, db)

        assert result["status"] == "success"
        assert result["result"]["status"] == "skipped"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_session_fails_pending_payment(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile
    ) -> None:
        payment = await create_payment(db, user_id=buyer.id, stripe_checkout_session_id="cs_exp")

        event = verified_event(
            handler, "checkout.session.expired", checkout_session("cs_exp", {}, status="expired")
        )
        await handler.process_event(event, db)

        assert payment.status == "failed"
        assert payment.error_message == "Checkout session expired"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_intent_failed(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile
    ) -> None:
        payment = await create_payment(db, user_id=buyer.id, stripe_payment_intent_id="pi_fail")

        event = verified_event(
            handler,
            "payment_intent.payment_failed",
            {
                "id": "pi_fail",
                "object": "payment_intent",
                "last_payment_error": {"message": "Your card was declined."},
            },
        )
        await handler.process_event(event, db)

        assert payment.status == "failed"
        assert payment.error_message == "Your card was declined."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_then_full_refund(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile
    ) -> None:
        payment = await create_payment(
            db,
            user_id=buyer.id,
            amount=Decimal("4750"),
            status="succeeded",
            stripe_payment_intent_id="pi_refund",
        )

        for refunded in (100000, 475000):
            event = verified_event(
                handler,
                "charge.refunded",
                {
                    "id": "ch_1",
                    "object": "charge",
                    "payment_intent": "pi_refund",
                    "amount_refunded": refunded,
                },
            )
            await handler.process_event(event, db)
            if refunded == 100000:
                assert payment.status == "partially_refunded"
                assert payment.refund_amount == Decimal("1000")

        assert payment.status == "refunded"
        assert payment.refund_amount == Decimal("4750")


def constructed_event(event_type: str, obj: dict) -> stripe.Event:
    return stripe.Event.construct_from(
        {
            "id": f"evt_{obj['id']}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        },
        "sk_test_fake_key_for_testing",
    )


class TestConstructedEvents:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_checkout_completed_from_sdk_object(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile, seller: Profile
    ) -> None:
        transaction = await create_transaction(db, buyer, seller)
        payment = await create_payment(
            db, transaction_id=transaction.id, stripe_checkout_session_id="cs_sdk"
        )
        event = constructed_event(
            "checkout.session.completed",
            checkout_session("cs_sdk", success_fee_metadata(transaction, buyer, "buyer"), "pi_sdk"),
        )

        result = await handler.process_event(event, db)

        assert result["status"] == "success"
        assert transaction.buyer_success_fee_paid is True
        assert payment.stripe_payment_intent_id == "pi_sdk"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nested_payment_error_from_sdk_object(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile
    ) -> None:
        payment = await create_payment(db, user_id=buyer.id, stripe_payment_intent_id="pi_sdk_fail")
        event = constructed_event(
            "payment_intent.payment_failed",
            {
                "id": "pi_sdk_fail",
                "object": "payment_intent",
                "last_payment_error": {"message": "Insufficient funds.", "type": "card_error"},
            },
        )

        await handler.process_event(event, db)

        assert payment.status == "failed"
        assert payment.error_message == "Insufficient funds."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_refunded_from_sdk_object(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile
    ) -> None:
        payment = await create_payment(
            db, user_id=buyer.id, status="succeeded", stripe_payment_intent_id="pi_sdk_refund"
        )
        event = constructed_event(
            "charge.refunded",
            {
                "id": "ch_sdk",
                "object": "charge",
                "payment_intent": "pi_sdk_refund",
                "amount_refunded": 475000,
            },
        )

        await handler.process_event(event, db)

        assert payment.status == "refunded"


class TestReferralFees:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_referral_when_lawyer_acts_for_both_sides(
        self, db: AsyncSession, handler: WebhookHandler, buyer: Profile, seller: Profile
    ) -> None:
        lawyer = await create_lawyer(db)
        transaction = await create_transaction(
            db,
            buyer,
            seller,
            lawyer_buyer_id=lawyer.id,
            lawyer_seller_id=lawyer.id,
            status="lawyers_selected",
        )

        for role, user in (("buyer", buyer), ("seller", seller)):
            event = verified_event(
                handler,
                "checkout.session.completed",
                checkout_session(
                    f"cs_same_{role}", success_fee_metadata(transaction, user, role), f"pi_{role}"
                ),
            )
            await handler.process_event(event, db)

        referrals = (
            await db.execute(
                select(Payment).where(
                    Payment.payment_type == "lawyer_referral",
                    Payment.transaction_id == transaction.id,
                )
            )
        ).scalars().all()
        assert transaction.status == "completed"
        assert [p.lawyer_id for p in referrals] == [lawyer.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_referral_fees_while_referrals_are_off(
        self,
        db: AsyncSession,
        handler: WebhookHandler,
        buyer: Profile,
        seller: Profile,
        admin: Profile,
    ) -> None:
        lawyer = await create_lawyer(db)
        transaction = await create_transaction(
            db, buyer, seller, lawyer_buyer_id=lawyer.id, status="lawyers_selected"
        )
        await update_setting(db, "enable_referrals", False, admin.id)

        for role, user in (("buyer", buyer), ("seller", seller)):
            event = verified_event(
                handler,
                "checkout.session.completed",
                checkout_session(
                    f"cs_off_{role}", success_fee_metadata(transaction, user, role), f"pi_off_{role}"
                ),
            )
            await handler.process_event(event, db)

        referrals = (
            await db.execute(
                select(Payment).where(Payment.payment_type == "lawyer_referral")
            )
        ).scalars().all()
        assert transaction.status == "completed"
        assert referrals == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_schema_rejects_a_second_referral_row(
        self, db: AsyncSession, buyer: Profile, seller: Profile
    ) -> None:
        lawyer = await create_lawyer(db)
        transaction = await create_transaction(db, buyer, seller, lawyer_buyer_id=lawyer.id)
        await create_payment(
            db,
            payment_type="lawyer_referral",
            transaction_id=transaction.id,
            lawyer_id=lawyer.id,
            amount=Decimal("750"),
        )

        with pytest.raises(IntegrityError):
            await create_payment(
                db,
                payment_type="lawyer_referral",
                transaction_id=transaction.id,
                lawyer_id=lawyer.id,
                amount=Decimal("750"),
            )


class TestChargedAmount:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completion_records_what_stripe_charged(
        self, db: AsyncSession, handler: WebhookHandler, seller: Profile
    ) -> None:
        prop = await create_property(db, seller)
        metadata = {
            "property_id": str(prop.id),
            "user_id": str(seller.id),
            "plan": "featured_30",
            "days": "30",
            "payment_type": "featured_listing",
        }
        # Checkout estimated 149; the configured Stripe price charged 199
        payment = await create_payment(
            db,
            payment_type="premium_listing",
            user_id=seller.id,
            property_id=prop.id,
            amount=Decimal("149"),
            stripe_checkout_session_id="cs_priced",
            metadata_=metadata,
        )

        await handler.process_event(
            verified_event(
                handler,
                "checkout.session.completed",
                checkout_session("cs_priced", metadata, "pi_priced", amount_total=19900),
            ),
            db,
        )
        await handler.process_event(
            verified_event(
                handler,
                "charge.refunded",
                {
                    "id": "ch_priced",
                    "object": "charge",
                    "payment_intent": "pi_priced",
                    "amount_refunded": 14900,
                },
            ),
            db,
        )

        assert payment.amount == Decimal("199")
        assert payment.status == "partially_refunded"

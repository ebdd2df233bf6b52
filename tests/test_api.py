"""
Integration tests for the HTTP API.

Fixture rows are committed before requests: a failed request rolls the
shared session back.
"""
import uuid
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.fees import FEE_TIERS
from proplinka.core.platform_settings import update_setting
from proplinka.database.models import Payment, Profile, Transaction
from proplinka.integrations.stripe_client import StripeError, StripeErrorType
from tests.factories import (
    create_lawyer,
    create_payment,
    create_profile,
    create_property,
    create_transaction,
)
from tests.helpers import (
    auth_headers,
    checkout_session,
    make_token,
    sign_webhook,
    stripe_event_payload,
)

LISTING = {
    "title": "Family home in Windhoek West",
    "description": "Four bedroom home with a large garden, borehole, solar geyser and staff quarters.",
    "price": "1850000",
    "property_type": "house",
    "bedrooms": 4,
    "bathrooms": 2,
    "address": "7 Nelson Mandela Avenue",
    "city": "Windhoek",
    "country_code": "NA",
}
CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


class TestFeesEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_calculate(self, client: AsyncClient) -> None:
        response = await client.get("/fees/calculate", params={"price": 1000000, "country": "ZA"})

        assert response.status_code == 200
        body = response.json()
        assert Decimal(str(body["platform_fee"])) == Decimal("7500")
        assert Decimal(str(body["total_savings"])) == Decimal("52500")
        assert Decimal(str(body["savings_percentage"])) == Decimal("0.875")
        assert body["currency"] == "ZAR"
        assert body["display"]["savings"] == "R52,500"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_negative_price_is_a_client_error(self, client: AsyncClient) -> None:
        response = await client.get("/fees/calculate", params={"price": -1})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_fee_input"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tiers(self, client: AsyncClient) -> None:
        response = await client.get("/fees/tiers")

        assert response.status_code == 200
        assert len(response.json()) == len(FEE_TIERS)


class TestAuthentication:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_token(self, client: AsyncClient) -> None:
        response = await client.get("/profiles/me")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "unauthorized"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_and_expired_tokens(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile
    ) -> None:
        await db.commit()
        expired = make_token(buyer.id, expires_in=-60)

        bad = await client.get("/profiles/me", headers={"Authorization": "Bearer not-a-jwt"})
        old = await client.get("/profiles/me", headers={"Authorization": f"Bearer {expired}"})

        assert bad.status_code == 401
        assert old.status_code == 401

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_public_reads_ignore_a_bad_token(
        self, client: AsyncClient, db: AsyncSession, seller: Profile
    ) -> None:
        prop = await create_property(db, seller)
        await db.commit()
        headers = {"Authorization": "Bearer not-a-jwt"}

        listing = await client.get(f"/properties/{prop.id}", headers=headers)
        search = await client.get("/properties", headers=headers)

        assert listing.status_code == 200
        assert listing.json()["id"] == str(prop.id)
        assert search.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_current_profile(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile
    ) -> None:
        await db.commit()

        response = await client.get("/profiles/me", headers=auth_headers(buyer))

        assert response.status_code == 200
        assert response.json()["email"] == "buyer@example.com"
        assert response.headers["X-Request-ID"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_suspended_profile_forbidden(self, client: AsyncClient, db: AsyncSession) -> None:
        suspended = await create_profile(db, is_suspended=True)
        await db.commit()

        response = await client.get("/profiles/me", headers=auth_headers(suspended))

        assert response.status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_routes_need_admin_role(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, admin: Profile
    ) -> None:
        await db.commit()
        buyer_headers = auth_headers(buyer)
        admin_headers = auth_headers(admin)

        denied = await client.get("/admin/stats", headers=buyer_headers)
        allowed = await client.get("/admin/stats", headers=admin_headers)

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["total_users"] == 2


class TestPropertyEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_and_fetch(
        self, client: AsyncClient, db: AsyncSession, seller: Profile
    ) -> None:
        await db.commit()
        headers = auth_headers(seller)

        created = await client.post("/properties", json=LISTING, headers=headers)

        assert created.status_code == 201
        body = created.json()
        assert body["status"] == "pending_review"
        assert body["currency"] == "NAD"
        assert body["images"] == []

        # Pending listings are hidden from anonymous visitors
        anonymous = await client.get(f"/properties/{body['id']}")
        owner = await client.get(f"/properties/{body['id']}", headers=headers)
        assert anonymous.status_code == 404
        assert anonymous.json()["error"]["code"] == "not_found"
        assert owner.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_buyers_cannot_list(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile
    ) -> None:
        await db.commit()

        response = await client.post("/properties", json=LISTING, headers=auth_headers(buyer))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "permission_denied"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_schema_validation(
        self, client: AsyncClient, db: AsyncSession, seller: Profile
    ) -> None:
        await db.commit()

        response = await client.post(
            "/properties", json={**LISTING, "price": "500"}, headers=auth_headers(seller)
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert [f["field"] for f in error["fields"]] == ["price"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_search(self, client: AsyncClient, db: AsyncSession, seller: Profile) -> None:
        await create_property(db, seller, price=Decimal("900000"))
        await create_property(db, seller, price=Decimal("2900000"))
        await create_property(db, seller, status="pending_review")
        await db.commit()

        response = await client.get("/properties", params={"max_price": 1000000})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert len(body["items"]) == 1


class TestCheckoutEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_fee_checkout(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, seller: Profile
    ) -> None:
        transaction = await create_transaction(db, buyer, seller)
        await db.commit()

        response = await client.post(
            "/checkout/success-fee",
            json={"transaction_id": str(transaction.id), "role": "buyer"},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["session_id"] == "cs_test_123"
        assert Decimal(str(body["amount"])) == Decimal("4750")
        payment = await db.get(Payment, uuid.UUID(body["payment_id"]))
        assert payment.status == "pending"
        assert payment.stripe_checkout_session_id == "cs_test_123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stripe_outage_is_bad_gateway(
        self,
        client: AsyncClient,
        db: AsyncSession,
        buyer: Profile,
        seller: Profile,
        mock_stripe_client: AsyncMock,
    ) -> None:
        mock_stripe_client.create_checkout_session.side_effect = StripeError(
            "Service unavailable", StripeErrorType.TRANSIENT
        )
        transaction = await create_transaction(db, buyer, seller)
        await db.commit()

        response = await client.post(
            "/checkout/success-fee",
            json={"transaction_id": str(transaction.id), "role": "buyer"},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 502

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_role_rejected_by_schema(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile
    ) -> None:
        await db.commit()

        response = await client.post(
            "/checkout/success-fee",
            json={"transaction_id": str(uuid.uuid4()), "role": "agent"},
            headers=auth_headers(buyer),
        )

        assert response.status_code == 422


class TestStripeWebhookEndpoint:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_event_settles_success_fee(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, seller: Profile
    ) -> None:
        transaction = await create_transaction(db, buyer, seller)
        metadata = {
            "transaction_id": str(transaction.id),
            "user_id": str(buyer.id),
            "user_role": "buyer",
            "payment_type": "success_fee_buyer",
        }
        payment = await create_payment(
            db,
            transaction_id=transaction.id,
            user_id=buyer.id,
            stripe_checkout_session_id="cs_webhook_1",
            metadata_=metadata,
        )
        await db.commit()
        payload = stripe_event_payload(
            "checkout.session.completed", checkout_session("cs_webhook_1", metadata)
        )

        response = await client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign_webhook(payload), "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        await db.refresh(payment)
        await db.refresh(transaction)
        assert payment.status == "succeeded"
        assert transaction.buyer_success_fee_paid is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client: AsyncClient) -> None:
        payload = stripe_event_payload("checkout.session.completed", {"id": "cs_x"})

        forged = await client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign_webhook(payload, secret="whsec_wrong")},
        )
        unsigned = await client.post("/webhooks/stripe", content=payload)

        assert forged.status_code == 400
        assert unsigned.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processing_failure_asks_for_redelivery(
        self, client: AsyncClient, db: AsyncSession
    ) -> None:
        metadata = {"transaction_id": str(uuid.uuid4()), "payment_type": "success_fee_seller"}
        payload = stripe_event_payload(
            "checkout.session.completed", checkout_session("cs_missing", metadata)
        )

        response = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign_webhook(payload)}
        )

        assert response.status_code == 500


class TestPlatformControls:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_maintenance_mode_blocks_writes(
        self, client: AsyncClient, db: AsyncSession, seller: Profile, admin: Profile
    ) -> None:
        await db.commit()
        seller_headers = auth_headers(seller)

        enabled = await client.put(
            "/admin/settings/maintenance_mode", json={"value": True}, headers=auth_headers(admin)
        )
        blocked = await client.post("/properties", json=LISTING, headers=seller_headers)
        reads = await client.get("/properties")

        assert enabled.status_code == 200
        assert enabled.json() == {"key": "maintenance_mode", "value": True}
        assert blocked.status_code == 503
        assert reads.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_setting_value(
        self, client: AsyncClient, db: AsyncSession, admin: Profile
    ) -> None:
        await db.commit()

        response = await client.put(
            "/admin/settings/flag_threshold", json={"value": "lots"}, headers=auth_headers(admin)
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_inquiry_rate_limit(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, seller: Profile, admin: Profile
    ) -> None:
        prop = await create_property(db, seller)
        await update_setting(db, "rate_limit_inquiry", 1, admin.id)
        await db.commit()
        url = f"/properties/{prop.id}/inquiries"
        headers = auth_headers(buyer)

        first = await client.post(url, json={"message": "Is the price negotiable?"}, headers=headers)
        second = await client.post(url, json={"message": "Any news on the price?"}, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 429
        assert int(second.headers["Retry-After"]) >= 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_api_limit_covers_authenticated_routes(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, admin: Profile
    ) -> None:
        await update_setting(db, "rate_limit_api", 2, admin.id)
        await db.commit()
        headers = auth_headers(buyer)

        responses = [await client.get("/offers", headers=headers) for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 429]
        assert responses[-1].headers["X-RateLimit-Limit"] == "2"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lawyer_sign_up_is_limited_per_address(
        self, client: AsyncClient, db: AsyncSession, admin: Profile
    ) -> None:
        first_user = await create_profile(db, user_type="lawyer")
        second_user = await create_profile(db, user_type="lawyer")
        await update_setting(db, "rate_limit_auth", 1, admin.id)
        await db.commit()
        body = {"firm_name": "Kruger Attorneys", "flat_fee_buyer": "9500", "flat_fee_seller": "9500"}

        first = await client.post("/lawyers", json=body, headers=auth_headers(first_user))
        second = await client.post("/lawyers", json=body, headers=auth_headers(second_user))

        assert first.status_code == 201
        assert second.status_code == 429

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_inquiries_count_against_the_email_limit(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, seller: Profile, admin: Profile
    ) -> None:
        prop = await create_property(db, seller)
        await update_setting(db, "rate_limit_email", 1, admin.id)
        await db.commit()
        url = f"/properties/{prop.id}/inquiries"
        headers = auth_headers(buyer)

        first = await client.post(url, json={"message": "Is the price negotiable?"}, headers=headers)
        second = await client.post(url, json={"message": "Any news on the price?"}, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 429
        assert "email" in second.json()["error"]["message"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cron_requires_secret(self, client: AsyncClient) -> None:
        denied = await client.get("/cron/expire-featured-listings")
        wrong = await client.get(
            "/cron/expire-featured-listings", headers={"Authorization": "Bearer nope"}
        )
        allowed = await client.get("/cron/expire-featured-listings", headers=CRON_HEADERS)

        assert denied.status_code == 401
        assert wrong.status_code == 401
        assert allowed.status_code == 200
        assert allowed.json()["success"] is True
        assert allowed.json()["count"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cron_remittance_summary(self, client: AsyncClient) -> None:
        response = await client.get("/cron/check-overdue-remittances", headers=CRON_HEADERS)

        assert response.status_code == 200
        assert response.json()["summary"]["checked"] == 0


class TestOfferFlow:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_offer_to_transaction(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, seller: Profile
    ) -> None:
        prop = await create_property(db, seller)
        await db.commit()
        buyer_headers = auth_headers(buyer)
        seller_headers = auth_headers(seller)

        offered = await client.post(
            "/offers",
            json={"property_id": str(prop.id), "amount": "1150000"},
            headers=buyer_headers,
        )
        assert offered.status_code == 201

        accepted = await client.post(
            f"/offers/{offered.json()['id']}/accept", headers=seller_headers
        )
        assert accepted.status_code == 200

        transactions = await client.get("/transactions", headers=buyer_headers)
        assert transactions.status_code == 200
        items = transactions.json()
        assert len(items) == 1
        transaction = await db.get(Transaction, uuid.UUID(items[0]["id"]))
        assert transaction.agreed_price == Decimal("1150000")


class TestEngagementEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_save_and_book_a_viewing(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, seller: Profile
    ) -> None:
        prop = await create_property(db, seller)
        await db.commit()
        buyer_headers = auth_headers(buyer)

        saved = await client.post(f"/favorites/{prop.id}", headers=buyer_headers)
        assert saved.json() == {"property_id": str(prop.id), "favorited": True}
        listed = await client.get("/favorites", headers=buyer_headers)
        assert [item["property"]["id"] for item in listed.json()] == [str(prop.id)]

        requested = await client.post(
            "/viewings",
            json={
                "property_id": str(prop.id),
                "requested_date": (date.today() + timedelta(days=5)).isoformat(),
                "requested_time_slot": "afternoon",
                "financing_status": "cash",
            },
            headers=buyer_headers,
        )
        assert requested.status_code == 201
        viewing_id = requested.json()["id"]

        confirmed = await client.post(
            f"/viewings/{viewing_id}/confirm",
            json={
                "confirmed_date": (date.today() + timedelta(days=6)).isoformat(),
                "confirmed_time": "14:00",
            },
            headers=auth_headers(seller),
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "confirmed"

        mine = await client.get(f"/properties/{prop.id}/viewings/mine", headers=buyer_headers)
        assert mine.json()["has_open_viewing"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_viewing_request_schema_rejects_unknown_slot(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, seller: Profile
    ) -> None:
        prop = await create_property(db, seller)
        await db.commit()

        response = await client.post(
            "/viewings",
            json={
                "property_id": str(prop.id),
                "requested_date": (date.today() + timedelta(days=5)).isoformat(),
                "requested_time_slot": "midnight",
                "financing_status": "cash",
            },
            headers=auth_headers(buyer),
        )

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lawyer_review_shows_in_directory(
        self, client: AsyncClient, db: AsyncSession, buyer: Profile, seller: Profile
    ) -> None:
        lawyer = await create_lawyer(db)
        transaction = await create_transaction(
            db, buyer, seller, status="completed", lawyer_buyer_id=lawyer.id
        )
        await db.commit()

        submitted = await client.post(
            f"/transactions/{transaction.id}/lawyer-review",
            json={"rating": 4, "review_text": "Clear advice and a quick registration."},
            headers=auth_headers(buyer),
        )
        assert submitted.status_code == 200

        reviews = await client.get(f"/lawyers/{lawyer.id}/reviews")
        assert [r["rating"] for r in reviews.json()] == [4]
        directory = await client.get("/lawyers", params={"country_code": "ZA"})
        entry = next(item for item in directory.json() if item["id"] == str(lawyer.id))
        assert entry["reviews_count"] == 1


class TestMonitoring:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient) -> None:
        await client.get("/fees/tiers")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "checkout_sessions_created_total" in response.text

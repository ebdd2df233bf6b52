"""
Model factories for tests.
"""
import uuid
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.database.models import Lawyer, Payment, Profile, Property, Transaction


async def create_profile(
    db: AsyncSession,
    email: Optional[str] = None,
    user_type: str = "buyer",
    role: str = "user",
    **kwargs: Any,
) -> Profile:
    profile = Profile(
        email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
        full_name=kwargs.pop("full_name", "Test User"),
        user_type=user_type,
        role=role,
        country_code=kwargs.pop("country_code", "ZA"),
        **kwargs,
    )
    db.add(profile)
    await db.flush()
    return profile


async def create_property(
    db: AsyncSession,
    seller: Profile,
    price: Decimal = Decimal("1200000"),
    status: str = "active",
    **kwargs: Any,
) -> Property:
    prop = Property(
        seller_id=seller.id,
        title=kwargs.pop("title", "Three bedroom house in Claremont"),
        description=kwargs.pop(
            "description",
            "Spacious family home with a garden, a pool and a double garage near schools.",
        ),
        price=price,
        currency=kwargs.pop("currency", "ZAR"),
        property_type=kwargs.pop("property_type", "house"),
        bedrooms=kwargs.pop("bedrooms", 3),
        bathrooms=kwargs.pop("bathrooms", 2),
        address=kwargs.pop("address", "1 Main Road"),
        city=kwargs.pop("city", "Cape Town"),
        country_code=kwargs.pop("country_code", "ZA"),
        status=status,
        moderation_status=kwargs.pop(
            "moderation_status", "approved" if status == "active" else "pending"
        ),
        **kwargs,
    )
    db.add(prop)
    await db.flush()
    return prop


async def create_transaction(
    db: AsyncSession,
    buyer: Profile,
    seller: Profile,
    prop: Optional[Property] = None,
    agreed_price: Decimal = Decimal("1200000"),
    **kwargs: Any,
) -> Transaction:
    if prop is None:
        prop = await create_property(db, seller, price=agreed_price, status="under_offer")
    transaction = Transaction(
        property_id=prop.id,
        buyer_id=buyer.id,
        seller_id=seller.id,
        agreed_price=agreed_price,
        currency=prop.currency,
        status=kwargs.pop("status", "initiated"),
        **kwargs,
    )
    db.add(transaction)
    await db.flush()
    return transaction


async def create_lawyer(
    db: AsyncSession,
    profile: Optional[Profile] = None,
    verified: bool = True,
    **kwargs: Any,
) -> Lawyer:
    if profile is None:
        profile = await create_profile(db, user_type="lawyer")
    lawyer = Lawyer(
        profile_id=profile.id,
        firm_name=kwargs.pop("firm_name", "Smith Conveyancers"),
        country_code=kwargs.pop("country_code", "ZA"),
        flat_fee_buyer=kwargs.pop("flat_fee_buyer", Decimal("8000")),
        flat_fee_seller=kwargs.pop("flat_fee_seller", Decimal("9000")),
        verified=verified,
        available=kwargs.pop("available", True),
        **kwargs,
    )
    db.add(lawyer)
    await db.flush()
    return lawyer


async def create_payment(db: AsyncSession, **kwargs: Any) -> Payment:
    payment = Payment(
        payment_type=kwargs.pop("payment_type", "success_fee"),
        amount=kwargs.pop("amount", Decimal("4750")),
        currency=kwargs.pop("currency", "ZAR"),
        status=kwargs.pop("status", "pending"),
        **kwargs,
    )
    db.add(payment)
    await db.flush()
    return payment

"""SQLAlchemy database models for the PropLinka marketplace."""
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from proplinka.utils.time import utc_now

# SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
Money = Numeric(14, 2)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Country(Base):
    """Supported countries and their currencies."""

    __tablename__ = "countries"

    code: Mapped[str] = mapped_column(String(2), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    currency_symbol: Mapped[str] = mapped_column(String(5), nullable=False)

    def __repr__(self) -> str:
        return f"<Country(code={self.code}, currency={self.currency})>"


class Profile(Base):
    """
    User profile.

    The id is the subject of the auth provider's access token; credentials
    never live in this database.
    """

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    country_code: Mapped[str] = mapped_column(
        String(2), ForeignKey("countries.code"), nullable=False, default="ZA"
    )
    user_type: Mapped[str] = mapped_column(String(20), nullable=False, default="buyer")
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user", index=True)
    is_suspended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    suspended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    suspension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "user_type IN ('buyer', 'seller', 'both', 'lawyer')", name="valid_user_type"
        ),
        CheckConstraint("role IN ('user', 'moderator', 'admin')", name="valid_role"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_moderator(self) -> bool:
        return self.role in ("moderator", "admin")

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, email={self.email}, role={self.role})>"


class Lawyer(Base):
    """
    Conveyancing lawyer listed in the directory.

    Lawyers owe the platform a referral fee for each completed transaction
    they were selected for; remittance_status tracks how late they are.
    """

    __tablename__ = "lawyers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), unique=True, nullable=False
    )
    firm_name: Mapped[str] = mapped_column(String(200), nullable=False)
    country_code: Mapped[str] = mapped_column(
        String(2), ForeignKey("countries.code"), nullable=False, default="ZA"
    )
    flat_fee_buyer: Mapped[Decimal] = mapped_column(Money, nullable=False)
    flat_fee_seller: Mapped[Decimal] = mapped_column(Money, nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    remittance_status: Mapped[str] = mapped_column(String(20), nullable=False, default="current")
    outstanding_fees: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    remittance_reminder_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    suspended_for_non_payment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Average of lawyer_reviews.rating, None until the first review
    rating: Mapped[Decimal | None] = mapped_column(Numeric(3, 2), nullable=True)
    reviews_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "remittance_status IN ('current', 'warning', 'overdue', 'suspended')",
            name="valid_remittance_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Lawyer(id={self.id}, firm={self.firm_name}, "
            f"remittance_status={self.remittance_status})>"
        )


class Property(Base):
    """Property listing."""

    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    property_type: Mapped[str] = mapped_column(String(20), nullable=False)
    bedrooms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bathrooms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    address: Mapped[str] = mapped_column(String(300), nullable=False)
    city: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    country_code: Mapped[str] = mapped_column(
        String(2), ForeignKey("countries.code"), nullable=False, default="ZA"
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", index=True)
    moderation_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    moderation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    featured_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    premium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("price > 0", name="positive_price"),
        CheckConstraint(
            "status IN ('draft', 'pending_review', 'active', 'under_offer', 'sold', "
            "'rejected', 'suspended', 'withdrawn')",
            name="valid_property_status",
        ),
        CheckConstraint(
            "moderation_status IN ('pending', 'approved', 'rejected', 'flagged')",
            name="valid_moderation_status",
        ),
        Index("idx_properties_status_featured", "status", "featured"),
    )

    def __repr__(self) -> str:
        return f"<Property(id={self.id}, title={self.title!r}, status={self.status})>"


class PropertyImage(Base):
    """Optimised image attached to a property."""

    __tablename__ = "property_images"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    thumbnail_url: Mapped[str] = mapped_column(String(500), nullable=False)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class PropertyReview(Base):
    """Moderation decision recorded against a property."""

    __tablename__ = "property_reviews"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    reviewer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("profiles.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class Favorite(Base):
    """Listing a user saved for later."""

    __tablename__ = "property_favorites"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "property_id", name="uq_property_favorites_user_property"),
    )


class Viewing(Base):
    """
    Buyer request to see a listing in person.

    pending -> confirmed -> completed | no_show; pending or confirmed
    viewings can be cancelled by either side.
    """

    __tablename__ = "property_viewings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    requested_date: Mapped[date] = mapped_column(Date, nullable=False)
    requested_time_slot: Mapped[str] = mapped_column(String(20), nullable=False)
    financing_status: Mapped[str] = mapped_column(String(30), nullable=False)
    pre_approval_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    buyer_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    confirmed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    confirmed_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    seller_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'completed', 'cancelled', 'no_show')",
            name="valid_viewing_status",
        ),
        CheckConstraint(
            "requested_time_slot IN ('morning', 'afternoon', 'evening')",
            name="valid_viewing_time_slot",
        ),
        CheckConstraint(
            "financing_status IN ('cash', 'pre_approved', 'financing_in_progress', 'exploring')",
            name="valid_financing_status",
        ),
    )

    def has_participant(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def __repr__(self) -> str:
        return f"<Viewing(id={self.id}, date={self.requested_date}, status={self.status})>"


class Offer(Base):
    """Purchase offer from a buyer on a property."""

    __tablename__ = "offers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    counter_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_offer_amount"),
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'countered', 'withdrawn', 'expired')",
            name="valid_offer_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Offer(id={self.id}, amount={self.amount}, status={self.status})>"


class Transaction(Base):
    """
    A deal between a buyer and a seller.

    Completed once both the buyer and the seller success fees are paid.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    offer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("offers.id"), nullable=True
    )
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    lawyer_buyer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("lawyers.id"), nullable=True
    )
    lawyer_seller_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("lawyers.id"), nullable=True
    )
    agreed_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="initiated")
    buyer_success_fee_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seller_success_fee_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    platform_fee_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('initiated', 'lawyers_selected', 'completed', 'cancelled')",
            name="valid_transaction_status",
        ),
    )

    def party_role(self, user_id: uuid.UUID) -> str | None:
        """Return 'buyer' or 'seller' for a party of this transaction."""
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        return None

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, status={self.status}, "
            f"buyer_paid={self.buyer_success_fee_paid}, "
            f"seller_paid={self.seller_success_fee_paid})>"
        )


class LawyerReview(Base):
    """A party's rating of the lawyer who acted for them on a completed deal."""

    __tablename__ = "lawyer_reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lawyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("lawyers.id"), nullable=False, index=True
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=False
    )
    reviewer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("profiles.id"), nullable=False)
    reviewer_role: Mapped[str] = mapped_column(String(10), nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    communication_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    professionalism_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    efficiency_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    review_text: Mapped[str] = mapped_column(Text, nullable=False)
    would_recommend: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("transaction_id", "reviewer_id", name="uq_lawyer_reviews_reviewer"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="valid_lawyer_rating"),
        CheckConstraint("reviewer_role IN ('buyer', 'seller')", name="valid_reviewer_role"),
    )


class Payment(Base):
    """
    Payment records table.

    Checkout payments are keyed by the Stripe checkout session id until the
    session completes and yields a payment intent id. Referral fees owed by
    lawyers are recorded here too, without any Stripe identifiers.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=True, index=True
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=True, index=True
    )
    lawyer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("lawyers.id"), nullable=True, index=True
    )
    property_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending", index=True)
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stripe_refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "payment_type IN ('success_fee', 'premium_listing', 'lawyer_referral')",
            name="valid_payment_type",
        ),
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed', 'refunded', 'partially_refunded')",
            name="valid_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        # Only referral rows carry lawyer_id; NULLs never collide
        UniqueConstraint(
            "transaction_id", "lawyer_id", "payment_type", name="uq_payments_referral"
        ),
        Index("idx_payments_type_status", "payment_type", "status"),
    )

    @property
    def amount_cents(self) -> int:
        return int(self.amount * 100)

    @property
    def refundable_amount(self) -> Decimal:
        return self.amount - (self.refund_amount or Decimal("0"))

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, type={self.payment_type}, "
            f"amount={self.amount}, status={self.status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every state change of a payment. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="api")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )


class ReconciliationRun(Base):
    """Result of a pending-payment reconciliation run against Stripe."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expired: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unchanged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<ReconciliationRun(id={self.id}, status={self.status}, checked={self.checked})>"


class Conversation(Base):
    """Two-party conversation, optionally about a property."""

    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=True
    )
    participant_one_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    participant_two_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def has_participant(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.participant_one_id, self.participant_two_id)

    def other_participant(self, user_id: uuid.UUID) -> uuid.UUID:
        if user_id == self.participant_one_id:
            return self.participant_two_id
        return self.participant_one_id


class Message(Base):
    """Chat message within a conversation."""

    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id"), nullable=False, index=True
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("profiles.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )


class Notification(Base):
    """In-app notification."""

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False, index=True
    )
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class ContentFlag(Base):
    """User report against a property, message or profile."""

    __tablename__ = "content_flags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reporter_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("profiles.id"), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(20), nullable=False)
    resource_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("reporter_id", "resource_type", "resource_id", name="uq_flag_reporter"),
        CheckConstraint(
            "resource_type IN ('property', 'message', 'profile')", name="valid_flag_resource"
        ),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')", name="valid_flag_status"
        ),
        Index("idx_flags_resource", "resource_type", "resource_id"),
    )


class AuditLog(Base):
    """
    Administrative audit trail.

    Immutable once written.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, actor={self.actor_id})>"


class PlatformSetting(Base):
    """Runtime-editable platform setting."""

    __tablename__ = "platform_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

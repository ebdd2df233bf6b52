"""
Lawyer reviews.

After a transaction completes, the buyer and the seller can each rate the
lawyer who acted for them. Resubmitting updates the earlier review. The
lawyer's directory rating is the average of all their reviews.
"""
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from proplinka.core.notifications import create_notification
from proplinka.database.models import Lawyer, LawyerReview, Profile, Transaction

logger = structlog.get_logger(__name__)

MIN_REVIEW_LENGTH = 20
MAX_REVIEW_LENGTH = 1000


def serialize_review(review: LawyerReview) -> Dict[str, Any]:
    return {
        "id": str(review.id),
        "lawyer_id": str(review.lawyer_id),
        "transaction_id": str(review.transaction_id),
        "reviewer_role": review.reviewer_role,
        "rating": review.rating,
        "communication_rating": review.communication_rating,
        "professionalism_rating": review.professionalism_rating,
        "efficiency_rating": review.efficiency_rating,
        "review_text": review.review_text,
        "would_recommend": review.would_recommend,
        "created_at": review.created_at.isoformat(),
    }


def _check_rating(value: Optional[int], label: str, required: bool = False) -> Optional[int]:
    if value is None:
        if required:
            raise ValidationError(f"{label} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
        raise ValidationError(f"{label} must be a whole number from 1 to 5")
    return value


async def _refresh_lawyer_rating(db: AsyncSession, lawyer: Lawyer) -> None:
    average, count = (
        await db.execute(
            select(func.avg(LawyerReview.rating), func.count(LawyerReview.id)).where(
                LawyerReview.lawyer_id == lawyer.id
            )
        )
    ).one()
    lawyer.reviews_count = count
    lawyer.rating = (
        Decimal(str(average)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP) if count else None
    )


async def submit_review(
    db: AsyncSession,
    user: Profile,
    transaction_id: uuid.UUID,
    rating: int,
    review_text: str,
    would_recommend: bool = True,
    communication_rating: Optional[int] = None,
    professionalism_rating: Optional[int] = None,
    efficiency_rating: Optional[int] = None,
) -> LawyerReview:
    """
    Rate the lawyer who acted for the caller on a completed transaction.

    Returns:
        LawyerReview: The new or updated review

    Raises:
        NotFoundError: If the transaction is not the caller's
        ConflictError: If it is not completed or the caller had no lawyer
        ValidationError: If a rating or the text is out of range
    """
    transaction = await db.get(Transaction, transaction_id)
    role = transaction.party_role(user.id) if transaction is not None else None
    if role is None:
        raise NotFoundError("Transaction not found")
    if transaction.status != "completed":
        raise ConflictError("Lawyers can be reviewed once the transaction is completed")
    lawyer_id = transaction.lawyer_buyer_id if role == "buyer" else transaction.lawyer_seller_id
    if lawyer_id is None:
        raise ConflictError("No lawyer acted for you on this transaction")

    ratings = {
        "rating": _check_rating(rating, "Rating", required=True),
        "communication_rating": _check_rating(communication_rating, "Communication rating"),
        "professionalism_rating": _check_rating(professionalism_rating, "Professionalism rating"),
        "efficiency_rating": _check_rating(efficiency_rating, "Efficiency rating"),
    }
    text = (review_text or "").strip()
    if not MIN_REVIEW_LENGTH <= len(text) <= MAX_REVIEW_LENGTH:
        raise ValidationError(
            f"Review must be between {MIN_REVIEW_LENGTH} and {MAX_REVIEW_LENGTH} characters"
        )

    review = (
        await db.execute(
            select(LawyerReview).where(
                LawyerReview.transaction_id == transaction.id,
                LawyerReview.reviewer_id == user.id,
            )
        )
    ).scalar_one_or_none()
    created = review is None
    if created:
        review = LawyerReview(
            lawyer_id=lawyer_id,
            transaction_id=transaction.id,
            reviewer_id=user.id,
            reviewer_role=role,
        )
        db.add(review)
    for field, value in ratings.items():
        setattr(review, field, value)
    review.review_text = text
    review.would_recommend = would_recommend
    await db.flush()

    lawyer = await db.get(Lawyer, lawyer_id)
    await _refresh_lawyer_rating(db, lawyer)
    await db.flush()

    if created:
        await create_notification(
            db,
            user_id=lawyer.profile_id,
            notification_type="lawyer_review_received",
            title="New review",
            body=f"A {role} rated your work {review.rating} out of 5.",
            link=f"/lawyers/{lawyer.id}/reviews",
        )
    logger.info(
        "lawyer_review_saved",
        lawyer_id=str(lawyer.id),
        transaction_id=str(transaction.id),
        rating=review.rating,
        created=created,
    )
    return review


async def list_reviews(
    db: AsyncSession, lawyer_id: uuid.UUID, limit: int = 50
) -> List[LawyerReview]:
    """
    Public reviews of a directory lawyer, newest first.

    Raises:
        NotFoundError: If the lawyer does not exist
    """
    if await db.get(Lawyer, lawyer_id) is None:
        raise NotFoundError("Lawyer not found")
    result = await db.execute(
        select(LawyerReview)
        .where(LawyerReview.lawyer_id == lawyer_id)
        .order_by(LawyerReview.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_my_review(
    db: AsyncSession, user: Profile, transaction_id: uuid.UUID
) -> Optional[LawyerReview]:
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None or transaction.party_role(user.id) is None:
        raise NotFoundError("Transaction not found")
    result = await db.execute(
        select(LawyerReview).where(
            LawyerReview.transaction_id == transaction_id,
            LawyerReview.reviewer_id == user.id,
        )
    )
    return result.scalar_one_or_none()

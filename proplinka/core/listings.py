"""
Property listings: create, edit, search, featuring and images.
"""
import asyncio
import math
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core import platform_settings
from proplinka.core.exceptions import (
    ConflictError,
    FeatureDisabledError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from proplinka.core.fees import currency_for, normalize_country
from proplinka.core.notifications import create_notification
from proplinka.core.offers import close_open_offers
from proplinka.database.models import Profile, Property, PropertyImage
from proplinka.integrations.email_client import (
    EmailClient,
    featured_expired_email,
    send_best_effort,
)
from proplinka.integrations.images import (
    ImageStorage,
    create_thumbnail,
    optimize_image,
    validate_upload,
)
from proplinka.utils.time import ensure_aware, utc_now

logger = structlog.get_logger(__name__)

PROPERTY_TYPES = ("house", "apartment", "townhouse", "land", "commercial", "farm")
MIN_PRICE = Decimal("10000")
MAX_PRICE = Decimal("1000000000")
EDITABLE_STATUSES = ("draft", "pending_review", "rejected", "active")
EDITABLE_FIELDS = (
    "title",
    "description",
    "price",
    "property_type",
    "bedrooms",
    "bathrooms",
    "address",
    "city",
)
SELLER_USER_TYPES = ("seller", "both")


def _validate_listing(fields: Dict[str, Any]) -> None:
    """
    Validate listing fields present in a create or update payload.

    Raises:
        ValidationError: If any field is out of range
    """
    if "title" in fields and not 10 <= len(fields["title"].strip()) <= 200:
        raise ValidationError("Title must be between 10 and 200 characters")
    if "description" in fields and not 50 <= len(fields["description"].strip()) <= 5000:
        raise ValidationError("Description must be between 50 and 5000 characters")
    if "price" in fields:
        price = Decimal(str(fields["price"]))
        if not MIN_PRICE <= price <= MAX_PRICE:
            raise ValidationError("Price must be between 10,000 and 1,000,000,000")
    if "property_type" in fields and fields["property_type"] not in PROPERTY_TYPES:
        raise ValidationError(f"Property type must be one of: {', '.join(PROPERTY_TYPES)}")
    for field in ("bedrooms", "bathrooms"):
        if field in fields and not 0 <= int(fields[field]) <= 50:
            raise ValidationError(f"{field.capitalize()} must be between 0 and 50")


def serialize_property(prop: Property, images: Optional[List[PropertyImage]] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(prop.id),
        "seller_id": str(prop.seller_id),
        "title": prop.title,
        "description": prop.description,
        "price": prop.price,
        "currency": prop.currency,
        "property_type": prop.property_type,
        "bedrooms": prop.bedrooms,
        "bathrooms": prop.bathrooms,
        "address": prop.address,
        "city": prop.city,
        "country_code": prop.country_code,
        "status": prop.status,
        "moderation_status": prop.moderation_status,
        "featured": prop.featured,
        "featured_until": prop.featured_until.isoformat() if prop.featured_until else None,
        "premium": prop.premium,
        "created_at": prop.created_at.isoformat(),
    }
    if images is not None:
        data["images"] = [
            {
                "id": str(image.id),
                "url": image.url,
                "thumbnail_url": image.thumbnail_url,
                "is_primary": image.is_primary,
                "width": image.width,
                "height": image.height,
            }
            for image in images
        ]
    return data


async def _load_property(db: AsyncSession, property_id: uuid.UUID) -> Property:
    prop = await db.get(Property, property_id)
    if prop is None:
        raise NotFoundError("Property not found")
    return prop


async def _load_owned_property(
    db: AsyncSession, user: Profile, property_id: uuid.UUID
) -> Property:
    prop = await _load_property(db, property_id)
    if prop.seller_id != user.id:
        raise PermissionDeniedError("You can only manage your own properties")
    return prop


async def create_property(db: AsyncSession, seller: Profile, data: Dict[str, Any]) -> Property:
    """
    Create a listing.

    The listing goes to the moderation queue when property approval is
    required, otherwise it is published immediately.

    Args:
        db: Database session
        seller: Listing owner
        data: Listing fields

    Returns:
        Property: New listing

    Raises:
        PermissionDeniedError: If the profile is not a seller
        ValidationError: If any field is invalid
    """
    if seller.user_type not in SELLER_USER_TYPES:
        raise PermissionDeniedError("Only sellers can list properties")
    _validate_listing(data)

    country = normalize_country(data.get("country_code") or seller.country_code)
    currency, _ = currency_for(country)
    requires_approval = await platform_settings.get_setting(db, "require_property_approval")

    prop = Property(
        seller_id=seller.id,
        title=data["title"].strip(),
        description=data["description"].strip(),
        price=Decimal(str(data["price"])),
        currency=currency,
        property_type=data["property_type"],
        bedrooms=data.get("bedrooms", 0),
        bathrooms=data.get("bathrooms", 0),
        address=data["address"],
        city=data["city"],
        country_code=country,
        status="pending_review" if requires_approval else "active",
        moderation_status="pending" if requires_approval else "approved",
        published_at=None if requires_approval else utc_now(),
    )
    db.add(prop)
    await db.flush()

    logger.info(
        "property_created",
        property_id=str(prop.id),
        seller_id=str(seller.id),
        status=prop.status,
    )
    return prop


async def update_property(
    db: AsyncSession, user: Profile, property_id: uuid.UUID, changes: Dict[str, Any]
) -> Property:
    """
    Edit a listing owned by the caller.

    Editing a rejected listing resubmits it for review.

    Raises:
        NotFoundError: If the property does not exist
        PermissionDeniedError: If the caller is not the owner
        ConflictError: If the listing can no longer be edited
        ValidationError: If any field is invalid
    """
    prop = await _load_owned_property(db, user, property_id)
    if prop.status not in EDITABLE_STATUSES:
        raise ConflictError(f"Cannot edit a property with status: {prop.status}")

    changes = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS and v is not None}
    _validate_listing(changes)

    for field, value in changes.items():
        if field == "price":
            value = Decimal(str(value))
        elif field in ("title", "description"):
            value = value.strip()
        setattr(prop, field, value)

    if prop.status == "rejected":
        prop.status = "pending_review"
        prop.moderation_status = "pending"

    await db.flush()
    logger.info("property_updated", property_id=str(prop.id), fields=sorted(changes))
    return prop


async def delete_property(db: AsyncSession, user: Profile, property_id: uuid.UUID) -> Property:
    """Withdraw a listing owned by the caller."""
    prop = await _load_owned_property(db, user, property_id)
    if prop.status in ("under_offer", "sold"):
        raise ConflictError("Cannot withdraw a property with an accepted offer")
    prop.status = "withdrawn"
    prop.featured = False
    await close_open_offers(db, prop.id, "The seller withdrew this listing.")
    await db.flush()
    logger.info("property_withdrawn", property_id=str(prop.id))
    return prop


async def get_property(
    db: AsyncSession, property_id: uuid.UUID, viewer: Optional[Profile] = None
) -> Property:
    """
    Load a listing visible to the viewer.

    Active listings are public; others are visible to the owner and staff.

    Raises:
        NotFoundError: If the property does not exist or is hidden
    """
    prop = await _load_property(db, property_id)
    if prop.status == "active":
        return prop
    if viewer is not None and (viewer.id == prop.seller_id or viewer.is_moderator):
        return prop
    raise NotFoundError("Property not found")


async def list_images(db: AsyncSession, property_id: uuid.UUID) -> List[PropertyImage]:
    result = await db.execute(
        select(PropertyImage)
        .where(PropertyImage.property_id == property_id)
        .order_by(PropertyImage.position)
    )
    return list(result.scalars().all())


async def search_properties(
    db: AsyncSession,
    min_price: Optional[Decimal] = None,
    max_price: Optional[Decimal] = None,
    property_type: Optional[str] = None,
    min_bedrooms: Optional[int] = None,
    city: Optional[str] = None,
    country_code: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Dict[str, Any]:
    """
    Search active listings, featured first then newest.

    Returns:
        Dict[str, Any]: items, page, page_size, total

    Raises:
        ValidationError: If min_price exceeds max_price
    """
    if min_price is not None and max_price is not None and min_price > max_price:
        raise ValidationError("Minimum price cannot exceed maximum price")

    page = max(page, 1)
    page_size = min(max(page_size, 1), 100)

    conditions = [Property.status == "active"]
    if min_price is not None:
        conditions.append(Property.price >= min_price)
    if max_price is not None:
        conditions.append(Property.price <= max_price)
    if property_type:
        conditions.append(Property.property_type == property_type)
    if min_bedrooms is not None:
        conditions.append(Property.bedrooms >= min_bedrooms)
    if city:
        conditions.append(func.lower(Property.city) == city.lower())
    if country_code:
        conditions.append(Property.country_code == country_code.upper())

    total = (
        await db.execute(select(func.count()).select_from(Property).where(*conditions))
    ).scalar_one()

    rows = (
        await db.execute(
            select(Property)
            .where(*conditions)
            .order_by(Property.featured.desc(), Property.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
    ).scalars().all()

    return {
        "items": [serialize_property(prop) for prop in rows],
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": math.ceil(total / page_size) if total else 0,
    }


def extend_featured_until(current: Optional[datetime], days: int, now: datetime) -> datetime:
    """Extend from the current end if it is still in the future, else from now."""
    current = ensure_aware(current)
    start = current if current is not None and current > now else now
    return start + timedelta(days=days)


async def feature_property(
    db: AsyncSession,
    property_id: uuid.UUID,
    days: int = 30,
    premium: bool = False,
    now: Optional[datetime] = None,
) -> Property:
    """
    Feature a listing for a number of days.

    Args:
        db: Database session
        property_id: Listing to feature
        days: Length of the featured period
        premium: Also mark the listing premium
        now: Optional clock override

    Returns:
        Property: Updated listing

    Raises:
        FeatureDisabledError: If premium listings are switched off
        ValidationError: If days is not positive
    """
    if not await platform_settings.is_feature_enabled(db, "premium_listings"):
        raise FeatureDisabledError("Premium listings are currently disabled")
    if days <= 0:
        raise ValidationError("Featured period must be at least one day")

    now = now or utc_now()
    prop = await _load_property(db, property_id)
    prop.featured = True
    prop.featured_until = extend_featured_until(prop.featured_until, days, now)
    if premium:
        prop.premium = True
    await db.flush()

    logger.info(
        "property_featured",
        property_id=str(prop.id),
        featured_until=prop.featured_until.isoformat(),
        premium=prop.premium,
    )
    return prop


async def unfeature_property(db: AsyncSession, property_id: uuid.UUID) -> None:
    await db.execute(
        update(Property)
        .where(Property.id == property_id)
        .values(featured=False, premium=False, featured_until=None)
    )


async def expire_featured_listings(
    db: AsyncSession,
    now: Optional[datetime] = None,
    email_client: Optional[EmailClient] = None,
) -> int:
    """
    Unfeature listings whose featured period has ended.

    Sellers get an in-app notification and, when an email client is given,
    an email.

    Returns:
        int: Number of listings unfeatured
    """
    now = now or utc_now()
    expired = (
        await db.execute(
            select(Property, Profile)
            .join(Profile, Profile.id == Property.seller_id)
            .where(Property.featured.is_(True), Property.featured_until < now)
        )
    ).all()

    for prop, seller in expired:
        prop.featured = False
        prop.premium = False
        await create_notification(
            db,
            user_id=seller.id,
            notification_type="featured_expired",
            title="Featured listing expired",
            body=f"The featured period for \"{prop.title}\" has ended.",
            link=f"/properties/{prop.id}",
        )
        if email_client is not None:
            await send_best_effort(email_client, featured_expired_email(seller.email, prop.title))

    await db.flush()
    logger.info("featured_listings_expired", count=len(expired))
    return len(expired)


async def add_property_image(
    db: AsyncSession,
    user: Profile,
    property_id: uuid.UUID,
    content: bytes,
    content_type: Optional[str],
    storage: ImageStorage,
) -> PropertyImage:
    """
    Resize, store and attach an image to a listing.

    The first image becomes the primary one.

    Raises:
        PermissionDeniedError: If the caller is not the owner
        ValidationError: If the image limit is reached or the upload is invalid
    """
    prop = await _load_owned_property(db, user, property_id)
    image_settings = await platform_settings.get_image_settings(db)

    count = (
        await db.execute(
            select(func.count()).select_from(PropertyImage).where(
                PropertyImage.property_id == prop.id
            )
        )
    ).scalar_one()
    if count >= image_settings["max_images_per_property"]:
        raise ValidationError(
            f"A property can have at most {image_settings['max_images_per_property']} images"
        )

    validate_upload(content, content_type, image_settings["max_image_size_mb"])

    loop = asyncio.get_running_loop()
    optimized = await loop.run_in_executor(
        None, lambda: optimize_image(content, quality=image_settings["image_quality"])
    )
    thumbnail = await loop.run_in_executor(None, lambda: create_thumbnail(content))

    image = PropertyImage(
        property_id=prop.id,
        url=await loop.run_in_executor(None, storage.save, prop.id, optimized),
        thumbnail_url=await loop.run_in_executor(
            None, lambda: storage.save(prop.id, thumbnail, suffix="_thumb")
        ),
        width=optimized.width,
        height=optimized.height,
        size_bytes=optimized.size_bytes,
        is_primary=count == 0,
        position=count,
    )
    db.add(image)
    await db.flush()

    logger.info(
        "property_image_added",
        property_id=str(prop.id),
        image_id=str(image.id),
        width=image.width,
        height=image.height,
        size_bytes=image.size_bytes,
    )
    return image


async def delete_property_image(
    db: AsyncSession,
    user: Profile,
    property_id: uuid.UUID,
    image_id: uuid.UUID,
    storage: ImageStorage,
) -> None:
    """Remove an image, promoting the next one to primary if needed."""
    prop = await _load_owned_property(db, user, property_id)
    image = await db.get(PropertyImage, image_id)
    if image is None or image.property_id != prop.id:
        raise NotFoundError("Image not found")

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, storage.delete, image.url)
    await loop.run_in_executor(None, storage.delete, image.thumbnail_url)
    was_primary = image.is_primary
    await db.delete(image)
    await db.flush()

    if was_primary:
        remaining = await list_images(db, prop.id)
        if remaining:
            remaining[0].is_primary = True
            await db.flush()

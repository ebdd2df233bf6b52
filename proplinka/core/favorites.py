"""Saved listings."""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.exceptions import NotFoundError
from proplinka.core.listings import serialize_property
from proplinka.database.models import Favorite, Profile, Property

logger = structlog.get_logger(__name__)

# Statuses a listing can be saved in; saved listings stay listed after they sell
SAVEABLE_STATUSES = ("active", "under_offer")


async def _find(
    db: AsyncSession, user_id: uuid.UUID, property_id: uuid.UUID
) -> Optional[Favorite]:
    result = await db.execute(
        select(Favorite).where(Favorite.user_id == user_id, Favorite.property_id == property_id)
    )
    return result.scalar_one_or_none()


async def toggle_favorite(db: AsyncSession, user: Profile, property_id: uuid.UUID) -> bool:
    """
    Save a listing, or unsave it if already saved.

    Returns:
        bool: True if the listing is saved after the call

    Raises:
        NotFoundError: If the listing does not exist or is not public
    """
    existing = await _find(db, user.id, property_id)
    if existing is not None:
        await db.delete(existing)
        await db.flush()
        logger.info("favorite_removed", user_id=str(user.id), property_id=str(property_id))
        return False

    prop = await db.get(Property, property_id)
    if prop is None or prop.status not in SAVEABLE_STATUSES:
        raise NotFoundError("Property not found")

    db.add(Favorite(user_id=user.id, property_id=prop.id))
    await db.flush()
    logger.info("favorite_added", user_id=str(user.id), property_id=str(prop.id))
    return True


async def is_favorited(db: AsyncSession, user: Profile, property_id: uuid.UUID) -> bool:
    return await _find(db, user.id, property_id) is not None


async def list_favorites(db: AsyncSession, user: Profile) -> List[Dict[str, Any]]:
    """Saved listings, most recently saved first."""
    result = await db.execute(
        select(Favorite, Property)
        .join(Property, Property.id == Favorite.property_id)
        .where(Favorite.user_id == user.id)
        .order_by(Favorite.created_at.desc())
    )
    return [
        {
            "id": str(favorite.id),
            "saved_at": favorite.created_at.isoformat(),
            "property": serialize_property(prop),
        }
        for favorite, prop in result.all()
    ]

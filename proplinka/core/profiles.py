"""User profile reads and self-service updates."""
from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.exceptions import ValidationError
from proplinka.core.fees import COMMISSION_RATES
from proplinka.database.models import Profile

logger = structlog.get_logger(__name__)

USER_TYPES = ("buyer", "seller", "both", "lawyer")
UPDATABLE_FIELDS = ("full_name", "phone", "user_type", "country_code")


def serialize_profile(profile: Profile) -> Dict[str, Any]:
    return {
        "id": str(profile.id),
        "email": profile.email,
        "full_name": profile.full_name,
        "phone": profile.phone,
        "country_code": profile.country_code,
        "user_type": profile.user_type,
        "role": profile.role,
        "is_suspended": profile.is_suspended,
        "created_at": profile.created_at.isoformat(),
    }


async def update_profile(db: AsyncSession, profile: Profile, changes: Dict[str, Any]) -> Profile:
    """
    Update the caller's own profile.

    Role, suspension and Stripe fields are never writable here.

    Raises:
        ValidationError: If a value is out of range
    """
    changes = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS and v is not None}

    if "user_type" in changes and changes["user_type"] not in USER_TYPES:
        raise ValidationError(f"User type must be one of: {', '.join(USER_TYPES)}")
    if "country_code" in changes:
        changes["country_code"] = changes["country_code"].upper()
        if changes["country_code"] not in COMMISSION_RATES:
            raise ValidationError("Unsupported country")
    if "full_name" in changes and not 1 <= len(changes["full_name"].strip()) <= 200:
        raise ValidationError("Full name must be between 1 and 200 characters")

    for field, value in changes.items():
        setattr(profile, field, value.strip() if isinstance(value, str) else value)

    await db.flush()
    logger.info("profile_updated", profile_id=str(profile.id), fields=sorted(changes))
    return profile

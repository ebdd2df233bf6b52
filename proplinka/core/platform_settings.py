"""
Runtime-editable platform settings.

Values are resolved in order: the platform_settings table, then an
environment variable PROPLINKA_<KEY>, then the built-in default. Every
value is coerced to the type of its default. Resolved values are cached
in-process for CACHE_TTL_SECONDS.
"""
import math
import os
import time
import uuid
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.audit import log_admin_action
from proplinka.core.exceptions import ValidationError
from proplinka.database.models import PlatformSetting

logger = structlog.get_logger(__name__)

CACHE_TTL_SECONDS = 60
ENV_PREFIX = "PROPLINKA_"

DEFAULT_SETTINGS: Dict[str, Any] = {
    # General
    "platform_name": "PropLinka",
    "support_email": "support@proplinka.com",
    "maintenance_mode": False,
    # Features
    "enable_referrals": True,
    "enable_premium_listings": True,
    "enable_sms_notifications": False,
    "require_property_approval": True,
    # Fees
    "success_fee_buyer_percent": 0.5,
    "success_fee_seller_percent": 0.5,
    "premium_listing_price": 299,
    "lawyer_referral_fee": 750,
    # Rate limits (requests per window)
    "rate_limit_api": 100,
    "rate_limit_auth": 5,
    "rate_limit_upload": 20,
    "rate_limit_email": 50,
    "rate_limit_inquiry": 10,
    # Images
    "max_images_per_property": 15,
    "max_image_size_mb": 10,
    "image_quality": 80,
    # Moderation
    "auto_suspend_flagged_content": True,
    "flag_threshold": 3,
}

_cache: Dict[str, Tuple[Any, float]] = {}

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


def coerce_value(key: str, value: Any) -> Any:
    """
    Coerce a raw value to the type of the setting's default.

    Raises:
        ValidationError: If the value cannot be converted
    """
    default = DEFAULT_SETTINGS[key]
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if isinstance(default, int):
            if isinstance(value, bool):
                raise ValueError("booleans are not numbers")
            number = float(value)
            if not math.isfinite(number):
                raise ValueError(f"not a finite number: {value!r}")
            if not number.is_integer():
                raise ValueError(f"not an integer: {value!r}")
            return int(number)
        if isinstance(default, float):
            if isinstance(value, bool):
                raise ValueError("booleans are not numbers")
            number = float(value)
            if not math.isfinite(number):
                raise ValueError(f"not a finite number: {value!r}")
            return number
        return str(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid value for setting '{key}': {e}") from e


def _check_key(key: str) -> None:
    if key not in DEFAULT_SETTINGS:
        raise ValidationError(f"Unknown setting: {key}")


def clear_settings_cache() -> None:
    _cache.clear()


def _on_session_end(session: Any, *args: Any) -> None:
    clear_settings_cache()


def _clear_cache_when_session_ends(db: AsyncSession) -> None:
    """
    Clear the cache again once the writing session commits or rolls back.

    Readers on other sessions can cache the old row between the flush and
    the commit; the uncommitted value this session cached must not outlive
    a rollback.
    """
    sync_session = db.sync_session
    for name in ("after_commit", "after_soft_rollback"):
        if not event.contains(sync_session, name, _on_session_end):
            event.listen(sync_session, name, _on_session_end)


async def get_setting(db: AsyncSession, key: str) -> Any:
    """
    Resolve a setting value.

    Args:
        db: Database session
        key: Setting name

    Returns:
        Any: Value coerced to the default's type

    Raises:
        ValidationError: If the key is unknown
    """
    _check_key(key)

    cached = _cache.get(key)
    now = time.monotonic()
    if cached is not None and cached[1] > now:
        return cached[0]

    value = DEFAULT_SETTINGS[key]
    row = await db.get(PlatformSetting, key)
    if row is not None and row.value is not None:
        value = _coerce_or_default(key, row.value, source="database")
    else:
        env_value = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
        if env_value is not None:
            value = _coerce_or_default(key, env_value, source="environment")

    _cache[key] = (value, now + CACHE_TTL_SECONDS)
    return value


def _coerce_or_default(key: str, raw: Any, source: str) -> Any:
    try:
        return coerce_value(key, raw)
    except ValidationError:
        logger.warning("platform_setting_invalid", key=key, source=source, value=str(raw))
        return DEFAULT_SETTINGS[key]


async def get_all_settings(db: AsyncSession) -> Dict[str, Any]:
    return {key: await get_setting(db, key) for key in DEFAULT_SETTINGS}


async def is_feature_enabled(db: AsyncSession, feature: str) -> bool:
    """Check an enable_<feature> flag, e.g. is_feature_enabled(db, "premium_listings")."""
    return bool(await get_setting(db, f"enable_{feature}"))


async def get_rate_limit(db: AsyncSession, action: str) -> int:
    return int(await get_setting(db, f"rate_limit_{action}"))


async def get_image_settings(db: AsyncSession) -> Dict[str, int]:
    return {
        "max_images_per_property": await get_setting(db, "max_images_per_property"),
        "max_image_size_mb": await get_setting(db, "max_image_size_mb"),
        "image_quality": await get_setting(db, "image_quality"),
    }


async def get_fee_settings(db: AsyncSession) -> Dict[str, Any]:
    return {
        "success_fee_buyer_percent": await get_setting(db, "success_fee_buyer_percent"),
        "success_fee_seller_percent": await get_setting(db, "success_fee_seller_percent"),
        "premium_listing_price": await get_setting(db, "premium_listing_price"),
        "lawyer_referral_fee": await get_setting(db, "lawyer_referral_fee"),
    }


async def update_setting(
    db: AsyncSession, key: str, value: Any, admin_id: Optional[uuid.UUID]
) -> Any:
    """
    Persist a setting and audit the change.

    Args:
        db: Database session
        key: Setting name
        value: New value
        admin_id: Admin making the change

    Returns:
        Any: The stored, coerced value

    Raises:
        ValidationError: If the key is unknown or the value has the wrong type
    """
    _check_key(key)
    new_value = coerce_value(key, value)
    old_value = await get_setting(db, key)

    row = (
        await db.execute(select(PlatformSetting).where(PlatformSetting.key == key))
    ).scalar_one_or_none()
    if row is None:
        db.add(PlatformSetting(key=key, value=new_value, updated_by=admin_id))
    else:
        row.value = new_value
        row.updated_by = admin_id

    await log_admin_action(
        db,
        actor_id=admin_id,
        action="settings_update",
        resource_type="platform_setting",
        resource_id=key,
        details={"old_value": old_value, "new_value": new_value},
    )
    await db.flush()
    clear_settings_cache()
    _clear_cache_when_session_ends(db)

    logger.info("platform_setting_updated", key=key, admin_id=str(admin_id) if admin_id else None)
    return new_value

"""
Unit tests for listing moderation and content reports.
"""
import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core import moderation
from proplinka.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from proplinka.core.platform_settings import update_setting
from proplinka.database.models import AuditLog, Profile, PropertyReview
from tests.factories import create_profile, create_property


class TestModerateProperty:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_approve_publishes(
        self, db: AsyncSession, seller: Profile, moderator: Profile, email_client
    ) -> None:
        prop = await create_property(db, seller, status="pending_review")

        approved = await moderation.moderate_property(
            db, moderator, prop.id, "approve", email_client=email_client
        )

        assert approved.status == "active"
        assert approved.moderation_status == "approved"
        assert approved.published_at is not None
        review = (
            await db.execute(select(PropertyReview).where(PropertyReview.property_id == prop.id))
        ).scalar_one()
        assert review.action == "approve"
        assert review.reviewer_id == moderator.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reject_requires_reason(
        self, db: AsyncSession, seller: Profile, moderator: Profile
    ) -> None:
        prop = await create_property(db, seller, status="pending_review")

        with pytest.raises(ValidationError, match="reason"):
            await moderation.moderate_property(db, moderator, prop.id, "reject")

        rejected = await moderation.moderate_property(
            db, moderator, prop.id, "reject", reason="Photos do not match the address"
        )
        assert rejected.status == "rejected"
        assert rejected.moderation_notes == "Photos do not match the address"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_regular_users_cannot_moderate(
        self, db: AsyncSession, seller: Profile, buyer: Profile
    ) -> None:
        prop = await create_property(db, seller, status="pending_review")
        with pytest.raises(PermissionDeniedError):
            await moderation.moderate_property(db, buyer, prop.id, "approve")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_action(
        self, db: AsyncSession, seller: Profile, moderator: Profile
    ) -> None:
        prop = await create_property(db, seller)
        with pytest.raises(ValidationError):
            await moderation.moderate_property(db, moderator, prop.id, "delete")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_queue_is_oldest_first(
        self, db: AsyncSession, seller: Profile, moderator: Profile
    ) -> None:
        first = await create_property(db, seller, status="pending_review")
        second = await create_property(db, seller, status="pending_review")
        await create_property(db, seller)

        queue = await moderation.moderation_queue(db, moderator)

        assert {p.id for p in queue} == {first.id, second.id}


class TestContentFlags:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_report_rejected(
        self, db: AsyncSession, seller: Profile, buyer: Profile
    ) -> None:
        prop = await create_property(db, seller)
        await moderation.report_content(db, buyer, "property", prop.id, "fraud")

        with pytest.raises(ConflictError):
            await moderation.report_content(db, buyer, "property", prop.id, "spam")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_resource(self, db: AsyncSession, buyer: Profile) -> None:
        with pytest.raises(NotFoundError):
            await moderation.report_content(db, buyer, "profile", uuid.uuid4(), "spam")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_reason(self, db: AsyncSession, seller: Profile, buyer: Profile) -> None:
        prop = await create_property(db, seller)
        with pytest.raises(ValidationError):
            await moderation.report_content(db, buyer, "property", prop.id, "ugly")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_auto_suspend_at_threshold(self, db: AsyncSession, seller: Profile) -> None:
        prop = await create_property(db, seller, featured=True)
        reporters = [await create_profile(db) for _ in range(3)]

        await moderation.report_content(db, reporters[0], "property", prop.id, "fraud")
        await moderation.report_content(db, reporters[1], "property", prop.id, "misleading")
        assert prop.status == "active"

        await moderation.report_content(db, reporters[2], "property", prop.id, "spam")

        assert prop.status == "suspended"
        assert prop.moderation_status == "flagged"
        assert prop.featured is False
        logged = (
            await db.execute(select(AuditLog).where(AuditLog.action == "property_auto_suspend"))
        ).scalar_one()
        assert logged.actor_id is None
        assert logged.details["open_flags"] == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_auto_suspend_can_be_disabled(
        self, db: AsyncSession, seller: Profile, admin: Profile
    ) -> None:
        await update_setting(db, "auto_suspend_flagged_content", False, admin.id)
        prop = await create_property(db, seller)

        for _ in range(3):
            reporter = await create_profile(db)
            await moderation.report_content(db, reporter, "property", prop.id, "spam")

        assert prop.status == "active"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_upheld_flag_removes_listing(
        self, db: AsyncSession, seller: Profile, buyer: Profile, moderator: Profile
    ) -> None:
        prop = await create_property(db, seller)
        flag = await moderation.report_content(db, buyer, "property", prop.id, "fraud")

        reviewed = await moderation.review_flag(db, moderator, flag.id, "approved", "Confirmed scam")

        assert reviewed.status == "approved"
        assert reviewed.reviewed_by == moderator.id
        assert reviewed.reviewed_at is not None
        assert prop.status == "suspended"
        assert prop.moderation_status == "rejected"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dismissed_flag_leaves_listing(
        self, db: AsyncSession, seller: Profile, buyer: Profile, moderator: Profile
    ) -> None:
        prop = await create_property(db, seller)
        flag = await moderation.report_content(db, buyer, "property", prop.id, "spam")

        await moderation.review_flag(db, moderator, flag.id, "rejected")

        assert prop.status == "active"
        assert await moderation.list_flags(db, moderator) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_flag_reviewed_once(
        self, db: AsyncSession, seller: Profile, buyer: Profile, moderator: Profile
    ) -> None:
        prop = await create_property(db, seller)
        flag = await moderation.report_content(db, buyer, "property", prop.id, "spam")
        await moderation.review_flag(db, moderator, flag.id, "rejected")

        with pytest.raises(ConflictError):
            await moderation.review_flag(db, moderator, flag.id, "approved")

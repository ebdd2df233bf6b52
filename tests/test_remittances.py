"""
Unit tests for lawyer referral fee remittance tracking.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.exceptions import NotFoundError, ValidationError
from proplinka.core.remittances import (
    check_overdue_remittances,
    list_remittances,
    record_remittance,
    remittance_status_for,
)
from proplinka.database.models import Lawyer, Profile
from proplinka.integrations.email_client import EmailClient, EmailResult
from tests.factories import create_lawyer, create_payment

DUE_DAYS = 30
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


async def _referral_fee(db: AsyncSession, lawyer: Lawyer, days_overdue: int, now):
    return await create_payment(
        db,
        payment_type="lawyer_referral",
        amount=Decimal("750"),
        lawyer_id=lawyer.id,
        created_at=now - timedelta(days=DUE_DAYS + days_overdue),
    )


@pytest.mark.unit
@pytest.mark.parametrize(
    "days,expected",
    [
        (-5, "current"),
        (0, "current"),
        (14, "current"),
        (15, "warning"),
        (44, "warning"),
        (45, "overdue"),
        (59, "overdue"),
        (60, "suspended"),
        (90, "suspended"),
    ],
)
def test_status_thresholds(days: int, expected: str) -> None:
    assert remittance_status_for(days) == expected


class TestCheckOverdue:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_escalation_uses_oldest_fee(self, db: AsyncSession) -> None:
        lawyer = await create_lawyer(db)
        await _referral_fee(db, lawyer, 20, NOW)
        await _referral_fee(db, lawyer, 2, NOW)

        summary = await check_overdue_remittances(db, now=NOW)

        assert summary["checked"] == 1
        assert summary["warnings"] == 1
        assert lawyer.remittance_status == "warning"
        assert lawyer.outstanding_fees == Decimal("1500")
        # 20 days is a reminder day
        assert summary["reminders_sent"] == 1
        assert lawyer.remittance_reminder_sent_at == NOW

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reminder_sent_once_per_milestone(self, db: AsyncSession) -> None:
        lawyer = await create_lawyer(db)
        await _referral_fee(db, lawyer, 10, NOW)

        first = await check_overdue_remittances(db, now=NOW)
        second = await check_overdue_remittances(db, now=NOW + timedelta(minutes=5))

        assert first["reminders_sent"] == 1
        assert second["reminders_sent"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_suspends_at_sixty_days(self, db: AsyncSession, email_client) -> None:
        lawyer = await create_lawyer(db)
        await _referral_fee(db, lawyer, 61, NOW)

        summary = await check_overdue_remittances(db, now=NOW, email_client=email_client)

        assert summary["suspended"] == 1
        assert lawyer.remittance_status == "suspended"
        assert lawyer.suspended_for_non_payment is True
        assert lawyer.available is False

        again = await check_overdue_remittances(db, now=NOW)
        assert again["suspended"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_suspension_is_emailed(self, db: AsyncSession) -> None:
        lawyer = await create_lawyer(db)
        await _referral_fee(db, lawyer, 60, NOW)
        client = AsyncMock(spec=EmailClient)
        client.send.return_value = EmailResult(sent=True)

        await check_overdue_remittances(db, now=NOW, email_client=client)

        templates = [c.args[0].template for c in client.send.call_args_list]
        assert "lawyer_suspended" in templates
        profile = await db.get(Profile, lawyer.profile_id)
        suspended = next(
            c.args[0] for c in client.send.call_args_list if c.args[0].template == "lawyer_suspended"
        )
        assert suspended.to == [profile.email]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_run_after_a_missed_milestone_still_reminds(self, db: AsyncSession) -> None:
        lawyer = await create_lawyer(db)
        await _referral_fee(db, lawyer, 23, NOW)
        client = AsyncMock(spec=EmailClient)
        client.send.return_value = EmailResult(sent=True)

        first = await check_overdue_remittances(db, now=NOW, email_client=client)
        next_day = await check_overdue_remittances(
            db, now=NOW + timedelta(days=1), email_client=client
        )
        next_milestone = await check_overdue_remittances(
            db, now=NOW + timedelta(days=5), email_client=client
        )

        assert first["reminders_sent"] == 1
        assert next_day["reminders_sent"] == 0
        # 23 + 5 = 28
        assert next_milestone["reminders_sent"] == 1
        assert client.send.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_payment_keeps_suspension_consistent(
        self, db: AsyncSession, admin: Profile
    ) -> None:
        lawyer = await create_lawyer(db)
        old = await _referral_fee(db, lawyer, 65, NOW)
        await _referral_fee(db, lawyer, 20, NOW)
        await check_overdue_remittances(db, now=NOW)

        await record_remittance(db, admin, lawyer.id, [old.id])
        await check_overdue_remittances(db, now=NOW + timedelta(hours=1))

        assert lawyer.available is False
        assert lawyer.suspended_for_non_payment is True
        assert lawyer.remittance_status == "suspended"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_fees_ignored(self, db: AsyncSession) -> None:
        lawyer = await create_lawyer(db)
        fee = await _referral_fee(db, lawyer, 50, NOW)
        fee.status = "succeeded"
        await db.flush()

        summary = await check_overdue_remittances(db, now=NOW)

        assert summary["checked"] == 0
        assert lawyer.remittance_status == "current"


class TestRecordRemittance:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paying_everything_restores_suspended_lawyer(
        self, db: AsyncSession, admin: Profile
    ) -> None:
        lawyer = await create_lawyer(db)
        old = await _referral_fee(db, lawyer, 65, NOW)
        recent = await _referral_fee(db, lawyer, 1, NOW)
        await check_overdue_remittances(db, now=NOW)
        assert lawyer.available is False

        await record_remittance(db, admin, lawyer.id, [old.id])
        assert lawyer.outstanding_fees == Decimal("750")
        assert lawyer.suspended_for_non_payment is True

        await record_remittance(db, admin, lawyer.id, [recent.id])
        assert lawyer.outstanding_fees == Decimal("0")
        assert lawyer.remittance_status == "current"
        assert lawyer.suspended_for_non_payment is False
        assert lawyer.available is True
        assert old.status == "succeeded"
        assert old.paid_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_foreign_payment_rejected(self, db: AsyncSession, admin: Profile) -> None:
        lawyer = await create_lawyer(db)
        other = await create_lawyer(db)
        fee = await _referral_fee(db, other, 5, NOW)

        with pytest.raises(ValidationError):
            await record_remittance(db, admin, lawyer.id, [fee.id])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lawyer_sees_own_fees(self, db: AsyncSession) -> None:
        lawyer = await create_lawyer(db)
        await _referral_fee(db, lawyer, 3, NOW)
        profile = await db.get(Profile, lawyer.profile_id)

        result = await list_remittances(db, profile)

        assert result["outstanding_fees"] == Decimal("750")
        assert len(result["fees"]) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_lawyer_has_no_remittances(self, db: AsyncSession, buyer: Profile) -> None:
        with pytest.raises(NotFoundError):
            await list_remittances(db, buyer)

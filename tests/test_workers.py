"""
Tests for the background workers.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.database.models import Profile
from proplinka.integrations.email_client import EmailClient
from proplinka.utils.time import utc_now
from proplinka.workers import listing_expiry_worker, reconciliation_worker
from tests.factories import create_property


class TestSchedule:
    @pytest.mark.unit
    def test_later_today(self) -> None:
        now = datetime(2024, 5, 10, 0, 30, tzinfo=timezone.utc)

        assert reconciliation_worker.seconds_until_next_run(2, now) == 90 * 60

    @pytest.mark.unit
    def test_rolls_to_tomorrow(self) -> None:
        now = datetime(2024, 5, 10, 3, 0, tzinfo=timezone.utc)

        assert reconciliation_worker.seconds_until_next_run(2, now) == 23 * 3600

    @pytest.mark.unit
    def test_exactly_on_the_hour_waits_a_day(self) -> None:
        now = datetime(2024, 5, 10, 2, 0, tzinfo=timezone.utc)

        assert reconciliation_worker.seconds_until_next_run(2, now) == 24 * 3600


@pytest.mark.integration
@pytest.mark.asyncio
async def test_listing_expiry_pass(
    db: AsyncSession, seller: Profile, email_client: EmailClient
) -> None:
    lapsed = await create_property(
        db, seller, featured=True, featured_until=utc_now() - timedelta(days=1)
    )
    await db.commit()

    count = await listing_expiry_worker.run_listing_expiry(email_client)

    assert count == 1
    await db.refresh(lapsed)
    assert lapsed.featured is False


@pytest.mark.integration
@pytest.mark.asyncio
async def test_daily_reconciliation_runs_both_jobs(
    db: AsyncSession, email_client: EmailClient, mocker: Any
) -> None:
    reconciler = mocker.patch.object(reconciliation_worker, "PaymentReconciler")
    reconciler.return_value.reconcile_pending = mocker.AsyncMock(
        return_value={
            "run_id": "run-1",
            "checked": 2,
            "completed": 1,
            "expired": 1,
            "unchanged": 0,
            "errors": 0,
        }
    )

    result = await reconciliation_worker.run_daily_reconciliation(email_client)

    reconciler.return_value.reconcile_pending.assert_awaited_once_with(older_than_hours=24)
    assert result["reconciliation"]["completed"] == 1
    assert result["remittances"]["checked"] == 0

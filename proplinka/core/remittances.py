"""
Lawyer referral fee remittance tracking.

Referral fees are created when a transaction completes and fall due
remittance_due_days later. Status escalates with the age of the oldest
unpaid fee:

    current -> warning (15 days) -> overdue (45 days) -> suspended (60 days)
"""
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.config import get_settings
from proplinka.core.audit import log_admin_action
from proplinka.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from proplinka.core.fees import currency_for, format_currency
from proplinka.core.notifications import create_notification
from proplinka.core.payments import record_payment_event
from proplinka.database.models import Lawyer, Payment, Profile
from proplinka.integrations.email_client import (
    EmailClient,
    lawyer_suspended_email,
    remittance_reminder_email,
    send_best_effort,
)
from proplinka.utils.time import days_between, ensure_aware, utc_now

logger = structlog.get_logger(__name__)

WARNING_DAYS = 15
OVERDUE_DAYS = 45
SUSPENSION_DAYS = 60
REMINDER_DAYS = (1, 10, 20, 28, 35, 45, 55, 60)


def remittance_status_for(days_overdue: int) -> str:
    if days_overdue >= SUSPENSION_DAYS:
        return "suspended"
    if days_overdue >= OVERDUE_DAYS:
        return "overdue"
    if days_overdue >= WARNING_DAYS:
        return "warning"
    return "current"


def _reminder_due(lawyer: Lawyer, due_at: datetime, days_overdue: int) -> bool:
    """
    One reminder per milestone in REMINDER_DAYS.

    The latest milestone reached counts even when no run happened on that
    exact day, so a job that first runs on day 70 still sends one.
    """
    reached = [day for day in REMINDER_DAYS if day <= days_overdue]
    if not reached:
        return False
    milestone_at = due_at + timedelta(days=reached[-1])
    sent = ensure_aware(lawyer.remittance_reminder_sent_at)
    return sent is None or sent < milestone_at


async def _pending_fees(db: AsyncSession, lawyer_id: uuid.UUID) -> List[Payment]:
    result = await db.execute(
        select(Payment)
        .where(
            Payment.payment_type == "lawyer_referral",
            Payment.lawyer_id == lawyer_id,
            Payment.status == "pending",
        )
        .order_by(Payment.created_at)
    )
    return list(result.scalars().all())


async def check_overdue_remittances(
    db: AsyncSession,
    now: Optional[datetime] = None,
    email_client: Optional[EmailClient] = None,
) -> Dict[str, int]:
    """
    Escalate lawyers with unpaid referral fees and send reminders.

    Args:
        db: Database session
        now: Optional clock override
        email_client: Optional client for reminder and suspension emails

    Returns:
        Dict[str, int]: checked, warnings, overdue, suspended, reminders_sent
    """
    now = now or utc_now()
    due_after = timedelta(days=get_settings().remittance_due_days)
    summary = {"checked": 0, "warnings": 0, "overdue": 0, "suspended": 0, "reminders_sent": 0}

    lawyer_ids = (
        await db.execute(
            select(Payment.lawyer_id)
            .where(Payment.payment_type == "lawyer_referral", Payment.status == "pending")
            .distinct()
        )
    ).scalars().all()

    for lawyer_id in lawyer_ids:
        lawyer = await db.get(Lawyer, lawyer_id)
        if lawyer is None:
            continue
        fees = await _pending_fees(db, lawyer.id)
        summary["checked"] += 1

        lawyer.outstanding_fees = sum((f.amount for f in fees), Decimal("0"))
        due_at = ensure_aware(fees[0].created_at) + due_after
        days_overdue = days_between(due_at, now)
        # Suspension holds until everything is paid, whatever the oldest fee is now
        status = (
            "suspended"
            if lawyer.suspended_for_non_payment
            else remittance_status_for(days_overdue)
        )
        profile = await db.get(Profile, lawyer.profile_id)
        _, symbol = currency_for(lawyer.country_code)
        outstanding = format_currency(lawyer.outstanding_fees, symbol)

        if status == "suspended":
            if not lawyer.suspended_for_non_payment:
                lawyer.available = False
                lawyer.suspended_for_non_payment = True
                await create_notification(
                    db,
                    user_id=lawyer.profile_id,
                    notification_type="lawyer_suspended",
                    title="Directory listing suspended",
                    body="Your listing is hidden until outstanding referral fees are paid.",
                    link="/lawyer/remittances",
                )
                await log_admin_action(
                    db,
                    actor_id=None,
                    action="lawyer_suspend_non_payment",
                    resource_type="lawyer",
                    resource_id=lawyer.id,
                    details={"days_overdue": days_overdue},
                )
                if email_client is not None and profile is not None:
                    await send_best_effort(
                        email_client,
                        lawyer_suspended_email(profile.email, lawyer.firm_name, outstanding),
                    )
                summary["suspended"] += 1
                logger.warning(
                    "lawyer_suspended_for_non_payment",
                    lawyer_id=str(lawyer.id),
                    days_overdue=days_overdue,
                )
        elif status == "overdue":
            summary["overdue"] += 1
        elif status == "warning":
            summary["warnings"] += 1
        lawyer.remittance_status = status

        if _reminder_due(lawyer, due_at, days_overdue):
            lawyer.remittance_reminder_sent_at = now
            summary["reminders_sent"] += 1
            if email_client is not None and profile is not None:
                await send_best_effort(
                    email_client,
                    remittance_reminder_email(
                        to=profile.email,
                        firm_name=lawyer.firm_name,
                        outstanding=outstanding,
                        days_overdue=days_overdue,
                    ),
                )

    await db.flush()
    logger.info("remittances_checked", **summary)
    return summary


async def record_remittance(
    db: AsyncSession, admin: Profile, lawyer_id: uuid.UUID, payment_ids: Sequence[uuid.UUID]
) -> Lawyer:
    """
    Mark referral fees as paid by a lawyer.

    A lawyer suspended for non-payment with nothing left outstanding is
    restored to the directory.

    Raises:
        PermissionDeniedError: If the caller is not an admin
        NotFoundError: If the lawyer does not exist
        ValidationError: If a payment is not a pending fee of this lawyer
    """
    if not admin.is_admin:
        raise PermissionDeniedError("Admin access required")
    if not payment_ids:
        raise ValidationError("At least one payment is required")

    lawyer = await db.get(Lawyer, lawyer_id)
    if lawyer is None:
        raise NotFoundError("Lawyer not found")

    paid = Decimal("0")
    for payment_id in payment_ids:
        payment = await db.get(Payment, payment_id)
        if (
            payment is None
            or payment.payment_type != "lawyer_referral"
            or payment.lawyer_id != lawyer.id
            or payment.status != "pending"
        ):
            raise ValidationError(f"Not a pending referral fee of this lawyer: {payment_id}")
        payment.status = "succeeded"
        payment.paid_at = utc_now()
        paid += payment.amount
        record_payment_event(db, payment.id, "remittance.recorded", {"admin_id": str(admin.id)})

    await db.flush()
    outstanding = (
        await db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.payment_type == "lawyer_referral",
                Payment.lawyer_id == lawyer.id,
                Payment.status == "pending",
            )
        )
    ).scalar_one()
    lawyer.outstanding_fees = Decimal(str(outstanding))

    if lawyer.outstanding_fees == 0:
        lawyer.remittance_status = "current"
        if lawyer.suspended_for_non_payment:
            lawyer.suspended_for_non_payment = False
            lawyer.available = True
            await create_notification(
                db,
                user_id=lawyer.profile_id,
                notification_type="lawyer_restored",
                title="Directory listing restored",
            )

    await log_admin_action(
        db,
        actor_id=admin.id,
        action="lawyer_remittance",
        resource_type="lawyer",
        resource_id=lawyer.id,
        details={"payments": [str(p) for p in payment_ids], "amount": str(paid)},
    )
    await db.flush()
    logger.info(
        "remittance_recorded",
        lawyer_id=str(lawyer.id),
        amount=str(paid),
        outstanding=str(lawyer.outstanding_fees),
    )
    return lawyer


async def list_remittances(db: AsyncSession, user: Profile) -> Dict[str, Any]:
    """A lawyer's own outstanding referral fees."""
    lawyer = (
        await db.execute(select(Lawyer).where(Lawyer.profile_id == user.id))
    ).scalar_one_or_none()
    if lawyer is None:
        raise NotFoundError("Lawyer profile not found")
    fees = await _pending_fees(db, lawyer.id)
    return {
        "lawyer_id": str(lawyer.id),
        "remittance_status": lawyer.remittance_status,
        "outstanding_fees": sum((f.amount for f in fees), Decimal("0")),
        "fees": [
            {
                "payment_id": str(f.id),
                "transaction_id": str(f.transaction_id) if f.transaction_id else None,
                "amount": f.amount,
                "currency": f.currency,
                "created_at": f.created_at.isoformat(),
            }
            for f in fees
        ],
    }

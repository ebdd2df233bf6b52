"""
Reconciliation of checkout payments left pending.

Webhooks are the primary settlement path. This job is the safety net for
deliveries that never arrived: every payment still pending after a cutoff
is checked against its Checkout session in Stripe and settled the same way
the webhook would have settled it.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.exceptions import ProplinkaError
from proplinka.core.payments import (
    SUCCESS_FEE_TYPES,
    apply_featured_listing_paid,
    apply_success_fee_paid,
    mark_session_expired,
    resolve_payment_type,
)
from proplinka.database.connection import get_session_factory
from proplinka.database.models import Payment, ReconciliationRun
from proplinka.integrations.stripe_client import StripeClient, StripeError, as_dict
from proplinka.monitoring.metrics import metrics
from proplinka.utils.time import utc_now

logger = structlog.get_logger(__name__)


class ReconciliationError(Exception):
    """Raised when reconciliation fails."""

    pass


def _intent_id(session: Dict[str, Any]) -> Optional[str]:
    intent = session.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


class PaymentReconciler:
    """
    Settles stale pending checkout payments from Stripe's view of the session.

    Outcomes per payment:
    - complete + paid: completion path (success fee or featured listing)
    - expired: payment failed
    - anything else: unchanged
    """

    def __init__(
        self,
        stripe_client: Optional[StripeClient] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        """
        Initialize reconciler.

        Args:
            stripe_client: Optional Stripe client
            session_factory: Optional async session factory
        """
        self._stripe_client = stripe_client
        self.session_factory = session_factory or get_session_factory()
        logger.info("payment_reconciler_initialized")

    @property
    def stripe_client(self) -> StripeClient:
        if self._stripe_client is None:
            self._stripe_client = StripeClient()
        return self._stripe_client

    async def _settle(self, db: AsyncSession, payment: Payment) -> str:
        session_id = payment.stripe_checkout_session_id
        session = as_dict(await self.stripe_client.retrieve_checkout_session(session_id))

        if session.get("status") == "expired":
            await mark_session_expired(db, session_id, source="reconciliation")
            return "expired"

        if session.get("status") != "complete" or session.get("payment_status") != "paid":
            return "unchanged"

        metadata = dict(session.get("metadata") or payment.metadata_ or {})
        payment_type = resolve_payment_type(metadata)
        if payment_type in SUCCESS_FEE_TYPES:
            await apply_success_fee_paid(
                db,
                session_id,
                _intent_id(session),
                metadata,
                source="reconciliation",
                amount_total=session.get("amount_total"),
            )
        elif payment_type == "featured_listing":
            await apply_featured_listing_paid(
                db,
                session_id,
                _intent_id(session),
                metadata,
                amount_total=session.get("amount_total"),
                currency=session.get("currency"),
                source="reconciliation",
            )
        else:
            logger.warning(
                "reconciliation_unknown_payment_type",
                payment_id=str(payment.id),
                payment_type=payment_type,
            )
            return "unchanged"
        return "completed"

    async def reconcile_pending(
        self, older_than_hours: int = 24, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Settle checkout payments pending for longer than the cutoff.

        Args:
            older_than_hours: Only payments created before now minus this
            now: Optional clock override

        Returns:
            Dict[str, Any]: run_id, checked, completed, expired, unchanged, errors

        Raises:
            ReconciliationError: If the run cannot be recorded
        """
        now = now or utc_now()
        cutoff = now - timedelta(hours=older_than_hours)
        counts = {"checked": 0, "completed": 0, "expired": 0, "unchanged": 0, "errors": 0}
        errors = []

        logger.info("reconciliation_started", cutoff=cutoff.isoformat())

        async with self.session_factory() as db:
            run = ReconciliationRun(status="in_progress", started_at=now)
            db.add(run)
            await db.commit()
            run_id = run.id

            try:
                pending_ids = (
                    await db.execute(
                        select(Payment.id)
                        .where(
                            Payment.status == "pending",
                            Payment.stripe_checkout_session_id.isnot(None),
                            Payment.created_at < cutoff,
                        )
                        .order_by(Payment.created_at)
                    )
                ).scalars().all()

                for pending_id in pending_ids:
                    counts["checked"] += 1
                    payment_id = str(pending_id)
                    try:
                        payment = await db.get(Payment, pending_id)
                        outcome = await self._settle(db, payment)
                        await db.commit()
                    except Exception as e:
                        # One bad row must not block the rest or the remittance step
                        await db.rollback()
                        counts["errors"] += 1
                        errors.append({"payment_id": payment_id, "error": str(e)})
                        if isinstance(e, (StripeError, ProplinkaError)):
                            logger.error(
                                "reconciliation_payment_failed",
                                payment_id=payment_id,
                                error=str(e),
                            )
                        else:
                            logger.exception(
                                "reconciliation_payment_crashed", payment_id=payment_id
                            )
                        continue
                    counts[outcome] += 1

                run.status = "completed"
                run.checked = counts["checked"]
                run.completed = counts["completed"]
                run.expired = counts["expired"]
                run.unchanged = counts["unchanged"]
                run.completed_at = utc_now()
                run.details = {"errors": errors[:100]}
                await db.commit()

            except Exception as e:
                logger.error("reconciliation_failed", error=str(e))
                await db.rollback()
                run.status = "failed"
                run.completed_at = utc_now()
                run.details = {"error": str(e)}
                await db.commit()
                metrics.record_job_run("reconciliation", "failed")
                raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        metrics.record_job_run("reconciliation", "success", counts["completed"] + counts["expired"])
        metrics.set_reconciliation_timestamp(now.timestamp())
        logger.info("reconciliation_completed", run_id=run_id, **counts)
        return {"run_id": run_id, **counts}

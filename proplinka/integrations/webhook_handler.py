"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification
- Event deduplication using Redis
- Routing by event type to registered handlers
- At-least-once processing: an event is marked processed only after its
  handler committed, so failures are retried by Stripe
"""
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.config import get_settings
from proplinka.core import payments
from proplinka.core.exceptions import ProplinkaError
from proplinka.integrations.stripe_client import as_dict
from proplinka.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Mapping[str, Any], AsyncSession], Awaitable[Dict[str, Any]]]


class WebhookError(Exception):
    """Base exception for webhook failures."""

    pass


class WebhookSignatureError(WebhookError):
    """Raised when the Stripe-Signature header does not verify."""

    pass


class WebhookProcessingError(WebhookError):
    """Raised when a handler fails; the event will be redelivered."""

    pass


class WebhookHandler:
    """
    Handles Stripe webhook events with deduplication and processing.

    Features:
    - Signature verification using the Stripe webhook secret
    - Event deduplication (processed event IDs kept in Redis)
    - Event type routing to registered handlers
    """

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize webhook handler.

        Args:
            redis_client: Optional Redis client for event deduplication
        """
        self.settings = get_settings()
        self.redis_client = redis_client
        self._owns_redis = redis_client is None
        self.event_handlers: Dict[str, EventHandler] = {}

        logger.info("webhook_handler_initialized")

    async def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'checkout.session.completed')
            handler: Async callable taking (event object, db session)
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def register_default_handlers(self) -> None:
        self.register_handler("checkout.session.completed", handle_checkout_session_completed)
        self.register_handler("checkout.session.expired", handle_checkout_session_expired)
        self.register_handler("payment_intent.payment_failed", handle_payment_intent_failed)
        self.register_handler("charge.refunded", handle_charge_refunded)

    def verify_signature(
        self, payload: bytes, signature: Optional[str], secret: Optional[str] = None
    ) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value
            secret: Optional webhook secret (uses config if not provided)

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            WebhookSignatureError: If the header is missing or does not verify
        """
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=secret or self.settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookSignatureError(f"Invalid webhook signature: {str(e)}") from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookSignatureError(f"Invalid webhook payload: {str(e)}") from e

        logger.info("webhook_signature_verified", event_id=event.id, event_type=event.type)
        return event

    def _key(self, event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def is_event_processed(self, event_id: str) -> bool:
        """True if the event was already processed. Redis errors count as not processed."""
        try:
            redis = await self._ensure_redis()
            return bool(await redis.exists(self._key(event_id)))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(self, event_id: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                self._key(event_id), ttl_seconds or self.settings.webhook_dedup_ttl, "1"
            )
            logger.info("webhook_marked_processed", event_id=event_id)
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(self, event: stripe.Event, db: AsyncSession) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Args:
            event: Verified Stripe event
            db: Database session; committed on success, rolled back on failure

        Returns:
            Dict[str, Any]: status (success, duplicate or no_handler) and details

        Raises:
            WebhookProcessingError: If the handler fails
        """
        event_id = event.id
        event_type = event.type
        started = time.perf_counter()

        logger.info("processing_webhook_event", event_id=event_id, event_type=event_type)

        if await self.is_event_processed(event_id):
            logger.info("webhook_event_already_processed", event_id=event_id)
            metrics.record_webhook_event(event_type, "duplicate", time.perf_counter() - started)
            return {"status": "duplicate", "event_id": event_id}

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info("webhook_no_handler", event_id=event_id, event_type=event_type)
            await self.mark_event_processed(event_id)
            metrics.record_webhook_event(event_type, "no_handler", time.perf_counter() - started)
            return {"status": "no_handler", "event_id": event_id, "event_type": event_type}

        try:
            result = await handler(as_dict(event.data.object), db)
            await db.commit()
        except Exception as e:
            await db.rollback()
            metrics.record_webhook_event(event_type, "failed", time.perf_counter() - started)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            raise WebhookProcessingError(f"Failed to process event {event_id}: {str(e)}") from e

        await self.mark_event_processed(event_id)
        metrics.record_webhook_event(event_type, "success", time.perf_counter() - started)
        logger.info("webhook_event_processed_successfully", event_id=event_id, event_type=event_type)
        return {"status": "success", "event_id": event_id, "event_type": event_type, "result": result}

    async def close(self) -> None:
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None


async def handle_checkout_session_completed(
    session: Mapping[str, Any], db: AsyncSession
) -> Dict[str, Any]:
    """
    Settle a completed Checkout session.

    Branches on metadata.payment_type: success fees cascade to transaction
    completion, featured listing plans feature the property.
    """
    session_id = session["id"]
    metadata = dict(session.get("metadata") or {})
    payment_type = payments.resolve_payment_type(metadata)
    intent_id = session.get("payment_intent")

    logger.info("handling_checkout_session_completed", session_id=session_id, payment_type=payment_type)

    try:
        if payment_type in payments.SUCCESS_FEE_TYPES:
            transaction = await payments.apply_success_fee_paid(
                db, session_id, intent_id, metadata, amount_total=session.get("amount_total")
            )
            return {
                "payment_type": payment_type,
                "transaction_id": str(transaction.id),
                "transaction_status": transaction.status,
            }
        if payment_type == "featured_listing":
            prop = await payments.apply_featured_listing_paid(
                db,
                session_id,
                intent_id,
                metadata,
                amount_total=session.get("amount_total"),
                currency=session.get("currency"),
            )
            return {
                "payment_type": payment_type,
                "property_id": str(prop.id),
                "featured_until": prop.featured_until.isoformat(),
            }
    except ProplinkaError as e:
        raise WebhookProcessingError(str(e)) from e

    logger.warning("checkout_session_unknown_payment_type", session_id=session_id)
    return {"status": "skipped", "reason": "Unknown payment type"}


async def handle_checkout_session_expired(
    session: Mapping[str, Any], db: AsyncSession
) -> Dict[str, Any]:
    count = await payments.mark_session_expired(db, session["id"])
    return {"session_id": session["id"], "payments_failed": count}


async def handle_payment_intent_failed(
    payment_intent: Mapping[str, Any], db: AsyncSession
) -> Dict[str, Any]:
    error = payment_intent.get("last_payment_error") or {}
    error_message = error.get("message", "Unknown error")
    count = await payments.mark_intent_failed(db, payment_intent["id"], error_message)
    return {"payment_intent_id": payment_intent["id"], "rows_updated": count, "error": error_message}


async def handle_charge_refunded(charge: Mapping[str, Any], db: AsyncSession) -> Dict[str, Any]:
    payment_intent_id = charge.get("payment_intent")
    if not payment_intent_id:
        logger.warning("charge_refunded_no_payment_intent", charge_id=charge["id"])
        return {"status": "skipped", "reason": "No payment_intent associated"}

    payment = await payments.apply_charge_refunded(
        db, payment_intent_id, int(charge.get("amount_refunded") or 0)
    )
    return {
        "payment_intent_id": payment_intent_id,
        "payment_id": str(payment.id) if payment else None,
        "status": payment.status if payment else None,
    }

"""
Stripe API client.

Checkout sessions, customers and refunds behind one wrapper that:
- retries transient and rate-limit failures with exponential backoff
- stops calling Stripe for a while after repeated failures
- runs the blocking SDK in the default executor

Amounts cross this boundary in minor units (cents); the rest of the service
works in whole-currency Decimals. ``to_minor_units`` and ``from_minor_units``
are the only conversions.
"""
import asyncio
import functools
import time
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import stripe
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from proplinka.config import get_settings
from proplinka.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    """R4,750.00 -> 475000."""
    return int((Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_minor_units(value: Union[int, str, None]) -> Decimal:
    return (Decimal(value or 0) / 100).quantize(CENT)


def price_line_item(name: str, amount: Decimal, currency: str) -> Dict[str, Any]:
    """Single-quantity Checkout line item with an inline price."""
    return {
        "price_data": {
            "currency": currency.lower(),
            "unit_amount": to_minor_units(amount),
            "product_data": {"name": name},
        },
        "quantity": 1,
    }


def _plain(value: Any) -> Any:
    if isinstance(value, list):
        return [_plain(item) for item in value]
    if isinstance(value, Mapping) or hasattr(value, "to_dict"):
        return as_dict(value)
    return value


def as_dict(obj: Any) -> Dict[str, Any]:
    """
    Plain nested dict of a Stripe object.

    StripeObject is a dict subclass up to stripe 12 and a plain object from
    13 on, where ``.get`` raises. Handlers only ever see the result of this.
    """
    if not isinstance(obj, Mapping):
        obj = obj.to_dict()
    return {key: _plain(value) for key, value in obj.items()}


class StripeErrorType(Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"
    CIRCUIT_OPEN = "circuit_open"


class StripeError(Exception):
    """Stripe failure classified for retry decisions."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def is_retryable(self) -> bool:
        # An open circuit fails fast; backing off inside one request would not close it
        return self.error_type in (StripeErrorType.TRANSIENT, StripeErrorType.RATE_LIMIT)


# Card declines and bad parameters will not succeed on a retry
_PERMANENT_ERRORS = (
    stripe.CardError,
    stripe.InvalidRequestError,
    stripe.AuthenticationError,
    stripe.PermissionError,
    stripe.IdempotencyError,
)


def classify_error(error: stripe.StripeError) -> StripeErrorType:
    if isinstance(error, stripe.RateLimitError):
        return StripeErrorType.RATE_LIMIT
    if isinstance(error, _PERMANENT_ERRORS):
        return StripeErrorType.PERMANENT
    return StripeErrorType.TRANSIENT


stripe_retry = retry(
    retry=retry_if_exception(lambda e: isinstance(e, StripeError) and e.is_retryable),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=16),
    reraise=True,
)


class CircuitBreaker:
    """
    Fails fast while Stripe looks unavailable.

    closed -> open after ``failure_threshold`` consecutive failures;
    open -> half_open once ``reset_seconds`` have passed; half_open -> closed
    after ``success_threshold`` successes, or straight back to open on the
    first failure. Invalid requests do not count as failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_seconds: float = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self.success_threshold = success_threshold
        self.clock = clock
        self.state = "closed"
        self.failures = 0
        self.half_open_successes = 0
        self.opened_at = 0.0

    def _transition(self, state: str) -> None:
        if state != self.state:
            logger.info("stripe_circuit_transition", previous=self.state, state=state)
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def allow(self) -> bool:
        if self.state == "open" and self.clock() - self.opened_at >= self.reset_seconds:
            self.half_open_successes = 0
            self._transition("half_open")
        return self.state != "open"

    def record_success(self) -> None:
        self.failures = 0
        if self.state == "half_open":
            self.half_open_successes += 1
            if self.half_open_successes >= self.success_threshold:
                self._transition("closed")

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == "half_open" or self.failures >= self.failure_threshold:
            self.opened_at = self.clock()
            self._transition("open")

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if not self.allow():
            metrics.record_stripe_api_error(StripeErrorType.CIRCUIT_OPEN.value)
            raise StripeError("Stripe circuit is open", StripeErrorType.CIRCUIT_OPEN)
        try:
            result = func(*args, **kwargs)
        except stripe.InvalidRequestError:
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


class StripeClient:
    """Async wrapper over the Stripe SDK for the calls the marketplace makes."""

    def __init__(self, circuit_breaker: Optional[CircuitBreaker] = None) -> None:
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.stripe_breaker_failure_threshold,
            reset_seconds=settings.stripe_breaker_reset_seconds,
        )
        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    async def _call(self, func: Callable[..., Any], **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, functools.partial(self.circuit_breaker.call, func, **kwargs)
            )
        except stripe.StripeError as e:
            error_type = classify_error(e)
            metrics.record_stripe_api_error(error_type.value)
            logger.error(
                "stripe_api_error",
                operation=getattr(func, "__qualname__", str(func)),
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise StripeError(str(e), error_type, original_error=e) from e

    @stripe_retry
    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Customer:
        params: Dict[str, Any] = {"email": email, "metadata": metadata or {}}
        if name:
            params["name"] = name
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        customer = await self._call(stripe.Customer.create, **params)
        logger.info("stripe_customer_created", customer_id=customer.id)
        return customer

    @stripe_retry
    async def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.checkout.Session:
        """
        Create a one-off card payment session.

        ``metadata`` is copied onto the payment intent as well, so
        ``payment_intent.*`` events can be traced back to the same
        transaction or listing.
        """
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "payment_method_types": ["card"],
        }
        if customer_id:
            params["customer"] = customer_id
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        session = await self._call(stripe.checkout.Session.create, **params)
        logger.info(
            "checkout_session_created",
            session_id=session.id,
            payment_type=metadata.get("payment_type"),
        )
        return session

    @stripe_retry
    async def retrieve_checkout_session(self, session_id: str) -> stripe.checkout.Session:
        return await self._call(stripe.checkout.Session.retrieve, id=session_id)

    @stripe_retry
    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> stripe.Refund:
        """
        Refund a captured payment.

        Args:
            payment_intent_id: Intent recorded when the checkout completed
            amount_cents: Partial amount; the full remaining amount when None
            reason: duplicate, fraudulent or requested_by_customer
            metadata: Echoed on the charge.refunded event
            idempotency_key: Guards against double refunds on client retries
        """
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_cents:
            params["amount"] = amount_cents
        if reason:
            params["reason"] = reason
        if metadata:
            params["metadata"] = metadata
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        refund = await self._call(stripe.Refund.create, **params)
        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return refund

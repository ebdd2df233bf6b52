"""
Prometheus metrics for marketplace monitoring.

Tracks:
- HTTP requests per route template
- Checkout sessions created
- Webhook events and processing duration
- Stripe API errors and circuit breaker state
- Refunds and completed transactions
- Rate limit rejections
- Transactional email delivery
- Scheduled job results
"""
from prometheus_client import Counter, Gauge, Histogram

# HTTP metrics
http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    ["method", "route", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "route"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# Checkout metrics
checkout_sessions_created_total = Counter(
    "checkout_sessions_created_total",
    "Total Stripe checkout sessions created",
    ["payment_type"],  # success_fee, premium_listing
)

# Stripe API metrics
stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit, circuit_open
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, duplicate, no_handler, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Business metrics
transactions_completed_total = Counter(
    "transactions_completed_total",
    "Transactions completed after both success fees were paid",
)

refunds_total = Counter(
    "refunds_total",
    "Total refunds issued",
    ["payment_type", "kind"],  # kind: full, partial
)

# Rate limiting
rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["action"],
)

# Email
emails_sent_total = Counter(
    "emails_sent_total",
    "Transactional emails by outcome",
    ["template", "status"],  # sent, skipped, failed
)

# Scheduled jobs
scheduled_job_runs_total = Counter(
    "scheduled_job_runs_total",
    "Scheduled job runs by outcome",
    ["job", "status"],
)

scheduled_job_items_total = Counter(
    "scheduled_job_items_total",
    "Items changed by scheduled jobs",
    ["job"],
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last pending-payment reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_http_request(method: str, route: str, status: int, duration_seconds: float) -> None:
        http_requests_total.labels(method=method, route=route, status=str(status)).inc()
        http_request_duration_seconds.labels(method=method, route=route).observe(duration_seconds)

    @staticmethod
    def record_checkout_session(payment_type: str) -> None:
        """Record a created checkout session."""
        checkout_sessions_created_total.labels(payment_type=payment_type).inc()

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_transaction_completed() -> None:
        transactions_completed_total.inc()

    @staticmethod
    def record_refund(payment_type: str, full: bool) -> None:
        refunds_total.labels(payment_type=payment_type, kind="full" if full else "partial").inc()

    @staticmethod
    def record_rate_limited(action: str) -> None:
        rate_limit_rejections_total.labels(action=action).inc()

    @staticmethod
    def record_email(template: str, status: str) -> None:
        emails_sent_total.labels(template=template, status=status).inc()

    @staticmethod
    def record_job_run(job: str, status: str, items: int = 0) -> None:
        """Record a scheduled job run and how many items it changed."""
        scheduled_job_runs_total.labels(job=job, status=status).inc()
        if items:
            scheduled_job_items_total.labels(job=job).inc(items)

    @staticmethod
    def set_reconciliation_timestamp(timestamp: float) -> None:
        reconciliation_last_run_timestamp.set(timestamp)


metrics = MetricsCollector()

"""
Prometheus metrics for settlement monitoring.

Tracks:
- Checkout sessions by outcome
- Webhook events by type and status
- Settlements and refunds
- Payouts by status, with requested amounts
- Invalid state transitions (alert on any increase)
- Per-seller lock acquisitions and timeouts
- Stripe API calls and errors
"""
from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_sessions_total = Counter(
    "checkout_sessions_total",
    "Total checkout sessions requested",
    ["status"],  # created, failed
)

checkout_gross_amount_cents = Histogram(
    "checkout_gross_amount_cents",
    "Gross checkout amounts in minor units",
    buckets=(100, 500, 1000, 2500, 5000, 10000, 50000, 100000, 500000),
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events handled",
    ["event_type", "status"],  # processed, ignored, duplicate, malformed, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected for a bad signature",
)

# Settlement metrics
settlements_total = Counter(
    "settlements_total",
    "Transaction status transitions applied by the reconciler",
    ["status"],  # completed, failed, refunded
)

settled_platform_fee_cents = Counter(
    "settled_platform_fee_cents",
    "Platform fees captured by completed settlements, in minor units",
)

seller_level_changes_total = Counter(
    "seller_level_changes_total",
    "Seller level promotions",
    ["level"],
)

# Payout metrics
payouts_total = Counter(
    "payouts_total",
    "Payout status transitions",
    ["status"],  # pending, processing, completed, failed, cancelled
)

payout_requests_rejected_total = Counter(
    "payout_requests_rejected_total",
    "Payout requests rejected by validation",
    ["reason"],
)

payout_disbursements_unconfirmed_total = Counter(
    "payout_disbursements_unconfirmed_total",
    "Disbursement calls that ended without a definite answer from the processor",
    ["error_type"],
)

payout_amount_cents = Histogram(
    "payout_amount_cents",
    "Requested payout amounts in minor units",
    buckets=(500, 1000, 2500, 5000, 10000, 50000, 100000, 500000),
)

# Fault metrics
invalid_state_transitions_total = Counter(
    "invalid_state_transitions_total",
    "Illegal state transitions detected (races or bugs)",
    ["entity"],  # transaction, payout
)

# Lock metrics
seller_lock_acquisitions_total = Counter(
    "seller_lock_acquisitions_total",
    "Total critical-section lock acquisitions",
    ["backend", "status"],  # acquired, timeout
)

seller_lock_hold_seconds = Histogram(
    "seller_lock_hold_seconds",
    "Critical-section hold duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Worker metrics
payout_dispatch_batch_size = Histogram(
    "payout_dispatch_batch_size",
    "Pending payouts picked up per dispatcher cycle",
    buckets=(0, 1, 5, 10, 25, 50, 100),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(status: str, gross_amount: int = 0) -> None:
        checkout_sessions_total.labels(status=status).inc()
        if status == "created":
            checkout_gross_amount_cents.observe(gross_amount)

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure() -> None:
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_settlement(status: str, platform_fee: int = 0) -> None:
        """Record a transaction transition applied by the reconciler."""
        settlements_total.labels(status=status).inc()
        if status == "completed" and platform_fee > 0:
            settled_platform_fee_cents.inc(platform_fee)

    @staticmethod
    def record_level_change(level: int) -> None:
        seller_level_changes_total.labels(level=str(level)).inc()

    @staticmethod
    def record_payout(status: str, amount: int = 0) -> None:
        """Record a payout transition."""
        payouts_total.labels(status=status).inc()
        if status == "pending":
            payout_amount_cents.observe(amount)

    @staticmethod
    def record_payout_rejected(reason: str) -> None:
        payout_requests_rejected_total.labels(reason=reason).inc()

    @staticmethod
    def record_payout_unconfirmed(error_type: str) -> None:
        payout_disbursements_unconfirmed_total.labels(error_type=error_type).inc()

    @staticmethod
    def record_invalid_state(entity: str) -> None:
        invalid_state_transitions_total.labels(entity=entity).inc()

    @staticmethod
    def record_lock(backend: str, status: str, hold_seconds: float = 0) -> None:
        """Record critical-section lock acquisition."""
        seller_lock_acquisitions_total.labels(backend=backend, status=status).inc()
        if hold_seconds > 0:
            seller_lock_hold_seconds.observe(hold_seconds)

    @staticmethod
    def record_stripe_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_dispatch_batch(size: int) -> None:
        payout_dispatch_batch_size.observe(size)


# Export singleton instance
metrics = MetricsCollector()

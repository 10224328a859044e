"""
Prometheus metrics for checkout reconciliation.

Tracks:
- Webhook events received and their outcome
- Gateway verification calls and latency
- Order finalizations (created vs duplicate)
- Abandoned cart reminders and expired cart cleanup
- Pending payment polling outcomes
- Scheduler job runs
- Open cash drawer sessions
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["gateway"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["gateway", "outcome"],  # finalized, duplicate, ignored, session_not_found, error
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Gateway metrics
gateway_verifications_total = Counter(
    "gateway_verifications_total",
    "Total gateway verification calls",
    ["gateway", "status"],  # paid, pending, failed, timeout, error
)

gateway_verification_duration_seconds = Histogram(
    "gateway_verification_duration_seconds",
    "Gateway verification call duration in seconds",
    ["gateway"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["gateway"],
)

# Finalization metrics
order_finalizations_total = Counter(
    "order_finalizations_total",
    "Total order finalization attempts with a paid result",
    ["gateway", "outcome"],  # created, duplicate
)

order_amount_minor_units = Histogram(
    "order_amount_minor_units",
    "Finalized order amounts in minor currency units",
    buckets=(0, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Abandoned cart metrics
abandoned_cart_reminders_total = Counter(
    "abandoned_cart_reminders_total",
    "Abandoned cart processing outcomes",
    ["outcome"],  # sent, skipped, error
)

expired_carts_deleted_total = Counter(
    "expired_carts_deleted_total",
    "Expired draft sessions deleted by cleanup",
)

# Pending payment polling
pending_payment_checks_total = Counter(
    "pending_payment_checks_total",
    "Pending payment verification outcomes",
    ["outcome"],  # paid, failed, pending, error
)

# Scheduler metrics
scheduler_job_runs_total = Counter(
    "scheduler_job_runs_total",
    "Scheduled job executions",
    ["job", "status"],  # success, failure
)

scheduler_job_duration_seconds = Histogram(
    "scheduler_job_duration_seconds",
    "Scheduled job duration in seconds",
    ["job"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

scheduler_job_last_run_timestamp = Gauge(
    "scheduler_job_last_run_timestamp",
    "Timestamp of the last run of a scheduled job",
    ["job"],
)

# Counter operations
cash_sessions_open = Gauge(
    "cash_sessions_open",
    "Cash drawer sessions opened minus closed since process start",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(gateway: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(gateway=gateway).inc()
        webhook_events_processed_total.labels(gateway=gateway, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_gateway_verification(
        gateway: str, status: str, duration_seconds: float
    ) -> None:
        """Record a gateway verification call."""
        gateway_verifications_total.labels(gateway=gateway, status=status).inc()
        gateway_verification_duration_seconds.labels(gateway=gateway).observe(
            duration_seconds
        )

    @staticmethod
    def set_circuit_breaker_state(gateway: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(gateway=gateway).set(state_map.get(state, 0))

    @staticmethod
    def record_finalization(gateway: str, created: bool, amount: int = 0) -> None:
        """Record an order finalization."""
        outcome = "created" if created else "duplicate"
        order_finalizations_total.labels(gateway=gateway, outcome=outcome).inc()
        if created:
            order_amount_minor_units.observe(amount)

    @staticmethod
    def record_abandoned_cart(outcome: str) -> None:
        """Record the outcome of one abandoned cart."""
        abandoned_cart_reminders_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_expired_carts_deleted(count: int) -> None:
        """Record expired draft sessions deleted."""
        expired_carts_deleted_total.inc(count)

    @staticmethod
    def record_pending_check(outcome: str) -> None:
        """Record the outcome of one pending payment check."""
        pending_payment_checks_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_job_run(job: str, success: bool, duration_seconds: float) -> None:
        """Record a scheduled job execution."""
        status = "success" if success else "failure"
        scheduler_job_runs_total.labels(job=job, status=status).inc()
        scheduler_job_duration_seconds.labels(job=job).observe(duration_seconds)
        scheduler_job_last_run_timestamp.labels(job=job).set(time.time())

    @staticmethod
    def record_cash_session(opened: bool) -> None:
        """Track cash drawer sessions opened and closed."""
        if opened:
            cash_sessions_open.inc()
        else:
            cash_sessions_open.dec()


# Export singleton instance
metrics = MetricsCollector()

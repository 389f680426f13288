"""
Prometheus metrics for payment reconciliation monitoring.

Tracks:
- Payment initiations by method and outcome
- Gateway API calls, errors and circuit breaker state
- Webhook notifications and processing duration
- Reconciliation outcomes per channel
- Order sync failures and repairs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Initiation metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total payment initiation requests",
    ["method", "outcome"],  # outcome: accepted, rejected, gateway_unavailable
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total payment gateway API requests",
    ["operation", "status"],  # operation: auth, initiate, query_status, register_ipn
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total payment gateway API errors",
    ["error_type"],  # transient, permanent
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Payment gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_notifications_total = Counter(
    "webhook_notifications_total",
    "Total gateway notifications received",
    ["outcome"],  # applied, noop, rejected, not_found, error
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reconciliation_outcomes_total = Counter(
    "reconciliation_outcomes_total",
    "Reconciliation decisions by channel",
    ["channel", "outcome"],  # outcome: applied, already_terminal, still_pending, lost_race
)

status_polls_total = Counter(
    "status_polls_total",
    "Status poll requests",
    ["result"],  # stored, refreshed, degraded
)

# Order sync metrics
order_sync_failures_total = Counter(
    "order_sync_failures_total",
    "Order updates that failed after a payment completed",
)

order_sync_repairs_total = Counter(
    "order_sync_repairs_total",
    "Orders marked paid by the repair sweep",
    ["result"],  # repaired, failed
)

order_sync_last_run_timestamp = Gauge(
    "order_sync_last_run_timestamp",
    "Timestamp of last order sync repair sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initiation(method: str, outcome: str) -> None:
        """Record a payment initiation."""
        payment_initiations_total.labels(method=method, outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook(outcome: str, duration_seconds: float) -> None:
        """Record webhook notification processing."""
        webhook_notifications_total.labels(outcome=outcome).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_reconciliation(channel: str, outcome: str) -> None:
        """Record a reconciliation decision."""
        reconciliation_outcomes_total.labels(channel=channel, outcome=outcome).inc()

    @staticmethod
    def record_status_poll(result: str) -> None:
        """Record how a status poll was answered."""
        status_polls_total.labels(result=result).inc()

    @staticmethod
    def record_order_sync_failure() -> None:
        """Record an order update failure."""
        order_sync_failures_total.inc()

    @staticmethod
    def record_order_sync_sweep(repaired: int, failed: int) -> None:
        """Record the result of an order sync repair sweep."""
        if repaired:
            order_sync_repairs_total.labels(result="repaired").inc(repaired)
        if failed:
            order_sync_repairs_total.labels(result="failed").inc(failed)
        order_sync_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()

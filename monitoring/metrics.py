"""
Prometheus metrics for the payment reconciliation pipeline.

Tracks:
- Webhook deliveries by event type and outcome
- Webhook processing duration
- Signature verification failures
- Duplicate deliveries short-circuited by the idempotency guard
- Order state transitions (applied vs. no-op)
- Order confirmation notifications
- Gateway API calls and errors
"""
from prometheus_client import Counter, Gauge, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, failed, duplicate
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected for a missing or invalid signature",
)

# Idempotency metrics
idempotency_duplicates_total = Counter(
    "idempotency_duplicates_total",
    "Webhook deliveries short-circuited as duplicates",
)

idempotency_tracked_events = Gauge(
    "idempotency_tracked_events",
    "Event ids currently held by the in-memory idempotency store",
)

# Order metrics
order_transitions_total = Counter(
    "order_transitions_total",
    "Order state machine transition attempts",
    ["transition", "result"],  # result: applied, noop, not_found, rejected
)

orders_created_total = Counter(
    "orders_created_total",
    "Orders created at checkout",
    ["buyer_type"],  # user, guest
)

# Notification metrics
notifications_total = Counter(
    "notifications_total",
    "Order confirmation notifications",
    ["status"],  # sent, failed, timeout, skipped
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total payment gateway API requests",
    ["operation", "status"],
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total payment gateway API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure() -> None:
        """Record a rejected webhook signature."""
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_duplicate() -> None:
        """Record a duplicate delivery."""
        idempotency_duplicates_total.inc()

    @staticmethod
    def set_tracked_events(count: int) -> None:
        """Set the in-memory idempotency store size."""
        idempotency_tracked_events.set(count)

    @staticmethod
    def record_transition(transition: str, result: str) -> None:
        """Record an order state machine transition attempt."""
        order_transitions_total.labels(transition=transition, result=result).inc()

    @staticmethod
    def record_order_created(buyer_type: str) -> None:
        """Record an order created at checkout."""
        orders_created_total.labels(buyer_type=buyer_type).inc()

    @staticmethod
    def record_notification(status: str) -> None:
        """Record an order confirmation outcome."""
        notifications_total.labels(status=status).inc()

    @staticmethod
    def record_gateway_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_api_error(error_type: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))


# Export singleton instance
metrics = MetricsCollector()

from prometheus_client import Counter, Histogram

EVENTS_EMITTED = Counter(
    "event_emitted_total",
    "Total events passed to the dispatcher",
    ["event"],
)
EVENT_DELIVERIES = Counter(
    "event_deliveries_total",
    "Successful deliveries to subscriptions and subscribers",
    ["kind", "event"],
)
EVENT_HANDLER_FAILURES = Counter(
    "event_handler_failures_total",
    "Failed or timed out deliveries to subscriptions and subscribers",
    ["kind", "event", "reason"],
)
EVENT_HANDLER_DURATION = Histogram(
    "event_handler_duration_seconds",
    "Time spent in a single connector or subscriber invocation",
    ["kind"],
)
EVENT_SUBSCRIPTIONS_DROPPED = Counter(
    "event_subscriptions_dropped_total",
    "Persisted subscriptions skipped at load time because of malformed config",
)
EVENT_WEBHOOK_HEADERS_DROPPED = Counter(
    "event_webhook_headers_dropped_total",
    "Webhooks registered without custom headers because the stored headers were malformed",
)
QUEUE_OPERATIONS = Counter(
    "queue_operations_total",
    "Queue provider operations",
    ["backend", "operation", "status"],
)


def observe_handler(kind: str, duration: float) -> None:
    EVENT_HANDLER_DURATION.labels(kind=kind).observe(duration)


def count_queue_operation(backend: str, operation: str, status: str = "ok") -> None:
    QUEUE_OPERATIONS.labels(backend=backend, operation=operation, status=status).inc()

"""
Prometheus metrics: status transitions (API), assignment runs, courier callbacks
(worker), callback queue depth.
"""
from prometheus_client import Counter, Gauge, generate_latest

# Lifecycle
order_transitions_total = Counter(
    "order_transitions_total",
    "Total accepted order status transitions",
    ["from_status", "to_status"],
)
transitions_rejected_total = Counter(
    "transitions_rejected_total",
    "Total status transitions rejected by the transition table",
    ["from_status", "to_status"],
)
audit_sink_failures_total = Counter(
    "audit_sink_failures_total",
    "Status log entries that could not be persisted",
)
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Customer notifications handed to the delivery channel",
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Customer notifications the delivery channel rejected",
)

# Assignment
orders_assigned_total = Counter(
    "orders_assigned_total",
    "Orders moved to Assigned to Driver by an assignment run",
)
orders_unassigned_total = Counter(
    "orders_unassigned_total",
    "Orders left unassigned by an assignment run (no drivers or rejected transition)",
)

# Worker: courier callback outcomes
courier_callbacks_total = Counter(
    "courier_callbacks_total",
    "Courier callback attempts by outcome",
    ["outcome"],
)
courier_callbacks_retried_total = Counter(
    "courier_callbacks_retried_total",
    "Courier callbacks scheduled for another attempt",
)
courier_callbacks_dlq_total = Counter(
    "courier_callbacks_dlq_total",
    "Courier callbacks moved to DLQ after max attempts",
)

callback_queue_messages_waiting = Gauge(
    "callback_queue_messages_waiting",
    "Approximate number of courier callbacks waiting (main queue)",
)
callback_queue_messages_delayed = Gauge(
    "callback_queue_messages_delayed",
    "Courier callbacks waiting for their backoff to expire (Redis) or in flight (SQS)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()

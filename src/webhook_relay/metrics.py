from prometheus_client import Counter, Histogram

DELIVERIES_TOTAL = Counter(
    "webhook_deliveries_total",
    "Outbound webhook delivery attempts",
    ["result"],
)

DELIVERY_DURATION = Histogram(
    "webhook_delivery_duration_seconds",
    "Outbound webhook delivery duration in seconds",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

RECONCILIATIONS_TOTAL = Counter(
    "payment_reconciliations_total",
    "Inbound payment notifications by outcome",
    ["outcome"],
)

ENROLLMENTS_CREATED_TOTAL = Counter(
    "enrollments_created_total",
    "Enrollments created after a payment succeeded",
)

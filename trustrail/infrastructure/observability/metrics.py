"""Prometheus metrics for decisions, lifecycle transitions, webhooks and jobs"""

from prometheus_client import Counter, Histogram

# Decision metrics
decision_counter = Counter(
    "trustrail_decision_total",
    "Trust engine decisions made",
    ["outcome", "source"],  # APPROVED | DECLINED | FLAGGED_FOR_REVIEW ; local | external
)

trust_score_histogram = Histogram(
    "trustrail_trust_score",
    "Distribution of computed trust scores",
    buckets=[10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
)

transition_counter = Counter(
    "trustrail_transition_total",
    "Application lifecycle transitions",
    ["from_status", "to_status"],
)

# Provider webhooks (inbound)
provider_webhook_counter = Counter(
    "trustrail_provider_webhook_total",
    "Provider webhook events received",
    ["event_type", "outcome"],
)

# Provider API (outbound)
provider_failures_counter = Counter(
    "trustrail_provider_failures_total",
    "Failed payment provider calls",
    ["request_type"],
)

# Business notifications (outbound)
notification_latency_histogram = Histogram(
    "trustrail_notification_latency_seconds",
    "Business webhook delivery time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

notification_failure_counter = Counter(
    "trustrail_notification_failures_total",
    "Failed business webhook deliveries",
)

# Jobs
job_tick_histogram = Histogram(
    "trustrail_job_tick_seconds",
    "Duration of one polling job tick",
    ["job"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_decision(decision: str, trust_score: int, source: str) -> None:
    decision_counter.labels(outcome=decision, source=source).inc()
    trust_score_histogram.observe(trust_score)


def record_transition(before: str, after: str) -> None:
    transition_counter.labels(from_status=before, to_status=after).inc()


def record_webhook(event_type: str, outcome: str) -> None:
    provider_webhook_counter.labels(event_type=event_type, outcome=outcome).inc()

"""Metrics facade.

Service code calls only the semantic helpers below; the Prometheus objects stay
private to this module.

Metrics:
- subscription_transitions_applied_total     Applied lifecycle transitions by action
- subscription_transitions_rejected_total    Rejected transitions by action and reason
- processor_calls_total                      Processor calls by operation and outcome
- processor_retries_total                    Retry attempts inside the processor client
- reconciler_items_total                     Reconciler work items by kind and outcome
- reconciler_run_seconds                     Duration of a reconciler tick
- payment_failures_recorded_total            Payment failures entering grace period
- subscription_renewals_total                Successful renewal charges by plan
- processor_webhooks_total                   Inbound processor events by type and outcome
- premium_cache_lookups_total                Premium status cache lookups by result
- rate_limited_requests_total                Requests rejected by the rate limiter, by path
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

_TRANSITIONS_APPLIED = Counter(
    "subscription_transitions_applied_total", "Applied subscription transitions", ["action"]
)
_TRANSITIONS_REJECTED = Counter(
    "subscription_transitions_rejected_total", "Rejected subscription transitions", ["action", "reason"]
)
_PROCESSOR_CALLS = Counter("processor_calls_total", "Payment processor calls", ["operation", "outcome"])
_PROCESSOR_RETRIES = Counter(
    "processor_retries_total", "Payment processor retry attempts", ["operation", "reason"]
)
_RECONCILER_ITEMS = Counter("reconciler_items_total", "Reconciler work items", ["kind", "outcome"])
_RECONCILER_RUN_SECONDS = Histogram(
    "reconciler_run_seconds",
    "Duration of a reconciler tick",
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)
_PAYMENT_FAILURES = Counter("payment_failures_recorded_total", "Payment failures entering grace period")
_RENEWALS = Counter("subscription_renewals_total", "Successful renewal charges", ["plan"])
_WEBHOOKS = Counter("processor_webhooks_total", "Inbound processor events", ["event_type", "outcome"])
_PREMIUM_CACHE = Counter("premium_cache_lookups_total", "Premium status cache lookups", ["result"])
_RATE_LIMITED = Counter("rate_limited_requests_total", "Requests rejected by the rate limiter", ["path"])

# Pre-create the label sets dashboards alert on so they export as zero
for _result in ("hit", "miss"):
    _PREMIUM_CACHE.labels(result=_result)


def transition_applied(action: str) -> None:
    _TRANSITIONS_APPLIED.labels(action=action).inc()


def transition_rejected(action: str, reason: str) -> None:
    _TRANSITIONS_REJECTED.labels(action=action, reason=reason).inc()


def processor_call(operation: str, outcome: str) -> None:
    _PROCESSOR_CALLS.labels(operation=operation, outcome=outcome).inc()


def processor_retry(operation: str, reason: str) -> None:
    _PROCESSOR_RETRIES.labels(operation=operation, reason=reason).inc()


def reconciler_item(kind: str, outcome: str) -> None:
    _RECONCILER_ITEMS.labels(kind=kind, outcome=outcome).inc()


def reconciler_run(duration_seconds: float) -> None:
    _RECONCILER_RUN_SECONDS.observe(duration_seconds)


def payment_failure_recorded() -> None:
    _PAYMENT_FAILURES.inc()


def subscription_renewed(plan: str) -> None:
    _RENEWALS.labels(plan=plan).inc()


def webhook_received(event_type: str, outcome: str) -> None:
    _WEBHOOKS.labels(event_type=event_type, outcome=outcome).inc()


def premium_cache_lookup(hit: bool) -> None:
    _PREMIUM_CACHE.labels(result="hit" if hit else "miss").inc()


def rate_limited(path: str) -> None:
    _RATE_LIMITED.labels(path=path).inc()

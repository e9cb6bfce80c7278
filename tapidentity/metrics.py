"""Prometheus metrics for the Tap Identity service."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("tap_identity", "Tap Identity application info")
app_info.info({"version": "0.1.0", "name": "tap-identity"})

# Claim metrics
identity_claims_total = Counter(
    "identity_claims_total",
    "Total number of identity claim attempts",
    ["method", "outcome"],
)

tap_events_linked_total = Counter(
    "tap_events_linked_total",
    "Total number of tap events linked to a user",
    ["link_method"],
)

identity_claim_duration_seconds = Histogram(
    "identity_claim_duration_seconds",
    "Time spent running the claim transaction",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0],
)

# Aggregation metrics
aggregation_runs_total = Counter(
    "aggregation_runs_total",
    "Total number of daily aggregation runs",
    ["status"],
)

aggregation_rows_upserted_total = Counter(
    "aggregation_rows_upserted_total",
    "Total number of snapshot rows upserted",
    ["dimension"],
)

aggregation_duration_seconds = Histogram(
    "aggregation_duration_seconds",
    "Time spent aggregating one day",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)


def record_claim(method: str, outcome: str, duration: float):
    """Record a finished claim attempt (outcome: success, conflict, error)."""
    identity_claims_total.labels(method=method, outcome=outcome).inc()
    identity_claim_duration_seconds.observe(duration)


def record_taps_linked(link_method: str, count: int):
    """Record tap events linked by one matcher pass."""
    if count > 0:
        tap_events_linked_total.labels(link_method=link_method).inc(count)


def record_aggregation_run(success: bool, duration: float):
    """Record a daily aggregation run."""
    status = "success" if success else "error"
    aggregation_runs_total.labels(status=status).inc()
    aggregation_duration_seconds.observe(duration)


def record_rows_upserted(dimension: str, count: int):
    """Record snapshot rows written for one dimension."""
    aggregation_rows_upserted_total.labels(dimension=dimension).inc(count)


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())

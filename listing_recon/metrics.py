"""Prometheus metrics for the listing reconciliation pipeline."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("listing_recon", "Listing reconciliation pipeline info")
app_info.info({"version": "0.1.0", "name": "listing-recon"})

# Ingestion metrics
listings_fetched_total = Counter(
    "listings_fetched_total",
    "Raw listings yielded by source adapters",
    ["source"],
)

listings_processed_total = Counter(
    "listings_processed_total",
    "Listings processed by outcome",
    ["source", "outcome"],
)

source_fetch_errors_total = Counter(
    "source_fetch_errors_total",
    "Failed source fetch attempts",
    ["source", "error_type"],
)

source_duration_seconds = Histogram(
    "source_duration_seconds",
    "Time spent ingesting one source",
    ["source"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

# Matching metrics
match_score = Histogram(
    "match_score",
    "Best catalog match score per segment",
    buckets=[0.1, 0.3, 0.5, 0.7, 0.8, 0.9, 0.95, 1.0],
)

match_outcomes_total = Counter(
    "match_outcomes_total",
    "Catalog match outcomes",
    ["outcome"],
)

validation_actions_total = Counter(
    "validation_actions_total",
    "Validator decisions",
    ["action"],
)

# Run metrics
aggregation_runs_total = Counter(
    "aggregation_runs_total",
    "Total number of aggregation runs",
    ["trigger", "status"],
)

aggregation_last_run_timestamp = Gauge(
    "aggregation_last_run_timestamp",
    "Timestamp of last aggregation run",
    ["status"],
)

sweep_rows_total = Counter(
    "sweep_rows_total",
    "Rows touched by periodic sweeps",
    ["sweep"],
)

run_lock_events_total = Counter(
    "run_lock_events_total",
    "Run lock acquisitions, skips and stale reclaims",
    ["event"],
)


def record_listing_outcome(source: str, outcome: str):
    """Record how one raw listing was handled."""
    listings_processed_total.labels(source=source, outcome=outcome).inc()


def record_fetch_error(source: str, error_type: str):
    """Record a failed fetch attempt."""
    source_fetch_errors_total.labels(source=source, error_type=error_type).inc()


def record_match(outcome: str, score: float | None):
    """Record a catalog match outcome."""
    match_outcomes_total.labels(outcome=outcome).inc()
    if score is not None:
        match_score.observe(score)


def record_run(trigger: str, status: str):
    """Record an aggregation run end state."""
    aggregation_runs_total.labels(trigger=trigger, status=status).inc()
    aggregation_last_run_timestamp.labels(status=status).set(time.time())

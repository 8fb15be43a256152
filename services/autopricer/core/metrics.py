"""
Prometheus Metrics for the Autopricer

Exposes operational metrics for monitoring and alerting.

Metrics:
- Stream ingestion counters (messages, accepted/dropped events, reconnects)
- Stream connection gauge
- Pricing outcome counters and pass duration
- Key pivot rate gauge
- Database write counters and latency
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry

# Create a custom registry to avoid conflicts with default registry
REGISTRY = CollectorRegistry()


# =============================================================================
# Stream Ingestion Metrics
# =============================================================================

STREAM_MESSAGES = Counter(
    "autopricer_stream_messages_total",
    "Total messages received from the listing stream",
    registry=REGISTRY,
)

STREAM_EVENTS_ACCEPTED = Counter(
    "autopricer_stream_events_accepted_total",
    "Listing events accepted",
    ["event"],  # listing-update, listing-delete
    registry=REGISTRY,
)

STREAM_EVENTS_DROPPED = Counter(
    "autopricer_stream_events_dropped_total",
    "Listing events dropped by validation",
    ["reason"],
    registry=REGISTRY,
)

STREAM_RECONNECTS = Counter(
    "autopricer_stream_reconnects_total",
    "Total listing stream reconnections",
    registry=REGISTRY,
)

STREAM_CONNECTED = Gauge(
    "autopricer_stream_connected",
    "Listing stream connection status (1=connected, 0=disconnected)",
    registry=REGISTRY,
)

LISTINGS_FLUSHED = Counter(
    "autopricer_listings_flushed_total",
    "Listings written by the batched writer",
    registry=REGISTRY,
)


# =============================================================================
# Pricing Metrics
# =============================================================================

PRICING_OUTCOMES = Counter(
    "autopricer_pricing_outcomes_total",
    "Per-item pricing outcomes",
    ["stage", "status"],  # status: emitted, failed, discarded
    registry=REGISTRY,
)

PRICING_PASS_DURATION = Histogram(
    "autopricer_pricing_pass_seconds",
    "Duration of a full pricing pass",
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1200],
    registry=REGISTRY,
)

STALE_LISTINGS_DELETED = Counter(
    "autopricer_stale_listings_deleted_total",
    "Listings evicted by the retention policy",
    registry=REGISTRY,
)

KEY_PIVOT_RATE = Gauge(
    "autopricer_key_pivot_rate_metal",
    "Current metal value of one key",
    registry=REGISTRY,
)

SCHEDULED_TASK_RUNS = Counter(
    "autopricer_scheduled_task_runs_total",
    "Scheduled task executions",
    ["task", "status"],
    registry=REGISTRY,
)


# =============================================================================
# Database Metrics
# =============================================================================

DB_WRITES_TOTAL = Counter(
    "autopricer_db_writes_total",
    "Total database write operations",
    ["table", "status"],  # status: success, error
    registry=REGISTRY,
)

DB_WRITE_LATENCY = Histogram(
    "autopricer_db_write_latency_seconds",
    "Database write latency in seconds",
    ["table"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
    registry=REGISTRY,
)


# =============================================================================
# Service Info Metrics
# =============================================================================

SERVICE_INFO = Gauge(
    "autopricer_service_info",
    "Service information",
    ["version", "environment"],
    registry=REGISTRY,
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_stream_drop(reason: str) -> None:
    STREAM_EVENTS_DROPPED.labels(reason=reason).inc()


def record_stream_accept(event: str) -> None:
    STREAM_EVENTS_ACCEPTED.labels(event=event).inc()


def set_stream_connected(connected: bool) -> None:
    STREAM_CONNECTED.set(1 if connected else 0)


def record_pricing_outcome(stage: str, status: str) -> None:
    """Record the terminal stage and status of one item's pipeline run."""
    PRICING_OUTCOMES.labels(stage=stage, status=status).inc()


def record_task_run(task: str, success: bool) -> None:
    SCHEDULED_TASK_RUNS.labels(task=task, status="success" if success else "error").inc()


def record_db_write(table: str, success: bool, latency_seconds: float) -> None:
    """Record database write metrics."""
    status = "success" if success else "error"
    DB_WRITES_TOTAL.labels(table=table, status=status).inc()
    if success:
        DB_WRITE_LATENCY.labels(table=table).observe(latency_seconds)


def set_service_info(version: str, environment: str) -> None:
    """Set service info gauge."""
    SERVICE_INFO.labels(version=version, environment=environment).set(1)

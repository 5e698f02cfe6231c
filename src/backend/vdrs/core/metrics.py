"""Prometheus metrics instrumentation for VDRS."""

from prometheus_client import Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator, metrics

# Ingestion counters
records_ingested_total = Counter(
    "vdrs_records_ingested_total",
    "Records written by ingestion, by outcome",
    ["table", "outcome"],
)

records_rejected_total = Counter(
    "vdrs_records_rejected_total",
    "Records rejected by ingestion, by error code",
    ["table", "code"],
)

# Ingestion batch histogram
ingest_batch_duration = Histogram(
    "vdrs_ingest_batch_seconds",
    "Time spent ingesting one batch",
    ["table"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Query histogram
query_duration = Histogram(
    "vdrs_query_seconds",
    "Time spent serving store queries",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# Chunk gauge
chunks_by_state = Gauge(
    "vdrs_chunks",
    "Number of chunks per table and state",
    ["table", "state"],
)

# Maintenance histogram and counter
maintenance_pass_duration = Histogram(
    "vdrs_maintenance_pass_seconds",
    "Duration of background maintenance passes",
    ["task"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0],
)

maintenance_failures_total = Counter(
    "vdrs_maintenance_failures_total",
    "Background maintenance passes that raised",
    ["task"],
)

# Database connectivity gauge
db_connected = Gauge(
    "vdrs_db_connected",
    "Whether the application can reach the control database (1=connected, 0=disconnected)",
)


def setup_metrics(app) -> Instrumentator:
    """Set up Prometheus metrics instrumentation for FastAPI app."""
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/health", "/health/live", "/health/ready", "/metrics"],
        env_var_name="METRICS_ENABLED",
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    )

    # Add default metrics
    instrumentator.add(
        metrics.default(
            metric_namespace="",
            metric_subsystem="",
            latency_highr_buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )
    )

    # Add request size metric (ingestion payloads)
    instrumentator.add(
        metrics.request_size(
            metric_namespace="",
            metric_subsystem="",
            should_include_handler=True,
            should_include_method=True,
            should_include_status=True,
        )
    )

    instrumentator.instrument(app)

    return instrumentator


def expose_metrics(app, instrumentator: Instrumentator) -> None:
    """Expose the /metrics endpoint."""
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)


# Helper functions for updating custom metrics


def record_ingestion(table: str, inserted: int, updated: int, rejected_codes: list[str], duration: float) -> None:
    """Record the outcome of one ingestion batch."""
    if inserted:
        records_ingested_total.labels(table=table, outcome="inserted").inc(inserted)
    if updated:
        records_ingested_total.labels(table=table, outcome="updated").inc(updated)
    for code in rejected_codes:
        records_rejected_total.labels(table=table, code=code).inc()
    ingest_batch_duration.labels(table=table).observe(duration)


def observe_query(operation: str, duration: float) -> None:
    """Record store query duration."""
    query_duration.labels(operation=operation).observe(duration)


def set_chunk_counts(table: str, counts: dict[str, int]) -> None:
    """Set chunk counts per state for one table."""
    for state, count in counts.items():
        chunks_by_state.labels(table=table, state=state).set(count)


def observe_maintenance(task: str, duration: float, failed: bool = False) -> None:
    """Record a maintenance pass."""
    maintenance_pass_duration.labels(task=task).observe(duration)
    if failed:
        maintenance_failures_total.labels(task=task).inc()


def set_db_connected(connected: bool) -> None:
    """Set control database connection status."""
    db_connected.set(1 if connected else 0)

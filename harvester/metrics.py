"""Prometheus metrics for the harvesting pipeline."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("harvester", "Harvester application info")
app_info.info({"version": "0.1.0", "name": "harvester"})

# Stage jobs
stage_jobs_total = Counter(
    "harvester_stage_jobs_total",
    "Jobs processed per pipeline stage",
    ["stage", "status"],
)

stage_job_duration_seconds = Histogram(
    "harvester_stage_job_duration_seconds",
    "Time spent processing one job",
    ["stage"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

jobs_enqueued_total = Counter(
    "harvester_jobs_enqueued_total",
    "Jobs enqueued per queue",
    ["queue", "status"],  # status: added, duplicate
)

# Fetcher
fetch_bytes_total = Counter(
    "harvester_fetch_bytes_total",
    "Bytes of content retrieved",
    ["source_kind"],
)

fetch_pages_total = Counter(
    "harvester_fetch_pages_total",
    "Pages retrieved",
    ["source_kind"],
)

fetch_cap_reached_total = Counter(
    "harvester_fetch_cap_reached_total",
    "Fetches stopped early by a capacity cap",
    ["cap"],
)

feeds_unchanged_total = Counter(
    "harvester_feeds_unchanged_total",
    "Fetches short-circuited by an unchanged content fingerprint",
)

# Extractor
extracted_items_total = Counter(
    "harvester_extracted_items_total",
    "Raw items produced by extractors",
)

# Normalizer
normalized_items_total = Counter(
    "harvester_normalized_items_total",
    "Raw items processed by the normalizer",
    ["outcome"],  # normalized, skipped
)

# Writer
writer_prices_written_total = Counter(
    "writer_prices_written_total",
    "Price rows inserted by the writer",
    ["source_kind"],
)

writer_price_variance_exceeded_total = Counter(
    "writer_price_variance_exceeded_total",
    "Price changes whose variance exceeded the alert threshold",
    ["source_kind", "variance_bucket", "action"],
)

writer_price_delta_pct = Histogram(
    "writer_price_delta_pct",
    "Absolute price change percent per written price",
    ["source_kind"],
    buckets=[10, 25, 50, 100, 200, 500],
)

writer_item_failures_total = Counter(
    "harvester_writer_item_failures_total",
    "Items that failed in the per-item fallback path",
)

# Alerter
alerts_evaluated_total = Counter(
    "harvester_alerts_evaluated_total",
    "Alert rules evaluated",
    ["rule_type", "result"],  # triggered, not_triggered, cooldown, claimed
)

alerts_sent_total = Counter(
    "harvester_alerts_sent_total",
    "Alerts dispatched or scheduled",
    ["rule_type", "tier", "mode"],  # mode: immediate, delayed
)

alerts_suppressed_total = Counter(
    "harvester_alerts_suppressed_total",
    "Alerts suppressed before dispatch",
    ["reason"],
)

rate_limit_decisions_total = Counter(
    "harvester_rate_limit_decisions_total",
    "Per-user alert rate limit decisions",
    ["decision"],  # allowed, limited_6h, limited_24h, error
)

email_dispatch_total = Counter(
    "harvester_email_dispatch_total",
    "Email dispatch attempts",
    ["status"],
)

# Scheduler
scheduler_runs_total = Counter(
    "harvester_scheduler_runs_total",
    "Scheduler ticks",
    ["status"],
)

scheduler_last_run_timestamp = Gauge(
    "harvester_scheduler_last_run_timestamp",
    "Timestamp of the last scheduler tick",
)


def record_stage_job(stage: str, status: str, duration: float | None = None):
    """Record one processed job."""
    stage_jobs_total.labels(stage=stage, status=status).inc()
    if duration is not None:
        stage_job_duration_seconds.labels(stage=stage).observe(duration)


def record_enqueue(queue: str, added: bool):
    """Record an enqueue attempt."""
    jobs_enqueued_total.labels(queue=queue, status="added" if added else "duplicate").inc()


def record_fetch(source_kind: str, pages: int, content_bytes: int):
    """Record a completed fetch."""
    fetch_pages_total.labels(source_kind=source_kind).inc(pages)
    fetch_bytes_total.labels(source_kind=source_kind).inc(content_bytes)


def record_price_written(source_kind: str):
    """Record one inserted price row."""
    writer_prices_written_total.labels(source_kind=source_kind).inc()


def record_price_variance(
    source_kind: str,
    variance_pct: float,
    bucket: str,
    action: str,
    exceeded: bool,
):
    """Record variance for one price change."""
    writer_price_delta_pct.labels(source_kind=source_kind).observe(variance_pct)
    if exceeded:
        writer_price_variance_exceeded_total.labels(
            source_kind=source_kind,
            variance_bucket=bucket,
            action=action,
        ).inc()


def record_scheduler_run(status: str, timestamp: float):
    """Record a scheduler tick."""
    scheduler_runs_total.labels(status=status).inc()
    scheduler_last_run_timestamp.set(timestamp)

from __future__ import annotations

from prometheus_client import Counter, Histogram

# Keep label cardinality low: kinds and statuses only, never source ids.
SYNC_JOBS_TOTAL = Counter(
    "knowledge_ingestion_sync_jobs_total",
    "Finished sync jobs",
    ["connector", "status", "error_kind"],
)

SYNC_JOB_DURATION_SECONDS = Histogram(
    "knowledge_ingestion_sync_job_duration_seconds",
    "Sync job wall-clock duration in seconds",
    ["connector"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600),
)

ITEMS_UPSERTED_TOTAL = Counter(
    "knowledge_ingestion_items_upserted_total",
    "Records reconciled into the item store",
    ["connector", "outcome"],
)

CONNECTOR_RETRIES_TOTAL = Counter(
    "knowledge_ingestion_connector_retries_total",
    "Connector pulls restarted after a retryable error",
    ["connector", "error_kind"],
)

SCHEDULER_TICKS_TOTAL = Counter(
    "knowledge_ingestion_scheduler_ticks_total",
    "Scheduler ticks",
    ["outcome"],
)

JOBS_REAPED_TOTAL = Counter(
    "knowledge_ingestion_jobs_reaped_total",
    "Stuck jobs forced to failed after exceeding the maximum duration",
    [],
)

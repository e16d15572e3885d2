"""Prometheus metrics for the scrape engine."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("pricewatch", "Pricewatch scrape engine info")
app_info.info({"version": "0.1.0", "name": "pricewatch"})

# Fetch metrics
scrapes_total = Counter(
    "pricewatch_scrapes_total",
    "Total number of scrape attempts",
    ["marketplace", "status"],
)

scrape_errors_total = Counter(
    "pricewatch_scrape_errors_total",
    "Total number of failed scrape attempts",
    ["marketplace", "error_type"],
)

scrape_duration_seconds = Histogram(
    "pricewatch_scrape_duration_seconds",
    "Time spent on one scrape attempt",
    ["marketplace", "path"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

render_api_fallbacks_total = Counter(
    "pricewatch_render_api_fallbacks_total",
    "Render API attempts that fell back to the browser path",
    ["marketplace"],
)

# Queue metrics
queue_depth = Gauge(
    "pricewatch_queue_depth",
    "Jobs waiting in the scrape queue",
    ["state"],
)

queue_jobs_total = Counter(
    "pricewatch_queue_jobs_total",
    "Jobs finished by the scrape queue",
    ["marketplace", "result"],
)

queue_retries_total = Counter(
    "pricewatch_queue_retries_total",
    "Jobs re-enqueued after a failed attempt",
    ["marketplace"],
)

# Alert metrics
alerts_triggered_total = Counter(
    "pricewatch_alerts_triggered_total",
    "Alert rules fired",
    ["kind"],
)

alert_evaluation_errors_total = Counter(
    "pricewatch_alert_evaluation_errors_total",
    "Alert rules that failed to evaluate",
)

notifications_total = Counter(
    "pricewatch_notifications_total",
    "Completion notifications published",
    ["status"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "pricewatch_scheduler_runs_total",
    "Total number of scheduler ticks",
    ["status"],
)

scheduler_last_run_timestamp = Gauge(
    "pricewatch_scheduler_last_run_timestamp",
    "Timestamp of last scheduler tick",
)

scheduler_jobs_enqueued_total = Counter(
    "pricewatch_scheduler_jobs_enqueued_total",
    "Jobs enqueued by the scheduler",
)

refetch_interval_changes_total = Counter(
    "pricewatch_refetch_interval_changes_total",
    "Refetch interval adjustments persisted",
)

# Page pool metrics
page_pool_leased = Gauge(
    "pricewatch_page_pool_leased",
    "Browser pages currently leased to workers",
)

proxy_rotations_total = Counter(
    "pricewatch_proxy_rotations_total",
    "Proxy rotations triggered by failure streaks",
)


def record_scrape_success(marketplace: str, path: str, duration: float):
    """Record a successful scrape attempt."""
    scrapes_total.labels(marketplace=marketplace, status="success").inc()
    scrape_duration_seconds.labels(marketplace=marketplace, path=path).observe(duration)


def record_scrape_error(marketplace: str, error_type: str, path: str, duration: float):
    """Record a failed scrape attempt."""
    scrapes_total.labels(marketplace=marketplace, status="error").inc()
    scrape_errors_total.labels(marketplace=marketplace, error_type=error_type).inc()
    scrape_duration_seconds.labels(marketplace=marketplace, path=path).observe(duration)


def record_job_finished(marketplace: str, success: bool):
    """Record a job leaving the queue for good."""
    result = "success" if success else "failed"
    queue_jobs_total.labels(marketplace=marketplace, result=result).inc()


def record_alert_triggered(kind: str):
    """Record an alert rule firing."""
    alerts_triggered_total.labels(kind=kind).inc()


def record_notification(success: bool):
    """Record a completion notification publish."""
    status = "success" if success else "error"
    notifications_total.labels(status=status).inc()


def record_scheduler_run(success: bool, enqueued: int = 0):
    """Record a scheduler tick."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(status=status).inc()
    scheduler_last_run_timestamp.set(time.time())
    if enqueued:
        scheduler_jobs_enqueued_total.inc(enqueued)


def update_queue_depth(waiting: int, delayed: int, active: int):
    """Update queue depth gauges."""
    queue_depth.labels(state="waiting").set(waiting)
    queue_depth.labels(state="delayed").set(delayed)
    queue_depth.labels(state="active").set(active)

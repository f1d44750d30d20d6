"""
Prometheus metrics collection for medallion-etl

Counts records per layer, batch outcomes and key resolution activity,
in a private registry so embedding applications are not polluted.
"""
import os
from pathlib import Path

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

REGISTRY = CollectorRegistry()


# =======================
# LAYER METRICS
# =======================

records_processed_total = Counter(
    name="medallion_records_processed_total",
    documentation="Records processed per layer transition",
    labelnames=["domain", "layer", "status"],  # status: written, rejected, duplicate
    registry=REGISTRY,
)

batches_total = Counter(
    name="medallion_batches_total",
    documentation="Batch lifecycle transitions",
    labelnames=["status"],  # in_progress, completed, failed, retried
    registry=REGISTRY,
)

load_duration_seconds = Histogram(
    name="medallion_load_duration_seconds",
    documentation="Time spent loading one batch end to end",
    labelnames=["domain"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
    registry=REGISTRY,
)

batches_in_progress = Gauge(
    name="medallion_batches_in_progress",
    documentation="Loader runs currently executing in this process",
    registry=REGISTRY,
)

# =======================
# KEY RESOLUTION METRICS
# =======================

key_resolutions_total = Counter(
    name="medallion_key_resolutions_total",
    documentation="Surrogate key resolutions by outcome",
    labelnames=["dimension", "outcome"],  # existing, new, versioned, updated
    registry=REGISTRY,
)

key_conflicts_total = Counter(
    name="medallion_key_conflicts_total",
    documentation="Concurrent check-and-set conflicts detected during resolution",
    labelnames=["dimension"],
    registry=REGISTRY,
)

key_lock_wait_seconds = Histogram(
    name="medallion_key_lock_wait_seconds",
    documentation="Time spent waiting for a per-key resolution lock",
    labelnames=["dimension"],
    buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=REGISTRY,
)

integrity_errors_total = Counter(
    name="medallion_integrity_errors_total",
    documentation="Fact rows excluded for unresolved dimension references",
    labelnames=["dimension"],
    registry=REGISTRY,
)


def increment_counter(counter: Counter, value: float = 1, **labels) -> None:
    """Increment a counter, skipping zero increments."""
    if value <= 0:
        return
    if labels:
        counter.labels(**labels).inc(value)
    else:
        counter.inc(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    """Observe a value in a histogram metric."""
    histogram.labels(**labels).observe(value)


def record_batch_load(domain: str, counts: dict[str, int], duration_seconds: float) -> None:
    """
    Record the outcome of one completed loader run.

    Args:
        domain: Star schema domain
        counts: LoadReport counts
        duration_seconds: Run duration in seconds
    """
    increment_counter(records_processed_total, counts.get("normalized", 0), domain=domain, layer="silver", status="written")
    increment_counter(records_processed_total, counts.get("deduplicated_out", 0), domain=domain, layer="silver", status="duplicate")
    increment_counter(records_processed_total, counts.get("written", 0), domain=domain, layer="gold", status="written")
    increment_counter(records_processed_total, counts.get("failed", 0), domain=domain, layer="gold", status="rejected")
    observe_histogram(load_duration_seconds, duration_seconds, domain=domain)


def generate_metrics() -> bytes:
    """Render the registry in the Prometheus text format."""
    return generate_latest(REGISTRY)


def write_metrics_file(path: str | Path) -> None:
    """
    Write the registry for the node_exporter textfile collector.

    The file is replaced atomically so the collector never reads a partial one.
    """
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(generate_metrics())
    tmp.replace(path)


def start_metrics_server(port: int | None = None) -> None:
    """
    Expose the registry over HTTP.

    Args:
        port: Port to listen on (defaults to METRICS_PORT or 9108)
    """
    port = port or int(os.getenv("METRICS_PORT", "9108"))
    start_http_server(port, registry=REGISTRY)

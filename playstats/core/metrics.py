from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_LATENCY = Histogram(
    "http_request_latency_seconds",
    "HTTP request latency",
    ["path"],
)

DB_RETRY_COUNT = Counter(
    "db_retry_total",
    "Database retry attempts",
    ["operation"],
)

DB_CIRCUIT_OPEN = Counter(
    "db_circuit_open_total",
    "Database circuit breaker open events",
)

ERROR_COUNT = Counter(
    "error_total",
    "Structured error responses",
    ["code", "classification"],
)

TIMESCALE_CONVERGE_COUNT = Counter(
    "timescale_converge_total",
    "TimescaleDB convergence runs",
    ["outcome"],
)

TIMESCALE_CONVERGE_DURATION = Histogram(
    "timescale_converge_duration_seconds",
    "TimescaleDB convergence duration",
)

TIMESCALE_REBUILD_COUNT = Counter(
    "timescale_rebuild_total",
    "Continuous aggregate rebuilds",
    ["outcome"],
)

TIMESCALE_REBUILD_DURATION = Histogram(
    "timescale_rebuild_duration_seconds",
    "Continuous aggregate rebuild duration",
)

TIMESCALE_REFRESH_FAILURES = Counter(
    "timescale_refresh_failure_total",
    "Continuous aggregate manual refresh failures",
    ["aggregate"],
)

TIMESCALE_CHUNK_COUNT = Gauge(
    "timescale_chunk_count",
    "Chunks in the sessions hypertable at the last status probe",
)

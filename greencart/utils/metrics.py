from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


HTTP_REQUESTS_TOTAL = Counter(
    "greencart_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "greencart_http_request_duration_seconds",
    "HTTP request duration (seconds)",
    ["method", "path"],
)


SIMULATION_RUNS_TOTAL = Counter(
    "greencart_simulation_runs_total",
    "Simulation run lifecycle transitions",
    ["status"],
)

SIMULATION_MESSAGES_TOTAL = Counter(
    "greencart_simulation_messages_total",
    "Messages published to simulation channels",
    ["kind"],
)

SIMULATION_SUBSCRIBER_DROPS_TOTAL = Counter(
    "greencart_simulation_subscriber_drops_total",
    "Messages dropped because a subscriber queue was full",
    ["kind"],
)

SIMULATION_PERSISTENCE_FAILURES_TOTAL = Counter(
    "greencart_simulation_persistence_failures_total",
    "Run record store failures",
    ["op"],
)

SIMULATION_FINALIZE_DURATION_SECONDS = Histogram(
    "greencart_simulation_finalize_duration_seconds",
    "Time spent finalizing a simulation run (seconds)",
    ["status"],
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST

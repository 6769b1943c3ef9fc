from __future__ import annotations

import threading

from prometheus_client import Counter, Histogram, start_http_server

oracle_calls = Counter(
    "testsmith_oracle_calls_total", "Oracle requests", ["provider", "outcome"]
)
tool_calls = Counter(
    "testsmith_tool_calls_total", "Tool executions", ["tool", "outcome"]
)
validation_attempts = Counter(
    "testsmith_validation_attempts_total", "Scenario validation attempts", ["outcome"]
)
scenarios_validated = Counter(
    "testsmith_scenarios_validated_total", "Scenarios that passed validation"
)
scenarios_failed = Counter(
    "testsmith_scenarios_failed_total", "Scenarios that exhausted their attempts"
)
attempts_per_scenario = Histogram(
    "testsmith_attempts_per_scenario",
    "Validation attempts spent per scenario",
    buckets=(1, 2, 3, 4, 5, 8, 13),
)
oracle_latency_seconds = Histogram(
    "testsmith_oracle_latency_seconds", "Oracle request latency", ["provider"]
)

_METRICS_SERVER_STARTED = False
_METRICS_LOCK = threading.Lock()


def ensure_metrics_server(port: int) -> None:
    """Start the Prometheus metrics HTTP server once per process."""
    global _METRICS_SERVER_STARTED

    if _METRICS_SERVER_STARTED:
        return

    with _METRICS_LOCK:
        if _METRICS_SERVER_STARTED:
            return
        try:
            start_http_server(port)
        except OSError:
            # Port already bound by another process; keep recording in-process.
            pass
        _METRICS_SERVER_STARTED = True

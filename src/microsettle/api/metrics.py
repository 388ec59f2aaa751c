"""Prometheus metrics shared by the facilitator routers."""

from __future__ import annotations

import time

from prometheus_client import Counter, Histogram

facilitator_requests_total = Counter(
    "facilitator_requests_total",
    "Total facilitator requests processed",
    ["endpoint", "status"],
)

facilitator_request_duration_seconds = Histogram(
    "facilitator_request_duration_seconds",
    "Wall time to process a facilitator request",
    ["endpoint", "status"],
)

settlement_outcomes_total = Counter(
    "facilitator_settlement_outcomes_total",
    "Settlement attempts by kind and outcome",
    ["kind", "outcome"],
)


def status_label(status_code: int) -> str:
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    if status_code == 202:
        return "pending"
    return "success"


def observe(endpoint: str, status_code: int, start_time: float) -> None:
    label = status_label(status_code)
    facilitator_requests_total.labels(endpoint=endpoint, status=label).inc()
    elapsed = time.perf_counter() - start_time
    facilitator_request_duration_seconds.labels(endpoint=endpoint, status=label).observe(
        elapsed
    )

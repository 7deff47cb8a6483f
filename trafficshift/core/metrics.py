"""Prometheus metrics definitions."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

ROUTE_COUNT = Counter(
    "route_total",
    "Requests routed through an alias",
    labelnames=["alias", "version"],
)

ALIAS_WEIGHT = Gauge(
    "alias_weight",
    "Current traffic fraction per alias and version",
    labelnames=["alias", "version"],
)

# Shift lifecycle
SHIFT_TRANSITIONS = Counter(
    "shift_transition_total",
    "Shift state machine transitions",
    labelnames=["alias", "status"],
)

ACTIVE_SHIFTS = Gauge(
    "active_shifts",
    "Number of shifts that have not reached a terminal state",
)

SHIFT_DURATION = Histogram(
    "shift_duration_seconds",
    "Wall-clock duration of shifts from start to terminal state",
    labelnames=["alias", "status"],
    buckets=(1, 10, 60, 300, 900, 1800, 3600, 7200),
)

HOOK_DURATION = Histogram(
    "hook_duration_seconds",
    "Duration of pre/post traffic hook invocations",
    labelnames=["phase"],
)

HOOK_RESULTS = Counter(
    "hook_result_total",
    "Hook outcomes",
    labelnames=["phase", "outcome"],
)

HEALTH_EVALUATIONS = Counter(
    "health_evaluation_total",
    "Health signal evaluations",
    labelnames=["signal", "state"],
)

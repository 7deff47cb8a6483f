"""Health signal definitions.

A signal is an alarm over one metric, in the shape CloudWatch alarms use::

    HealthSignal(
        name="lambda-errors",
        metric="error_rate",
        threshold=0.01,
        comparison_op="gt",       # breach when error_rate > 1 %
        window_seconds=300,
        statistic="avg",
    )

``comparison_op`` describes the *breaching* condition.  The long CloudWatch
names (``GreaterThanThreshold`` ...) are accepted as aliases.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from typing import Any, Callable

import numpy as np

from trafficshift.core.errors import ValidationError

_COMPARISONS: dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}

_COMPARISON_ALIASES: dict[str, str] = {
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
    "GreaterThanThreshold": "gt",
    "GreaterThanOrEqualToThreshold": "gte",
    "LessThanThreshold": "lt",
    "LessThanOrEqualToThreshold": "lte",
}

_STATISTICS: dict[str, Callable[[np.ndarray], float]] = {
    "avg": lambda v: float(np.mean(v)),
    "max": lambda v: float(np.max(v)),
    "min": lambda v: float(np.min(v)),
    "sum": lambda v: float(np.sum(v)),
    "p50": lambda v: float(np.percentile(v, 50)),
    "p90": lambda v: float(np.percentile(v, 90)),
    "p95": lambda v: float(np.percentile(v, 95)),
    "p99": lambda v: float(np.percentile(v, 99)),
}


class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


@dataclass(frozen=True)
class DataPoint:
    timestamp: float  # unix seconds
    value: float


@dataclass(frozen=True)
class HealthSignal:
    name: str
    metric: str
    threshold: float
    comparison_op: str = "gt"
    window_seconds: float = 300.0
    statistic: str = "avg"

    def __post_init__(self) -> None:
        op = _COMPARISON_ALIASES.get(self.comparison_op, self.comparison_op)
        if op not in _COMPARISONS:
            raise ValidationError(
                f"signal '{self.name}': unknown comparison_op '{self.comparison_op}'"
            )
        object.__setattr__(self, "comparison_op", op)
        if self.statistic not in _STATISTICS:
            raise ValidationError(
                f"signal '{self.name}': unknown statistic '{self.statistic}'"
            )
        if self.window_seconds <= 0:
            raise ValidationError(f"signal '{self.name}': window_seconds must be > 0")

    def metric_for(self, labels: dict[str, str] | None = None) -> str:
        """Resolve placeholders such as ``{version}`` in the metric name."""
        if not labels or "{" not in self.metric:
            return self.metric
        try:
            return self.metric.format_map(_KeepMissing(labels))
        except (ValueError, IndexError):
            # PromQL selectors such as {job="api"} are not placeholders
            return self.metric

    def aggregate(self, values: list[float]) -> float:
        return _STATISTICS[self.statistic](np.asarray(values, dtype=float))

    def is_breached(self, observed: float) -> bool:
        return _COMPARISONS[self.comparison_op](observed, self.threshold)

    def describe(self) -> str:
        return f"{self.statistic}({self.metric}) {self.comparison_op} {self.threshold}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "metric": self.metric,
            "threshold": self.threshold,
            "comparison_op": self.comparison_op,
            "window_seconds": self.window_seconds,
            "statistic": self.statistic,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthSignal":
        return cls(
            name=data["name"],
            metric=data["metric"],
            threshold=float(data["threshold"]),
            comparison_op=data.get("comparison_op", "gt"),
            window_seconds=float(data.get("window_seconds", 300.0)),
            statistic=data.get("statistic", "avg"),
        )

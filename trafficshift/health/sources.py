"""Metric source adapters consumed by the health monitor."""

from __future__ import annotations

import collections
import threading
import time
from typing import Callable, Protocol

import httpx

from trafficshift.core.errors import ExternalCollaboratorError
from trafficshift.core.logging import get_logger
from trafficshift.health.signals import DataPoint

logger = get_logger(__name__)


class MetricSource(Protocol):
    def sample(self, metric_name: str, window_seconds: float) -> list[DataPoint]:
        """Return data points for *metric_name* over the trailing window."""
        ...


class InMemoryMetricSource:
    """Thread-safe in-process time series, one bounded deque per metric."""

    def __init__(
        self,
        max_points: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_points = max_points
        self._clock = clock
        self._lock = threading.Lock()
        self._series: dict[str, collections.deque[DataPoint]] = {}

    def record(self, metric_name: str, value: float, timestamp: float | None = None) -> None:
        point = DataPoint(
            timestamp=self._clock() if timestamp is None else timestamp,
            value=float(value),
        )
        with self._lock:
            series = self._series.get(metric_name)
            if series is None:
                series = self._series[metric_name] = collections.deque(
                    maxlen=self._max_points
                )
            series.append(point)

    def sample(self, metric_name: str, window_seconds: float) -> list[DataPoint]:
        cutoff = self._clock() - window_seconds
        with self._lock:
            series = self._series.get(metric_name, ())
            return [p for p in series if p.timestamp >= cutoff]

    def clear(self) -> None:
        with self._lock:
            self._series.clear()


class PrometheusMetricSource:
    """Reads a PromQL expression per metric name via ``/api/v1/query_range``.

    *queries* maps a signal's metric name to a PromQL expression; metric
    names without an entry are sent verbatim.
    """

    def __init__(
        self,
        base_url: str,
        queries: dict[str, str] | None = None,
        step_seconds: float = 15.0,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._queries = queries or {}
        self._step = step_seconds
        self._clock = clock
        self._client = client or httpx.Client(timeout=timeout)

    def sample(self, metric_name: str, window_seconds: float) -> list[DataPoint]:
        end = self._clock()
        params = {
            "query": self._queries.get(metric_name, metric_name),
            "start": end - window_seconds,
            "end": end,
            "step": self._step,
        }
        try:
            resp = self._client.get(f"{self._base_url}/api/v1/query_range", params=params)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalCollaboratorError(
                f"prometheus query for '{metric_name}' failed: {exc}"
            ) from exc

        if body.get("status") != "success":
            raise ExternalCollaboratorError(
                f"prometheus query for '{metric_name}' returned {body.get('error')!r}"
            )

        points: list[DataPoint] = []
        for series in body.get("data", {}).get("result", []):
            for ts, raw in series.get("values", []):
                try:
                    points.append(DataPoint(timestamp=float(ts), value=float(raw)))
                except (TypeError, ValueError):
                    logger.warning(
                        "prometheus_bad_sample", metric=metric_name, value=raw
                    )
        return points

    def close(self) -> None:
        self._client.close()

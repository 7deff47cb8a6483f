"""Tests for health signals, metric sources and the monitor."""

from __future__ import annotations

import time

import httpx
import pytest

from trafficshift.core.errors import ExternalCollaboratorError, ValidationError
from trafficshift.health.monitor import HealthMonitor, NoDataPolicy, VerdictState
from trafficshift.health.signals import HealthSignal
from trafficshift.health.sources import InMemoryMetricSource, PrometheusMetricSource


# -------------------------------------------------------------------
# HealthSignal (no DB needed)
# -------------------------------------------------------------------

class TestHealthSignal:
    def test_comparisons(self):
        assert HealthSignal("s", "m", 1.0, "gt").is_breached(1.5)
        assert not HealthSignal("s", "m", 1.0, "gt").is_breached(1.0)
        assert HealthSignal("s", "m", 1.0, "gte").is_breached(1.0)
        assert HealthSignal("s", "m", 0.9, "lt").is_breached(0.5)
        assert HealthSignal("s", "m", 0.9, "lte").is_breached(0.9)

    def test_cloudwatch_names_normalised(self):
        sig = HealthSignal("s", "m", 1.0, "GreaterThanOrEqualToThreshold")
        assert sig.comparison_op == "gte"
        assert HealthSignal("s", "m", 1.0, "<").comparison_op == "lt"

    def test_invalid_definitions(self):
        with pytest.raises(ValidationError):
            HealthSignal("s", "m", 1.0, "between")
        with pytest.raises(ValidationError):
            HealthSignal("s", "m", 1.0, statistic="median")
        with pytest.raises(ValidationError):
            HealthSignal("s", "m", 1.0, window_seconds=0)

    @pytest.mark.parametrize(
        "statistic,expected",
        [("avg", 5.5), ("max", 10.0), ("min", 1.0), ("sum", 55.0), ("p50", 5.5)],
    )
    def test_statistics(self, statistic, expected):
        sig = HealthSignal("s", "m", 0.0, statistic=statistic)
        assert sig.aggregate([float(v) for v in range(1, 11)]) == pytest.approx(expected)

    def test_p99_tracks_tail(self):
        sig = HealthSignal("s", "m", 0.0, statistic="p99")
        values = [1.0] * 99 + [500.0]
        assert sig.aggregate(values) > 1.0

    def test_metric_placeholders(self):
        sig = HealthSignal("s", "errors.{alias}.{version}", 0.0)
        assert sig.metric_for({"alias": "live", "version": "abc"}) == "errors.live.abc"
        # Unknown placeholders are left untouched
        assert sig.metric_for({"alias": "live"}) == "errors.live.{version}"
        assert HealthSignal("s", "plain", 0.0).metric_for({"alias": "x"}) == "plain"

    def test_dict_round_trip(self):
        sig = HealthSignal("errors", "error_rate", 0.01, "gt", 120.0, "p95")
        assert HealthSignal.from_dict(sig.to_dict()) == sig


# -------------------------------------------------------------------
# HealthMonitor
# -------------------------------------------------------------------

@pytest.fixture()
def source() -> InMemoryMetricSource:
    return InMemoryMetricSource()


def test_ok_verdict(source):
    for v in (0.001, 0.002, 0.003):
        source.record("error_rate", v)
    monitor = HealthMonitor(source, no_data_policy="fail_open")
    verdict = monitor.evaluate(HealthSignal("errors", "error_rate", 0.01))
    assert verdict.state is VerdictState.OK
    assert verdict.observed == pytest.approx(0.002)
    assert not verdict.no_data


def test_breach_verdict(source):
    for v in (0.05, 0.07):
        source.record("error_rate", v)
    monitor = HealthMonitor(source, no_data_policy="fail_open")
    verdict = monitor.evaluate(HealthSignal("errors", "error_rate", 0.01))
    assert verdict.breached
    assert verdict.signal == "errors"
    assert "error_rate" in verdict.reason


def test_window_excludes_old_points(source):
    source.record("latency", 900.0, timestamp=time.time() - 3600)
    source.record("latency", 10.0)
    monitor = HealthMonitor(source, no_data_policy="fail_closed")
    verdict = monitor.evaluate(HealthSignal("lat", "latency", 100.0, window_seconds=60))
    assert verdict.state is VerdictState.OK
    assert verdict.observed == 10.0


def test_window_override(source):
    source.record("latency", 900.0, timestamp=time.time() - 120)
    monitor = HealthMonitor(source, no_data_policy="fail_open")
    sig = HealthSignal("lat", "latency", 100.0, window_seconds=60)
    assert not monitor.evaluate(sig).breached
    assert monitor.evaluate(sig, window_seconds=300).breached


def test_no_data_fail_open(source):
    monitor = HealthMonitor(source, no_data_policy=NoDataPolicy.FAIL_OPEN)
    verdict = monitor.evaluate(HealthSignal("errors", "error_rate", 0.01))
    assert verdict.state is VerdictState.OK
    assert verdict.no_data
    assert verdict.observed is None


def test_no_data_fail_closed(source):
    monitor = HealthMonitor(source, no_data_policy="fail_closed")
    verdict = monitor.evaluate(HealthSignal("errors", "error_rate", 0.01))
    assert verdict.breached
    assert verdict.no_data
    assert "fail_closed" in verdict.reason


def test_default_policy_from_settings(source, monkeypatch):
    monkeypatch.setenv("HEALTH_NO_DATA_POLICY", "fail_closed")
    assert HealthMonitor(source).no_data_policy is NoDataPolicy.FAIL_CLOSED


def test_unknown_policy(source):
    with pytest.raises(ValidationError):
        HealthMonitor(source, no_data_policy="maybe")


class _BrokenSource:
    def sample(self, metric_name, window_seconds):
        raise ExternalCollaboratorError("connection refused")


@pytest.mark.parametrize(
    "policy,state",
    [("fail_open", VerdictState.OK), ("fail_closed", VerdictState.BREACH)],
)
def test_source_errors_follow_policy(policy, state):
    monitor = HealthMonitor(_BrokenSource(), no_data_policy=policy)
    verdict = monitor.evaluate(HealthSignal("errors", "error_rate", 0.01))
    assert verdict.state is state
    assert "connection refused" in verdict.reason


def test_labels_select_version_metric(source):
    source.record("errors.v2", 0.5)
    source.record("errors.v1", 0.0)
    monitor = HealthMonitor(source, no_data_policy="fail_open")
    sig = HealthSignal("errors", "errors.{version}", 0.1)
    assert monitor.evaluate(sig, labels={"version": "v2"}).breached
    assert not monitor.evaluate(sig, labels={"version": "v1"}).breached


def test_evaluate_all_returns_first_breach(source):
    source.record("error_rate", 0.0)
    source.record("latency", 500.0)
    monitor = HealthMonitor(source, no_data_policy="fail_open")
    signals = [
        HealthSignal("errors", "error_rate", 0.01),
        HealthSignal("latency", "latency", 250.0),
    ]
    verdict = monitor.evaluate_all(signals)
    assert verdict is not None and verdict.signal == "latency"

    source.clear()
    assert monitor.evaluate_all(signals) is None


def test_in_memory_source_is_bounded():
    src = InMemoryMetricSource(max_points=3)
    for v in range(10):
        src.record("m", float(v))
    assert [p.value for p in src.sample("m", 60)] == [7.0, 8.0, 9.0]


# -------------------------------------------------------------------
# PrometheusMetricSource
# -------------------------------------------------------------------

def _prometheus(handler) -> PrometheusMetricSource:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return PrometheusMetricSource(
        "http://prom:9090/",
        queries={"error_rate": 'sum(rate(http_errors_total[1m]))'},
        client=client,
        clock=lambda: 1_000.0,
    )


def test_prometheus_query_range():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["query"] = request.url.params["query"]
        seen["start"] = float(request.url.params["start"])
        return httpx.Response(
            200,
            json={
                "status": "success",
                "data": {
                    "resultType": "matrix",
                    "result": [{"metric": {}, "values": [[940, "0.1"], [970, "0.3"]]}],
                },
            },
        )

    points = _prometheus(handler).sample("error_rate", 60)
    assert seen["path"] == "/api/v1/query_range"
    assert seen["query"] == "sum(rate(http_errors_total[1m]))"
    assert seen["start"] == 940.0
    assert [(p.timestamp, p.value) for p in points] == [(940.0, 0.1), (970.0, 0.3)]


def test_prometheus_skips_unparseable_values():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "status": "success",
                "data": {"result": [{"values": [[1, "NaN-ish"], [2, "1.5"]]}]},
            },
        )

    assert [p.value for p in _prometheus(handler).sample("other", 60)] == [1.5]


def test_prometheus_error_status():
    def handler(request):
        return httpx.Response(200, json={"status": "error", "error": "bad query"})

    with pytest.raises(ExternalCollaboratorError, match="bad query"):
        _prometheus(handler).sample("error_rate", 60)


def test_prometheus_http_failure():
    def handler(request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(ExternalCollaboratorError):
        _prometheus(handler).sample("error_rate", 60)

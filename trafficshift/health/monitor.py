"""Health monitor: turns metric samples into ok/breach verdicts.

Missing data is governed by ``NoDataPolicy``.  ``FAIL_OPEN`` (the default)
treats a monitoring gap as healthy; ``FAIL_CLOSED`` treats it as a breach.
Errors from the metric source count as missing data and follow the same
policy.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Any, Callable

from trafficshift.core.config import get_settings
from trafficshift.core.errors import ExternalCollaboratorError, ValidationError
from trafficshift.core.logging import get_logger
from trafficshift.core.metrics import HEALTH_EVALUATIONS
from trafficshift.health.signals import HealthSignal
from trafficshift.health.sources import MetricSource

logger = get_logger(__name__)


class VerdictState(str, enum.Enum):
    OK = "ok"
    BREACH = "breach"


class NoDataPolicy(str, enum.Enum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"

    @classmethod
    def parse(cls, value: "str | NoDataPolicy") -> "NoDataPolicy":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"unknown no-data policy '{value}'") from None


@dataclass(frozen=True)
class HealthVerdict:
    state: VerdictState
    signal: str
    observed: float | None
    reason: str
    no_data: bool = False

    @property
    def breached(self) -> bool:
        return self.state is VerdictState.BREACH

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "signal": self.signal,
            "observed": self.observed,
            "reason": self.reason,
            "no_data": self.no_data,
        }


class HealthMonitor:
    def __init__(
        self,
        source: MetricSource,
        no_data_policy: "str | NoDataPolicy | None" = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._policy = NoDataPolicy.parse(
            no_data_policy or get_settings().health_no_data_policy
        )
        self._clock = clock

    @property
    def no_data_policy(self) -> NoDataPolicy:
        return self._policy

    def evaluate(
        self,
        signal: HealthSignal,
        window_seconds: float | None = None,
        labels: dict[str, str] | None = None,
    ) -> HealthVerdict:
        """Evaluate *signal* over the trailing window.  Never raises.

        *labels* fill placeholders in the metric name, e.g. ``{version}``.
        """
        window = window_seconds or signal.window_seconds
        metric = signal.metric_for(labels)
        try:
            points = self._source.sample(metric, window)
        except ExternalCollaboratorError as exc:
            return self._no_data(signal, f"metric source error: {exc}")
        except Exception as exc:
            logger.exception("metric_source_failed", signal=signal.name)
            return self._no_data(signal, f"metric source error: {exc!r}")

        # Sources may return late or out-of-window points; keep the window only
        cutoff = self._clock() - window
        values = [p.value for p in points if p.timestamp >= cutoff]
        if not values:
            return self._no_data(signal, f"no samples for '{metric}' in {window:g}s")

        observed = signal.aggregate(values)
        if signal.is_breached(observed):
            verdict = HealthVerdict(
                state=VerdictState.BREACH,
                signal=signal.name,
                observed=observed,
                reason=f"{signal.describe()} (observed {observed:.6g})",
            )
            logger.warning(
                "health_breach",
                signal=signal.name,
                metric=metric,
                observed=observed,
                threshold=signal.threshold,
            )
        else:
            verdict = HealthVerdict(
                state=VerdictState.OK,
                signal=signal.name,
                observed=observed,
                reason=f"{metric}={observed:.6g} within threshold",
            )
        HEALTH_EVALUATIONS.labels(signal=signal.name, state=verdict.state.value).inc()
        return verdict

    def evaluate_all(
        self,
        signals: list[HealthSignal],
        labels: dict[str, str] | None = None,
    ) -> HealthVerdict | None:
        """Return the first breaching verdict among *signals*, else ``None``."""
        for signal in signals:
            verdict = self.evaluate(signal, labels=labels)
            if verdict.breached:
                return verdict
        return None

    def _no_data(self, signal: HealthSignal, detail: str) -> HealthVerdict:
        state = (
            VerdictState.OK
            if self._policy is NoDataPolicy.FAIL_OPEN
            else VerdictState.BREACH
        )
        logger.info(
            "health_no_data",
            signal=signal.name,
            policy=self._policy.value,
            detail=detail,
        )
        HEALTH_EVALUATIONS.labels(signal=signal.name, state="no_data").inc()
        return HealthVerdict(
            state=state,
            signal=signal.name,
            observed=None,
            reason=f"{detail} ({self._policy.value})",
            no_data=True,
        )

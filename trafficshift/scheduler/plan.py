"""Shift plans and the preset rollout shapes.

Preset names follow the SAM ``DeploymentPreference`` types::

    AllAtOnce
    Canary10Percent5Minutes       -> [(0.10, 300s), (1.0, 0s)]
    Linear10PercentEvery1Minute   -> [(0.10, 60s), (0.20, 60s), ..., (1.0, 0s)]

Any ``Canary<P>Percent<M>Minute(s)`` or ``Linear<P>PercentEvery<M>Minute(s)``
is accepted, not only the ones AWS ships.
"""

from __future__ import annotations

import math
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from trafficshift.core.errors import EmptyPlanError, ValidationError
from trafficshift.health.signals import HealthSignal

_CANARY_RE = re.compile(r"^Canary(\d+)Percent(\d+)Minutes?$")
_LINEAR_RE = re.compile(r"^Linear(\d+)PercentEvery(\d+)Minutes?$")


@dataclass(frozen=True)
class ShiftStep:
    fraction: float
    hold_seconds: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"fraction": self.fraction, "hold_seconds": self.hold_seconds}


@dataclass(frozen=True)
class PlanHooks:
    pre: str | None = None
    post: str | None = None


def _coerce_steps(steps: Iterable[Any]) -> tuple[ShiftStep, ...]:
    out: list[ShiftStep] = []
    for step in steps:
        if isinstance(step, ShiftStep):
            out.append(step)
        elif isinstance(step, dict):
            out.append(ShiftStep(float(step["fraction"]), float(step.get("hold_seconds", 0.0))))
        else:
            fraction, hold = step
            out.append(ShiftStep(float(fraction), float(hold)))
    return tuple(out)


@dataclass(frozen=True)
class ShiftPlan:
    """Immutable description of one traffic shift.

    Runtime progress (status, current step) lives on ``ShiftRun``.
    """

    alias: str
    from_version: str
    to_version: str
    steps: Sequence[Any]
    alarms: Sequence[HealthSignal] = ()
    hooks: PlanHooks = field(default_factory=PlanHooks)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", _coerce_steps(self.steps))
        object.__setattr__(self, "alarms", tuple(self.alarms))

        if not self.steps:
            raise EmptyPlanError("a shift plan needs at least one step")
        if not self.alias:
            raise ValidationError("alias is required")
        if self.from_version == self.to_version:
            raise ValidationError("from_version and to_version must differ")

        previous = 0.0
        for idx, step in enumerate(self.steps):
            if not math.isfinite(step.fraction) or not 0.0 <= step.fraction <= 1.0:
                raise ValidationError(
                    f"step {idx}: fraction {step.fraction} is outside [0, 1]"
                )
            if not math.isfinite(step.hold_seconds) or step.hold_seconds < 0:
                raise ValidationError(f"step {idx}: hold_seconds must be >= 0")
            if step.fraction < previous:
                raise ValidationError(
                    f"step {idx}: fraction {step.fraction} is lower than the "
                    f"previous step ({previous})"
                )
            previous = step.fraction

        names = [a.name for a in self.alarms]
        if len(names) != len(set(names)):
            raise ValidationError("alarm names must be unique within a plan")

    @property
    def total_hold_seconds(self) -> float:
        return sum(s.hold_seconds for s in self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "alias": self.alias,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "steps": [s.to_dict() for s in self.steps],
            "alarms": [a.to_dict() for a in self.alarms],
            "hooks": {"pre": self.hooks.pre, "post": self.hooks.post},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ShiftPlan":
        hooks = data.get("hooks") or {}
        kwargs: dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(
            alias=data["alias"],
            from_version=data["from_version"],
            to_version=data["to_version"],
            steps=data["steps"],
            alarms=[HealthSignal.from_dict(a) for a in data.get("alarms", [])],
            hooks=PlanHooks(pre=hooks.get("pre"), post=hooks.get("post")),
            **kwargs,
        )


# -------------------------------------------------------------------
# Step builders
# -------------------------------------------------------------------

def all_at_once() -> list[ShiftStep]:
    return [ShiftStep(1.0, 0.0)]


def canary(percent: float, interval_minutes: float) -> list[ShiftStep]:
    """Send *percent* of traffic for *interval_minutes*, then the rest."""
    if not 0 < percent < 100:
        raise ValidationError("canary percent must be between 0 and 100 exclusive")
    return [
        ShiftStep(percent / 100.0, interval_minutes * 60.0),
        ShiftStep(1.0, 0.0),
    ]


def linear(percent: float, every_minutes: float) -> list[ShiftStep]:
    """Add *percent* of traffic every *every_minutes* until 100 %."""
    if not 0 < percent <= 100:
        raise ValidationError("linear percent must be in (0, 100]")
    steps: list[ShiftStep] = []
    increments = math.ceil(100.0 / percent)
    for k in range(1, increments):
        steps.append(ShiftStep(round(k * percent / 100.0, 10), every_minutes * 60.0))
    steps.append(ShiftStep(1.0, 0.0))
    return steps


def steps_from_preset(name: str) -> list[ShiftStep]:
    """Expand a SAM-style deployment preference name into steps."""
    if name == "AllAtOnce":
        return all_at_once()
    m = _CANARY_RE.match(name)
    if m:
        return canary(float(m.group(1)), float(m.group(2)))
    m = _LINEAR_RE.match(name)
    if m:
        return linear(float(m.group(1)), float(m.group(2)))
    raise ValidationError(f"unknown deployment preset '{name}'")


PRESETS = (
    "AllAtOnce",
    "Canary10Percent5Minutes",
    "Canary10Percent10Minutes",
    "Canary10Percent15Minutes",
    "Canary10Percent30Minutes",
    "Linear10PercentEvery1Minute",
    "Linear10PercentEvery2Minutes",
    "Linear10PercentEvery3Minutes",
    "Linear10PercentEvery10Minutes",
)

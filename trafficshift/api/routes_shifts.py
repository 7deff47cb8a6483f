"""Shift control endpoints: start, inspect, abort."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, model_validator

from trafficshift.api.deps import get_controller
from trafficshift.health.signals import HealthSignal
from trafficshift.scheduler.controller import ShiftController
from trafficshift.scheduler.plan import PlanHooks, ShiftPlan, steps_from_preset

router = APIRouter(prefix="/shifts", tags=["shifts"])


# -------------------------------------------------------------------
# Request / Response schemas
# -------------------------------------------------------------------

class StepModel(BaseModel):
    fraction: float
    hold_seconds: float = 0.0


class AlarmModel(BaseModel):
    name: str
    metric: str
    threshold: float
    comparison_op: str = "gt"
    window_seconds: float = 300.0
    statistic: str = "avg"


class HooksModel(BaseModel):
    pre: Optional[str] = None
    post: Optional[str] = None


class StartShiftRequest(BaseModel):
    """Either ``steps`` or a SAM-style ``preset`` name must be given."""

    id: Optional[str] = None
    alias: str
    from_version: str
    to_version: str
    steps: Optional[list[StepModel]] = None
    preset: Optional[str] = None
    alarms: list[AlarmModel] = []
    hooks: HooksModel = HooksModel()

    @model_validator(mode="after")
    def _steps_or_preset(self) -> "StartShiftRequest":
        if self.steps is not None and self.preset is not None:
            raise ValueError("give either steps or preset, not both")
        if self.steps is None and self.preset is None:
            raise ValueError("one of steps or preset is required")
        return self

    def to_plan(self) -> ShiftPlan:
        if self.preset is not None:
            steps: list[Any] = steps_from_preset(self.preset)
        else:
            steps = [(s.fraction, s.hold_seconds) for s in self.steps or []]
        kwargs: dict[str, Any] = {"id": self.id} if self.id else {}
        return ShiftPlan(
            alias=self.alias,
            from_version=self.from_version,
            to_version=self.to_version,
            steps=steps,
            alarms=[HealthSignal(**a.model_dump()) for a in self.alarms],
            hooks=PlanHooks(pre=self.hooks.pre, post=self.hooks.post),
            **kwargs,
        )


class ShiftResponse(BaseModel):
    id: str
    alias: str
    from_version: str
    to_version: str
    status: str
    reason: Optional[str] = None
    current_step: int
    steps: list[StepModel]
    alarms: list[AlarmModel]
    hooks: HooksModel


# -------------------------------------------------------------------
# Endpoints
# -------------------------------------------------------------------

@router.post("", response_model=ShiftResponse, status_code=202)
def start_shift(
    req: StartShiftRequest,
    controller: ShiftController = Depends(get_controller),
) -> ShiftResponse:
    """Accept a plan and start shifting in the background.

    Resubmitting a plan id that already ran returns its current state.
    """
    plan = req.to_plan()
    return ShiftResponse(**controller.start_shift(plan))


@router.get("", response_model=list[ShiftResponse])
def list_shifts(
    alias: Optional[str] = Query(None, description="Filter by alias"),
    limit: int = Query(50, ge=1, le=500),
    controller: ShiftController = Depends(get_controller),
) -> list[ShiftResponse]:
    return [ShiftResponse(**s) for s in controller.list_shifts(alias=alias, limit=limit)]


@router.get("/{plan_id}", response_model=ShiftResponse)
def get_shift(
    plan_id: str,
    controller: ShiftController = Depends(get_controller),
) -> ShiftResponse:
    return ShiftResponse(**controller.get_shift(plan_id))


@router.post("/{plan_id}/abort", response_model=ShiftResponse)
def abort_shift(
    plan_id: str,
    controller: ShiftController = Depends(get_controller),
) -> ShiftResponse:
    """Abort a running shift; it rolls back at the next poll tick."""
    return ShiftResponse(**controller.abort_shift(plan_id))


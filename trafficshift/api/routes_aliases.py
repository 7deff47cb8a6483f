"""Alias state, operator overrides and routing endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from trafficshift.api.deps import get_controller
from trafficshift.scheduler.controller import AliasState, ShiftController

router = APIRouter(prefix="/aliases", tags=["aliases"])


# -------------------------------------------------------------------
# Request / Response schemas
# -------------------------------------------------------------------

class AliasStateResponse(BaseModel):
    name: str
    weights: dict[str, float]
    active_plan: Optional[dict[str, Any]] = None

    @classmethod
    def from_state(cls, state: AliasState) -> "AliasStateResponse":
        return cls(**state.to_dict())


class SetWeightsRequest(BaseModel):
    weights: dict[str, float]


class CommitRequest(BaseModel):
    version_id: str


class RouteResponse(BaseModel):
    alias: str
    version_id: str


class ReferencedVersion(BaseModel):
    id: str
    artifact_ref: str


# -------------------------------------------------------------------
# Endpoints
# -------------------------------------------------------------------

@router.get("", response_model=list[AliasStateResponse])
def list_aliases(
    controller: ShiftController = Depends(get_controller),
) -> list[AliasStateResponse]:
    return [AliasStateResponse.from_state(s) for s in controller.list_aliases()]


@router.get("/{name}", response_model=AliasStateResponse)
def get_alias(
    name: str,
    controller: ShiftController = Depends(get_controller),
) -> AliasStateResponse:
    """Read-only snapshot: weights plus the active plan, if any."""
    return AliasStateResponse.from_state(controller.get_alias_state(name))


@router.put("/{name}/weights", response_model=AliasStateResponse)
def set_weights(
    name: str,
    req: SetWeightsRequest,
    controller: ShiftController = Depends(get_controller),
) -> AliasStateResponse:
    """Operator override of the traffic split (409 while a shift runs)."""
    return AliasStateResponse.from_state(controller.set_weights(name, req.weights))


@router.post("/{name}/commit", response_model=AliasStateResponse)
def commit(
    name: str,
    req: CommitRequest,
    controller: ShiftController = Depends(get_controller),
) -> AliasStateResponse:
    """Route 100 % of the alias to one version, creating the alias if needed."""
    return AliasStateResponse.from_state(controller.commit(name, req.version_id))


@router.get("/{name}/route", response_model=RouteResponse)
def route(
    name: str,
    fingerprint: Optional[str] = Query(None, description="Sticky routing key"),
    controller: ShiftController = Depends(get_controller),
) -> RouteResponse:
    return RouteResponse(alias=name, version_id=controller.route(name, fingerprint))


@router.get("/{name}/versions", response_model=list[ReferencedVersion])
def referenced_versions(
    name: str,
    controller: ShiftController = Depends(get_controller),
) -> list[ReferencedVersion]:
    """Versions the alias routes to or is shifting between."""
    return [
        ReferencedVersion(id=v.id, artifact_ref=v.artifact_ref)
        for v in controller.registry.list_referenced(name)
    ]

"""Version registry endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from trafficshift.api.deps import get_controller
from trafficshift.registry.manager import Version
from trafficshift.scheduler.controller import ShiftController

router = APIRouter(prefix="/versions", tags=["versions"])


# -------------------------------------------------------------------
# Request / Response schemas
# -------------------------------------------------------------------

class RegisterVersionRequest(BaseModel):
    artifact_ref: str
    description: Optional[str] = None
    tags: Optional[dict[str, Any]] = None


class VersionResponse(BaseModel):
    id: str
    artifact_ref: str
    description: Optional[str] = None
    tags: dict[str, Any]
    created_at: str

    @classmethod
    def from_version(cls, v: Version) -> "VersionResponse":
        return cls(
            id=v.id,
            artifact_ref=v.artifact_ref,
            description=v.description,
            tags=v.tags,
            created_at=str(v.created_at),
        )


# -------------------------------------------------------------------
# Endpoints
# -------------------------------------------------------------------

@router.post("", response_model=VersionResponse, status_code=201)
def register_version(
    req: RegisterVersionRequest,
    controller: ShiftController = Depends(get_controller),
) -> VersionResponse:
    """Register an immutable version for an artifact."""
    version = controller.register_version(
        req.artifact_ref, description=req.description, tags=req.tags
    )
    return VersionResponse.from_version(version)


@router.get("", response_model=list[VersionResponse])
def list_versions(
    controller: ShiftController = Depends(get_controller),
) -> list[VersionResponse]:
    return [VersionResponse.from_version(v) for v in controller.list_versions()]


@router.get("/{version_id}", response_model=VersionResponse)
def get_version(
    version_id: str,
    controller: ShiftController = Depends(get_controller),
) -> VersionResponse:
    return VersionResponse.from_version(controller.get_version(version_id))


@router.delete("/{version_id}")
def prune_version(
    version_id: str,
    controller: ShiftController = Depends(get_controller),
) -> Response:
    """Delete a version no alias or in-flight shift references."""
    controller.prune_version(version_id)
    return Response(status_code=204)

"""Liveness and Prometheus scrape endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from trafficshift.api.deps import get_controller
from trafficshift.core.config import get_settings
from trafficshift.scheduler.controller import ShiftController

router = APIRouter()


@router.get("/health")
def health(controller: ShiftController = Depends(get_controller)) -> dict:
    """Liveness probe plus the shifts this process is driving."""
    active = controller.active_shifts()
    return {
        "status": "ok",
        "version": get_settings().app_version,
        "active_shifts": len(active),
        "active_aliases": sorted(active),
    }


@router.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

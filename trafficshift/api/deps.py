"""Request dependencies."""

from __future__ import annotations

from fastapi import Request

from trafficshift.scheduler.controller import ShiftController


def get_controller(request: Request) -> ShiftController:
    return request.app.state.controller

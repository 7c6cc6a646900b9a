"""System routes: health, status, devices."""
from __future__ import annotations

import time
from collections import Counter
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from netplane import __version__
from netplane.api.deps import get_controller, get_recovery, get_settings
from netplane.config import Settings
from netplane.connections.controller import ConnectionController
from netplane.recovery.engine import RecoveryEngine

router = APIRouter(prefix="/system", tags=["system"])


# ---------- Response models ----------


class HealthResponse(BaseModel):
    version: str
    name: str
    uptime_seconds: float
    backend_available: bool


class StatusResponse(BaseModel):
    backend_available: bool
    connection_count: int
    connections_by_state: dict[str, int]
    active_operations: int
    active_errors: int
    active_profile_id: Optional[str] = None
    active_profile_name: Optional[str] = None


class DeviceResponse(BaseModel):
    name: str
    kind: str
    state: str
    hw_address: Optional[str] = None
    carrier: Optional[bool] = None


class DeviceListResponse(BaseModel):
    items: list[DeviceResponse]


# ---------- Routes ----------


@router.get("/health", response_model=HealthResponse)
async def health(
    request: Request,
    settings: Settings = Depends(get_settings),
    controller: ConnectionController = Depends(get_controller),
):
    start_time = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        version=__version__,
        name=settings.daemon.name,
        uptime_seconds=round(time.time() - start_time, 1),
        backend_available=controller.available,
    )


@router.get("/status", response_model=StatusResponse)
async def status(
    controller: ConnectionController = Depends(get_controller),
    recovery: RecoveryEngine = Depends(get_recovery),
):
    records = controller.list_available()
    active = controller.evaluator.active_profile
    return StatusResponse(
        backend_available=controller.available,
        connection_count=len(records),
        connections_by_state=dict(Counter(r.state.value for r in records)),
        active_operations=len(controller.get_active_operations()),
        active_errors=len(recovery.get_active_errors()),
        active_profile_id=active.id if active else None,
        active_profile_name=active.name if active else None,
    )


@router.get("/devices", response_model=DeviceListResponse)
async def devices(controller: ConnectionController = Depends(get_controller)):
    return DeviceListResponse(
        items=[DeviceResponse(**d.to_dict()) for d in await controller.list_devices()]
    )

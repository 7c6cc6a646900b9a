"""Connection routes: list, get, add, forget, connect, disconnect, reconfigure."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, Response, status
from pydantic import BaseModel, Field

from netplane.api.deps import get_controller
from netplane.connections.controller import ConnectionController
from netplane.connections.models import (
    ConnectionKind,
    ConnectionRecord,
    Credentials,
    Operation,
    SecurityLevel,
)

router = APIRouter(prefix="/connections", tags=["connections"])


# ---------- Request/Response models ----------


class ConnectionResponse(BaseModel):
    id: str
    name: str
    kind: ConnectionKind
    state: str
    last_connected: Optional[str] = None
    security: SecurityLevel
    config: dict[str, Any]
    device: Optional[str] = None


class ConnectionListResponse(BaseModel):
    items: list[ConnectionResponse]


class OperationResponse(BaseModel):
    id: str
    record_id: str
    kind: str
    progress: float
    status: str
    cancellable: bool
    started_at: str
    finished: bool
    success: Optional[bool] = None
    error: Optional[str] = None
    error_category: Optional[str] = None


class AddConnectionRequest(BaseModel):
    kind: ConnectionKind
    name: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)
    security: SecurityLevel = SecurityLevel.UNKNOWN
    id: Optional[str] = None


class ConnectRequest(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class RefreshResponse(BaseModel):
    count: int


def connection_response(record: ConnectionRecord) -> ConnectionResponse:
    return ConnectionResponse(**record.to_dict())


def operation_response(op: Operation) -> OperationResponse:
    return OperationResponse(**op.to_dict())


# ---------- Routes ----------


@router.get("", response_model=ConnectionListResponse)
async def list_connections(
    kind: Optional[ConnectionKind] = Query(None),
    controller: ConnectionController = Depends(get_controller),
):
    """Known endpoints across all kinds, optionally filtered by kind."""
    return ConnectionListResponse(
        items=[connection_response(r) for r in controller.list_available(kind)]
    )


@router.post("", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
async def add_connection(
    body: AddConnectionRequest,
    controller: ConnectionController = Depends(get_controller),
):
    record = await controller.add_connection(
        body.kind, body.name, config=body.config, security=body.security, record_id=body.id
    )
    return connection_response(record)


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_connections(controller: ConnectionController = Depends(get_controller)):
    """Re-enumerate endpoints from the backend."""
    return RefreshResponse(count=await controller.refresh())


@router.get("/{record_id}", response_model=ConnectionResponse)
async def get_connection(
    record_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    return connection_response(controller.get_connection(record_id))


@router.delete("/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
async def forget_connection(
    record_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    await controller.forget_connection(record_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{record_id}/connect",
    response_model=OperationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def connect(
    record_id: str,
    body: Optional[ConnectRequest] = None,
    controller: ConnectionController = Depends(get_controller),
):
    """Start connecting. The returned operation reports progress over /ws/events."""
    credentials = None
    if body is not None and (body.username or body.password):
        credentials = Credentials(username=body.username, password=body.password)
    op = await controller.connect(record_id, credentials)
    return operation_response(op)


@router.post(
    "/{record_id}/disconnect",
    response_model=OperationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def disconnect(
    record_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    op = await controller.disconnect(record_id)
    return operation_response(op)


@router.post(
    "/{record_id}/reconfigure",
    response_model=OperationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reconfigure(
    record_id: str,
    settings: dict[str, Any] = Body(...),
    controller: ConnectionController = Depends(get_controller),
):
    op = await controller.reconfigure(record_id, settings)
    return operation_response(op)

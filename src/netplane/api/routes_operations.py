"""Operation routes: list in-flight operations, inspect, cancel."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from netplane.api.deps import get_controller
from netplane.api.routes_connections import OperationResponse, operation_response
from netplane.connections.controller import ConnectionController
from netplane.exceptions import OperationNotFound

router = APIRouter(prefix="/operations", tags=["operations"])


class OperationListResponse(BaseModel):
    items: list[OperationResponse]


class CancelResponse(BaseModel):
    operation_id: str
    cancelled: bool


@router.get("", response_model=OperationListResponse)
async def list_operations(controller: ConnectionController = Depends(get_controller)):
    return OperationListResponse(
        items=[operation_response(op) for op in controller.get_active_operations()]
    )


@router.get("/{operation_id}", response_model=OperationResponse)
async def get_operation(
    operation_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    op = controller.get_operation(operation_id)
    if op is None:
        raise OperationNotFound(operation_id)
    return operation_response(op.snapshot())


@router.post("/{operation_id}/cancel", response_model=CancelResponse)
async def cancel_operation(
    operation_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    """Cancel an in-flight operation. ``cancelled`` is false if it was not cancellable."""
    if controller.get_operation(operation_id) is None:
        raise OperationNotFound(operation_id)
    cancelled = await controller.cancel_operation(operation_id)
    return CancelResponse(operation_id=operation_id, cancelled=cancelled)

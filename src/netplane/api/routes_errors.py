"""Error routes: active errors, history, statistics, manual resolution."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel

from netplane.api.deps import get_recovery
from netplane.recovery.engine import RecoveryEngine
from netplane.recovery.types import NetworkError

router = APIRouter(prefix="/errors", tags=["errors"])


# ---------- Response models ----------


class ErrorResponse(BaseModel):
    id: str
    category: str
    severity: str
    message: str
    user_message: str
    recovery_action: str
    connection_id: Optional[str] = None
    connection_kind: Optional[str] = None
    details: Optional[str] = None
    timestamp: str
    retry_count: int
    recovery_attempted: bool
    resolved: bool
    user_notified: bool


class ErrorListResponse(BaseModel):
    items: list[ErrorResponse]


class ErrorStatistics(BaseModel):
    total: int
    active: int
    resolved: int
    by_category: dict[str, int]
    by_severity: dict[str, int]


def _error_response(error: NetworkError) -> ErrorResponse:
    return ErrorResponse(**error.to_dict())


# ---------- Routes ----------


@router.get("", response_model=ErrorListResponse)
async def list_active_errors(recovery: RecoveryEngine = Depends(get_recovery)):
    return ErrorListResponse(items=[_error_response(e) for e in recovery.get_active_errors()])


@router.get("/history", response_model=ErrorListResponse)
async def error_history(recovery: RecoveryEngine = Depends(get_recovery)):
    """Recent errors, oldest first, including resolved ones."""
    return ErrorListResponse(items=[_error_response(e) for e in recovery.get_error_history()])


@router.delete("/history", status_code=status.HTTP_204_NO_CONTENT)
async def clear_error_history(recovery: RecoveryEngine = Depends(get_recovery)):
    recovery.clear_history()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/statistics", response_model=ErrorStatistics)
async def error_statistics(recovery: RecoveryEngine = Depends(get_recovery)):
    return ErrorStatistics(**recovery.statistics())


@router.post("/{error_id}/resolve", response_model=ErrorResponse)
async def resolve_error(error_id: str, recovery: RecoveryEngine = Depends(get_recovery)):
    error = recovery.get_active_error(error_id)
    if error is None or not await recovery.resolve(error_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active error {error_id}",
        )
    return _error_response(error)

"""Profile routes: CRUD, duplicate, activate/deactivate, switch history, import/export."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field

from netplane.api.deps import get_controller
from netplane.connections.controller import ConnectionController
from netplane.profiles.models import Profile

router = APIRouter(prefix="/profiles", tags=["profiles"])

# Secrets never leave the daemon through the listing endpoints
_SECRET_FIELDS: dict[str, Any] = {
    "proxy": {"password"},
    "enterprise_auth": {"private_key"},
}


# ---------- Request/Response models ----------


class ProfileCreateRequest(BaseModel):
    """Profile name plus any other profile field."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)


class ProfileListResponse(BaseModel):
    items: list[dict[str, Any]]
    active_profile_id: Optional[str] = None


class SwitchEventResponse(BaseModel):
    previous_profile_id: Optional[str] = None
    previous_profile_name: Optional[str] = None
    new_profile_id: str
    new_profile_name: str
    reason: str
    timestamp: str


class SwitchHistoryResponse(BaseModel):
    items: list[SwitchEventResponse]


class DeactivateResponse(BaseModel):
    deactivated_profile_id: Optional[str] = None


def profile_response(profile: Profile) -> dict[str, Any]:
    return profile.model_dump(mode="json", exclude=_SECRET_FIELDS)


# ---------- Routes ----------


@router.get("", response_model=ProfileListResponse)
async def list_profiles(controller: ConnectionController = Depends(get_controller)):
    """All profiles, highest priority first."""
    active = controller.evaluator.active_profile
    return ProfileListResponse(
        items=[profile_response(p) for p in controller.list_profiles()],
        active_profile_id=active.id if active else None,
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_profile(
    body: ProfileCreateRequest,
    controller: ConnectionController = Depends(get_controller),
):
    profile = await controller.create_profile(body.name, **(body.model_extra or {}))
    return profile_response(profile)


@router.get("/history", response_model=SwitchHistoryResponse)
async def switch_history(controller: ConnectionController = Depends(get_controller)):
    return SwitchHistoryResponse(
        items=[
            SwitchEventResponse(**event.to_dict())
            for event in controller.evaluator.get_switch_history()
        ]
    )


@router.delete("/history", status_code=status.HTTP_204_NO_CONTENT)
async def clear_switch_history(controller: ConnectionController = Depends(get_controller)):
    controller.evaluator.clear_switch_history()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/deactivate", response_model=DeactivateResponse)
async def deactivate_profile(controller: ConnectionController = Depends(get_controller)):
    profile = await controller.deactivate_profile()
    return DeactivateResponse(deactivated_profile_id=profile.id if profile else None)


@router.post("/import", status_code=status.HTTP_201_CREATED)
async def import_profile(
    request: Request,
    controller: ConnectionController = Depends(get_controller),
):
    """Create a profile from a previously exported JSON document."""
    profile = await controller.profiles.import_profile(await request.body())
    return profile_response(profile)


@router.get("/{profile_id}")
async def get_profile(
    profile_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    return profile_response(controller.get_profile(profile_id))


@router.patch("/{profile_id}")
async def update_profile(
    profile_id: str,
    changes: dict[str, Any] = Body(...),
    controller: ConnectionController = Depends(get_controller),
):
    profile = await controller.update_profile(profile_id, changes)
    return profile_response(profile)


@router.delete("/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_profile(
    profile_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    await controller.delete_profile(profile_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{profile_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_profile(
    profile_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    profile = await controller.duplicate_profile(profile_id)
    return profile_response(profile)


@router.post("/{profile_id}/activate")
async def activate_profile(
    profile_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    profile = await controller.activate_profile(profile_id)
    return profile_response(profile)


@router.get("/{profile_id}/export")
async def export_profile(
    profile_id: str,
    controller: ConnectionController = Depends(get_controller),
):
    return Response(
        content=controller.profiles.export_profile(profile_id),
        media_type="application/json",
    )

"""
Conflict Resolution API
Detect scheduling conflicts across appointments and synced calendars,
and resolve them by strategy or by picking a suggestion
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from calsync.api.dependencies import ServiceContainer, get_actor, get_container
from calsync.exceptions import PermissionDeniedError
from calsync.models.conflicts import ResolutionStrategy
from calsync.services.collaborators import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conflicts", tags=["conflict-resolution"])


class ScanRequest(BaseModel):
    owner_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class ResolveRequest(BaseModel):
    strategy: ResolutionStrategy = ResolutionStrategy.AUTOMATIC


class ChooseRequest(BaseModel):
    action: str = Field(..., description="Action of one of the conflict's suggestions")
    target_id: Optional[str] = None


class DismissRequest(BaseModel):
    reason: Optional[str] = None


def _owner(actor: Actor, owner_id: Optional[str]) -> str:
    owner_id = owner_id or actor.user_id
    if not actor.can_manage(owner_id):
        raise PermissionDeniedError(f"{actor.user_id} cannot manage conflicts of {owner_id}")
    return owner_id


@router.get("")
async def list_conflicts(
    owner_id: Optional[str] = None,
    include_closed: bool = False,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """List conflicts, most severe first"""
    conflicts = await services.conflicts.list(_owner(actor, owner_id), include_closed)
    return {
        "success": True,
        "conflicts": [c.to_dict() for c in conflicts],
        "total": len(conflicts),
    }


@router.post("/scan")
async def scan_conflicts(
    request: ScanRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """
    Detect conflicts over the owner's merged schedule

    Only conflicts not already open are returned.
    """
    owner_id = _owner(actor, request.owner_id)
    recorded = await services.conflicts.scan(owner_id, request.start, request.end)
    return {"success": True, "conflicts": [c.to_dict() for c in recorded], "new": len(recorded)}


@router.get("/{conflict_id}")
async def get_conflict(
    conflict_id: str,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    conflict = await services.conflicts.get(actor, conflict_id)
    return {"success": True, "conflict": conflict.to_dict()}


@router.post("/{conflict_id}/resolve")
async def resolve_conflict(
    conflict_id: str,
    request: ResolveRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """
    Resolve a conflict with a strategy

    - **user_choice**: Attach suggestions and wait for /choose
    - **priority_based**: Higher priority keeps its time
    - **time_based**: Earlier start keeps its time
    - **automatic**: Learned preference, then best alternative, then priority
    """
    conflict = await services.conflicts.resolve(actor, conflict_id, request.strategy)
    return {"success": True, "conflict": conflict.to_dict()}


@router.post("/{conflict_id}/choose")
async def choose_resolution(
    conflict_id: str,
    request: ChooseRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    conflict = await services.conflicts.choose(actor, conflict_id, request.action, request.target_id)
    return {"success": True, "conflict": conflict.to_dict()}


@router.post("/{conflict_id}/dismiss")
async def dismiss_conflict(
    conflict_id: str,
    request: Optional[DismissRequest] = None,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    conflict = await services.conflicts.dismiss(actor, conflict_id, request.reason if request else None)
    return {"success": True, "conflict": conflict.to_dict()}

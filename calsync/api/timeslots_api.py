"""
Timeslot API
Availability windows owned by a user, with recurrence and bulk creation
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from calsync import config
from calsync.api.dependencies import ServiceContainer, get_actor, get_container
from calsync.models.scheduling import TimeslotCreate, TimeslotFilters, TimeslotStatus, TimeslotType, TimeslotUpdate
from calsync.services.collaborators import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/timeslots", tags=["timeslots"])


class BulkTimeslotRequest(BaseModel):
    """Request body for bulk creation"""
    timeslots: List[Dict[str, Any]] = Field(..., description=f"Up to {config.BULK_CREATE_LIMIT} timeslot definitions")
    owner_id: Optional[str] = Field(None, description="Owner (admins only; defaults to caller)")


@router.get("")
async def list_timeslots(
    owner_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[List[TimeslotStatus]] = Query(None),
    type: Optional[TimeslotType] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """
    List timeslots, paginated and ordered by date then start time

    - **owner_id**: Defaults to the caller
    - **status**: Repeatable status filter
    """
    filters = TimeslotFilters(
        owner_id=owner_id or actor.user_id,
        start_date=start_date,
        end_date=end_date,
        statuses=status or [],
        type=type,
        page=page,
        limit=limit,
    )
    result = await services.timeslots.list(filters)
    return {
        "success": True,
        "timeslots": [slot.to_dict() for slot in result["items"]],
        "pagination": result["pagination"],
    }


@router.get("/{slot_id}")
async def get_timeslot(
    slot_id: str,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    slot = await services.timeslots.get(slot_id)
    return {"success": True, "timeslot": slot.to_dict()}


@router.post("", status_code=201)
async def create_timeslot(
    request: TimeslotCreate,
    owner_id: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """
    Create a timeslot; a recurrence rule also creates its instances

    Instances that would overlap an existing slot are skipped and counted
    in ``recurring_instances_skipped``.
    """
    result = await services.timeslots.create(actor, request, owner_id=owner_id)
    return {"success": True, **result.to_dict()}


@router.post("/bulk")
async def bulk_create_timeslots(
    request: BulkTimeslotRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """Create many timeslots; per-item errors are reported, not raised"""
    result = await services.timeslots.bulk_create(actor, request.timeslots, owner_id=request.owner_id)
    return {"success": not result["errors"], **result}


@router.patch("/{slot_id}")
async def update_timeslot(
    slot_id: str,
    request: TimeslotUpdate,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    slot = await services.timeslots.update(actor, slot_id, request)
    return {"success": True, "timeslot": slot.to_dict()}


@router.delete("/{slot_id}")
async def delete_timeslot(
    slot_id: str,
    force: bool = Query(False, description="Delete even with active appointments"),
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    await services.timeslots.delete(actor, slot_id, force=force)
    return {"success": True, "deleted": slot_id}

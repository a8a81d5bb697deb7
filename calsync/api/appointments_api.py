"""
Appointments API
Booking against timeslots, cancellation and schedule lookups
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from calsync.api.dependencies import ServiceContainer, get_actor, get_container
from calsync.exceptions import PermissionDeniedError
from calsync.models.scheduling import AppointmentCreate
from calsync.services.collaborators import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Shown to participants")


@router.post("", status_code=201)
async def book_appointment(
    request: AppointmentCreate,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """
    Book a timeslot

    The reservation is atomic: of two callers racing for the last seat
    exactly one succeeds and the other gets 409 ``unavailable``.
    """
    appointment = await services.appointments.book(actor, request)
    return {"success": True, "appointment": appointment.to_dict()}


@router.get("")
async def list_appointments(
    owner_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    include_cancelled: bool = False,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    owner_id = owner_id or actor.user_id
    if not actor.can_manage(owner_id):
        raise PermissionDeniedError(f"{actor.user_id} cannot list appointments of {owner_id}")
    appointments = await services.appointments.list(owner_id, start, end, include_cancelled)
    return {
        "success": True,
        "appointments": [a.to_dict() for a in appointments],
        "total": len(appointments),
    }


@router.get("/{appointment_id}")
async def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    appointment = await services.appointments.get(appointment_id)
    if not (actor.can_manage(appointment.owner_id) or actor.user_id in appointment.participants):
        raise PermissionDeniedError(f"{actor.user_id} cannot view appointment {appointment_id}")
    return {"success": True, "appointment": appointment.to_dict()}


@router.post("/{appointment_id}/cancel")
async def cancel_appointment(
    appointment_id: str,
    request: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """Cancel an appointment and free its seat on the timeslot"""
    reason = request.reason if request else None
    appointment = await services.appointments.cancel(actor, appointment_id, reason)
    return {"success": True, "appointment": appointment.to_dict()}

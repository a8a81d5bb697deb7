"""
Calendar Sync API
Connect external calendars and run sync passes against them
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field

from calsync.api.dependencies import ServiceContainer, get_actor, get_container
from calsync.exceptions import PermissionDeniedError
from calsync.models.scheduling import SyncDirection, UpdatePolicy
from calsync.services.collaborators import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar-sync"])


class ConnectRequest(BaseModel):
    username: str
    password: str = Field(..., description="App-specific password")
    server_url: Optional[str] = Field(None, description="Detected from the username when omitted")
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    policy: UpdatePolicy = UpdatePolicy.NEWEST_WINS


class SyncRequest(BaseModel):
    direction: Optional[SyncDirection] = None
    policy: Optional[UpdatePolicy] = None


class UserSyncRequest(BaseModel):
    async_mode: bool = False  # Run in background if True


def _ensure_self(actor: Actor, user_id: str) -> None:
    if actor.user_id != user_id and not actor.is_admin:
        raise PermissionDeniedError(f"{actor.user_id} cannot manage calendars of {user_id}")


async def _sync_user_task(services: ServiceContainer, user_id: str) -> None:
    """Background task for a full user sync"""
    outcomes = await services.sync.sync_user(user_id)
    failed = [cal for cal, outcome in outcomes.items() if "error" in outcome]
    if failed:
        logger.warning(f"Background sync for user {user_id} failed for calendars: {failed}")
    else:
        logger.info(f"Background sync for user {user_id} completed ({len(outcomes)} calendars)")


@router.post("/connect")
async def connect_calendar(
    request: ConnectRequest,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """
    Connect a CalDAV account and register all its calendars

    The server is detected from the username domain when no URL is given
    (iCloud, Yahoo, Fastmail).
    """
    integrations = await services.sync.connect_account(
        actor.user_id,
        request.username,
        request.password,
        server_url=request.server_url,
        direction=request.direction,
        policy=request.policy,
    )
    return {"success": True, "calendars": [i.to_dict() for i in integrations]}


@router.get("/integrations")
async def list_integrations(
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    integrations = services.sync.integrations_for(actor.user_id)
    return {"success": True, "calendars": [i.to_dict() for i in integrations]}


@router.post("/sync/{provider}/{calendar_id}")
async def sync_calendar(
    provider: str,
    calendar_id: str,
    request: Optional[SyncRequest] = None,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """
    Run one sync pass for a connected calendar

    Returns 409 ``sync_in_progress`` if a pass for the calendar is running.
    """
    request = request or SyncRequest()
    result = await services.sync.sync_calendar(
        actor.user_id, provider, calendar_id, direction=request.direction, policy=request.policy
    )
    return {"success": True, "result": result.to_dict()}


@router.post("/sync/user/{user_id}")
async def sync_user(
    user_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[UserSyncRequest] = None,
    actor: Actor = Depends(get_actor),
    services: ServiceContainer = Depends(get_container),
):
    """Sync every connected calendar of a user"""
    _ensure_self(actor, user_id)
    if request and request.async_mode:
        background_tasks.add_task(_sync_user_task, services, user_id)
        return {"success": True, "message": "Sync started in background"}

    outcomes = await services.sync.sync_user(user_id)
    return {
        "success": all("error" not in o for o in outcomes.values()),
        "calendars": outcomes,
    }


@router.post("/webhook/{user_id}/{provider}/{calendar_id}")
async def calendar_webhook(
    user_id: str,
    provider: str,
    calendar_id: str,
    services: ServiceContainer = Depends(get_container),
):
    """
    Change notification from a provider

    Notifications that arrive while a pass is running are folded into it.
    """
    result = await services.sync.handle_webhook(user_id, provider, calendar_id)
    if result is None:
        return {"success": True, "coalesced": True}
    return {"success": True, "coalesced": False, "result": result.to_dict()}

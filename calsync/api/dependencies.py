"""
FastAPI dependencies: caller identity and the service container.

The container is built once per process from ``calsync.config``; tests
replace it with ``set_container``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from calsync import config
from calsync.exceptions import PermissionDeniedError
from calsync.services.alternative_slots import AlternativeSlotFinder
from calsync.services.appointment_service import AppointmentService
from calsync.services.collaborators import Actor, Collaborators
from calsync.services.conflict_detector import BaseConflictDetector
from calsync.services.conflict_service import ConflictService
from calsync.services.smart_conflicts import EnhancedConflictDetector
from calsync.services.sync_guard import InMemorySyncGuard, RedisSyncLease, SyncGuard
from calsync.services.sync_orchestrator import SyncOrchestrator
from calsync.services.timeslot_service import TimeslotService
from calsync.services.timezone_service import TimezoneService
from calsync.stores.memory import (
    InMemoryAppointmentStore,
    InMemoryConflictStore,
    InMemoryEventMirrorStore,
    InMemorySyncStateStore,
    InMemoryTimeslotStore,
)

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    timezones: TimezoneService
    timeslots: TimeslotService
    appointments: AppointmentService
    conflicts: ConflictService
    sync: SyncOrchestrator
    collaborators: Collaborators


def _build_guard() -> SyncGuard:
    if config.SYNC_GUARD_BACKEND == "redis":
        return RedisSyncLease(config.get_redis_client())
    return InMemorySyncGuard()


def build_container(store_backend: Optional[str] = None) -> ServiceContainer:
    """
    Wire stores and services.

    ``supabase`` persists timeslots, appointments and sync cursors in
    Supabase; mirrors and conflicts stay in process memory.
    """
    backend = (store_backend or config.STORE_BACKEND).lower()
    collaborators = Collaborators()
    timezones = TimezoneService()

    supabase = config.get_supabase_client() if backend == "supabase" else None
    if supabase is not None:
        from calsync.stores.supabase_store import (
            SupabaseAppointmentStore,
            SupabaseSyncStateStore,
            SupabaseTimeslotStore,
        )
        slot_store = SupabaseTimeslotStore(supabase)
        appointment_store = SupabaseAppointmentStore(supabase)
        sync_states = SupabaseSyncStateStore(supabase)
        logger.info("Using Supabase stores")
    else:
        if backend == "supabase":
            logger.warning("Supabase credentials missing; falling back to in-memory stores")
        slot_store = InMemoryTimeslotStore()
        appointment_store = InMemoryAppointmentStore()
        sync_states = InMemorySyncStateStore()

    mirror = InMemoryEventMirrorStore()
    timeslots = TimeslotService(slot_store, appointment_store, timezones, collaborators)
    appointments = AppointmentService(appointment_store, timeslots, collaborators)
    detector = EnhancedConflictDetector(BaseConflictDetector(AlternativeSlotFinder()))
    conflicts = ConflictService(detector, InMemoryConflictStore(), appointments, mirror, collaborators)
    sync = SyncOrchestrator(
        appointments,
        mirror,
        sync_states,
        conflicts=conflicts,
        guard=_build_guard(),
        collaborators=collaborators,
    )
    return ServiceContainer(
        timezones=timezones,
        timeslots=timeslots,
        appointments=appointments,
        conflicts=conflicts,
        sync=sync,
        collaborators=collaborators,
    )


_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    global _container
    if _container is None:
        _container = build_container()
    return _container


def set_container(container: Optional[ServiceContainer]) -> None:
    global _container
    _container = container


async def get_actor(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: str = Header("owner", alias="X-User-Role"),
) -> Actor:
    """Caller identity as forwarded by the identity provider."""
    if not x_user_id:
        raise PermissionDeniedError("Missing X-User-Id header")
    return Actor(user_id=x_user_id, role=x_user_role.lower())

"""
Conflict workflow: build the merged schedule for an owner, run the detector,
persist conflicts and carry out chosen resolutions.

The merged schedule is every active appointment plus every synced remote
event of the owner that is not itself a copy of one of those appointments.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from calsync.exceptions import NotFoundError, PermissionDeniedError
from calsync.models.calendar import CanonicalEvent, EventStatus
from calsync.models.conflicts import Conflict, ConflictState, ResolutionStrategy, ScheduleItem
from calsync.models.scheduling import Appointment, MeetingType
from calsync.services.appointment_service import AppointmentService
from calsync.services.collaborators import Actor, AuditEventType, Collaborators
from calsync.services.conflict_detector import ConflictDetector, choose_suggestion, sort_conflicts
from calsync.stores.base import ConflictStore, EventMirrorStore

logger = logging.getLogger(__name__)

REMOTE_EVENT_PREFIX = "event:"
RESCHEDULE_ACTIONS = {"reschedule_new", "reschedule_existing", "shorten_duration"}


def appointment_item(appointment: Appointment) -> ScheduleItem:
    return ScheduleItem(
        id=appointment.id,
        owner_id=appointment.owner_id,
        start=appointment.start,
        end=appointment.end,
        kind="appointment",
        status=appointment.status.value,
        title=appointment.purpose,
        priority=appointment.priority,
        created_at=appointment.created_at,
        buffer_before=appointment.buffer.before_minutes if appointment.buffer else 0,
        buffer_after=appointment.buffer.after_minutes if appointment.buffer else 0,
        location=appointment.location,
        meeting_type=appointment.meeting_type.value,
        appointment_type=appointment.appointment_type,
        timezone=appointment.timezone,
    )


def event_item(event: CanonicalEvent, owner_id: str) -> ScheduleItem:
    return ScheduleItem(
        id=f"{REMOTE_EVENT_PREFIX}{event.uid}",
        owner_id=owner_id,
        start=event.start,
        end=event.end,
        kind="remote_event",
        status="cancelled" if event.status == EventStatus.CANCELLED else "scheduled",
        title=event.title,
        created_at=event.last_modified or event.start,
        location=event.location,
        timezone=event.timezone,
    )


def _pair_key(conflict: Conflict) -> Tuple[str, str, str]:
    first, second = sorted((conflict.subject.id, conflict.conflicting.id))
    return conflict.type.value, first, second


class ConflictService:
    """Entry point used by the API and the sync orchestrator."""

    def __init__(
        self,
        detector: ConflictDetector,
        store: ConflictStore,
        appointments: AppointmentService,
        mirror: EventMirrorStore,
        collaborators: Optional[Collaborators] = None,
    ):
        self.detector = detector
        self.store = store
        self.appointments = appointments
        self.mirror = mirror
        self.collaborators = collaborators or appointments.collaborators

    async def schedule_for(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ScheduleItem]:
        """Active appointments and synced remote events of one owner."""
        booked = await self.appointments.list(owner_id, start, end)
        items = [appointment_item(a) for a in booked]
        own_uids: Set[str] = {a.external_uid for a in booked if a.external_uid}

        for namespace in await self.mirror.namespaces(f"{owner_id}:"):
            for event in await self.mirror.list(namespace):
                if event.uid in own_uids or event.all_day:
                    continue
                if (start and event.end <= start) or (end and event.start >= end):
                    continue
                items.append(event_item(event, owner_id))
        return items

    async def scan(
        self,
        owner_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Conflict]:
        """
        Detect conflicts over the owner's merged schedule and store the new
        ones. A pair already covered by an open conflict of the same type is
        not reported twice.

        Returns:
            The newly recorded conflicts
        """
        items = await self.schedule_for(owner_id, start, end)
        detected = await self.detector.detect_all(items)

        known = {_pair_key(c) for c in await self.store.list_for_owner(owner_id)}
        recorded = []
        for conflict in detected:
            key = _pair_key(conflict)
            if key in known:
                continue
            known.add(key)
            await self.store.save(conflict)
            recorded.append(conflict)

        if recorded:
            logger.info(f"Recorded {len(recorded)} new conflicts for owner {owner_id}")
            self.collaborators.notify(owner_id, "conflicts.detected",
                                      {"conflicts": [c.id for c in recorded]})
        return recorded

    async def list(self, owner_id: str, include_closed: bool = False) -> List[Conflict]:
        return sort_conflicts(await self.store.list_for_owner(owner_id, include_closed))

    async def get(self, actor: Actor, conflict_id: str) -> Conflict:
        conflict = await self.store.get(conflict_id)
        if conflict is None:
            raise NotFoundError("Conflict", conflict_id)
        if not actor.can_manage(conflict.subject.owner_id):
            raise PermissionDeniedError(f"{actor.user_id} cannot manage conflict {conflict_id}")
        return conflict

    async def resolve(self, actor: Actor, conflict_id: str, strategy: ResolutionStrategy) -> Conflict:
        """
        Run a resolution strategy and apply its outcome to local appointments.

        Raises:
            NotFoundError: Unknown conflict
            PermissionDeniedError: Caller does not manage the owner
            InvalidStateError: Conflict already closed
        """
        conflict = await self.get(actor, conflict_id)
        items = await self.schedule_for(conflict.subject.owner_id)
        conflict = await self.detector.resolve(conflict, strategy, items)
        if conflict.state == ConflictState.RESOLVED:
            await self._apply(conflict)
            self.collaborators.audit_event(AuditEventType.CONFLICT_RESOLVED, actor, conflict.id,
                                           {"strategy": strategy.value, "action": conflict.resolution.get("action")})
        await self.store.save(conflict)
        return conflict

    async def choose(self, actor: Actor, conflict_id: str, action: str, target_id: Optional[str] = None) -> Conflict:
        """Resolve with one of the conflict's suggestions."""
        conflict = await self.get(actor, conflict_id)
        if conflict.state == ConflictState.DETECTED:
            items = await self.schedule_for(conflict.subject.owner_id)
            conflict = await self.detector.resolve(conflict, ResolutionStrategy.USER_CHOICE, items)
        choose_suggestion(conflict, action, target_id)
        self.detector.record_outcome(conflict)
        await self._apply(conflict)
        self.collaborators.audit_event(AuditEventType.CONFLICT_RESOLVED, actor, conflict.id,
                                       {"strategy": ResolutionStrategy.USER_CHOICE.value, "action": action})
        await self.store.save(conflict)
        return conflict

    async def dismiss(self, actor: Actor, conflict_id: str, reason: Optional[str] = None) -> Conflict:
        conflict = await self.get(actor, conflict_id)
        if conflict.state == ConflictState.DETECTED:
            items = await self.schedule_for(conflict.subject.owner_id)
            conflict = await self.detector.resolve(conflict, ResolutionStrategy.USER_CHOICE, items)
        conflict.dismiss(reason)
        await self.store.save(conflict)
        logger.info(f"Dismissed conflict {conflict_id}")
        return conflict

    async def _apply(self, conflict: Conflict) -> None:
        """Carry a resolution over to the local appointment it targets."""
        resolution: Dict[str, object] = conflict.resolution or {}
        action = resolution.get("action")
        target_id = resolution.get("target_id")

        if not target_id or str(target_id).startswith(REMOTE_EVENT_PREFIX):
            # Remote events are changed at the provider, not here
            resolution["applied"] = False
            return

        if action in RESCHEDULE_ACTIONS and resolution.get("proposed_start") and resolution.get("proposed_end"):
            await self.appointments.reschedule(
                str(target_id),
                datetime.fromisoformat(str(resolution["proposed_start"])),
                datetime.fromisoformat(str(resolution["proposed_end"])),
            )
            resolution["applied"] = True
        elif action == "change_to_virtual":
            appointment = await self.appointments.get(str(target_id))
            appointment.meeting_type = MeetingType.VIRTUAL
            await self.appointments.store.update(appointment)
            resolution["applied"] = True
        elif action == "adjust_buffer":
            await self._adjust_buffer(str(target_id), resolution.get("metadata") or {})
            resolution["applied"] = True
        elif action in ("keep_local", "keep_remote") and conflict.enrichment.get("remote"):
            appointment = await self.appointments.get(str(target_id))
            remote = CanonicalEvent.model_validate(conflict.enrichment["remote"])
            if action == "keep_remote":
                await self.appointments.apply_remote_change(appointment, remote)
            else:
                await self.appointments.claim_local_version(appointment, remote.etag)
            resolution["applied"] = True
        else:
            resolution["applied"] = False

    async def _adjust_buffer(self, appointment_id: str, metadata: Dict[str, object]) -> None:
        appointment = await self.appointments.get(appointment_id)
        if appointment.buffer is None:
            return
        minutes = int(metadata.get("new_minutes", 0))
        buffer = appointment.buffer
        if metadata.get("side") == "after":
            buffer = replace(buffer, after_minutes=minutes,
                             effective_end=appointment.end + timedelta(minutes=minutes),
                             factors=buffer.factors + ("manual_adjustment",))
        else:
            buffer = replace(buffer, before_minutes=minutes,
                             effective_start=appointment.start - timedelta(minutes=minutes),
                             factors=buffer.factors + ("manual_adjustment",))
        appointment.buffer = buffer
        await self.appointments.store.update(appointment)

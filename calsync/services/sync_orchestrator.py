"""
Sync Orchestrator

Drives one reconciliation pass per (user, provider, calendar):

1. pull: incremental listing with the stored sync token, or a bounded full
   snapshot when there is no token; a rejected token triggers exactly one
   full resync
2. merge remote edits into pushed appointments according to the
   integration's update policy
3. push: local appointments changed since the last pass, with etag-guarded
   writes (one refetch-and-retry on a stale etag)
4. apply the staged mirror batch, run conflict detection over the merged
   schedule, then commit the new SyncState

SyncState is committed last and as a whole, so a failed or cancelled pass
leaves the previous cursor in place and the next pass re-reads the same
changes. Passes for the same key never interleave (SyncGuard).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from calsync import config
from calsync.exceptions import (
    NotFoundError,
    SyncInProgressError,
    SyncTokenInvalid,
)
from calsync.models.calendar import AccessRole, Calendar, CanonicalEvent, EventListing, EventStatus, WriteResult
from calsync.models.conflicts import Conflict, ConflictSeverity, ConflictType
from calsync.models.scheduling import (
    Appointment,
    AppointmentStatus,
    SyncDirection,
    SyncResult,
    SyncState,
    UpdatePolicy,
)
from calsync.providers.base import CalendarProvider
from calsync.providers.caldav_client import CalDAVProvider
from calsync.providers.session_cache import ProviderSessionCache
from calsync.resilience import with_conflict_retry
from calsync.services.appointment_service import AppointmentService
from calsync.services.collaborators import SYSTEM_ACTOR, AuditEventType, Collaborators
from calsync.services.conflict_service import ConflictService, appointment_item, event_item
from calsync.services.sync_guard import InMemorySyncGuard, SyncClaim, SyncGuard
from calsync.stores.base import EventMirrorStore, SyncStateStore
from calsync.utils.timezone_utils import now_utc

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str, str, Optional[str]], CalendarProvider]


@dataclass
class CalendarIntegration:
    """A connected remote calendar and how it is synced."""
    user_id: str
    provider: str
    calendar: Calendar
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    policy: UpdatePolicy = UpdatePolicy.NEWEST_WINS
    is_default: bool = False

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.provider}:{self.calendar.id}"

    def to_dict(self) -> Dict[str, object]:
        return {
            "user_id": self.user_id,
            "provider": self.provider,
            "calendar": self.calendar.model_dump(mode="json"),
            "direction": self.direction.value,
            "policy": self.policy.value,
            "is_default": self.is_default,
        }


def external_uid_for(appointment: Appointment) -> str:
    return f"calsync-{appointment.id}@calsync"


def event_from_appointment(appointment: Appointment, uid: str, calendar: Calendar) -> CanonicalEvent:
    status = EventStatus.CANCELLED if appointment.status == AppointmentStatus.CANCELLED else EventStatus.CONFIRMED
    description = None
    if appointment.participants:
        description = "Participants: " + ", ".join(appointment.participants)
    return CanonicalEvent(
        uid=uid,
        title=appointment.purpose or "Appointment",
        description=description,
        start=appointment.start,
        end=appointment.end,
        timezone=appointment.timezone,
        location=appointment.location,
        status=status,
        calendar_id=calendar.id,
        last_modified=appointment.updated_at,
    )


class SyncOrchestrator:
    """Owns connected calendars and runs sync passes for them."""

    def __init__(
        self,
        appointments: AppointmentService,
        mirror: EventMirrorStore,
        sync_states: SyncStateStore,
        conflicts: Optional[ConflictService] = None,
        guard: Optional[SyncGuard] = None,
        collaborators: Optional[Collaborators] = None,
        provider_factory: Optional[ProviderFactory] = None,
        session_cache: Optional[ProviderSessionCache] = None,
        clock: Callable[[], datetime] = now_utc,
        window_past_days: int = config.SYNC_WINDOW_PAST_DAYS,
        window_future_days: int = config.SYNC_WINDOW_FUTURE_DAYS,
    ):
        self.appointments = appointments
        self.mirror = mirror
        self.sync_states = sync_states
        self.conflicts = conflicts
        self.guard = guard or InMemorySyncGuard()
        self.collaborators = collaborators or appointments.collaborators
        self.sessions = session_cache if session_cache is not None else ProviderSessionCache()
        self.provider_factory = provider_factory or self._caldav_factory
        self.clock = clock
        self.window_past = timedelta(days=window_past_days)
        self.window_future = timedelta(days=window_future_days)

        self._providers: Dict[Tuple[str, str], CalendarProvider] = {}
        self._integrations: Dict[str, CalendarIntegration] = {}

    def _caldav_factory(self, username: str, password: str, server_url: Optional[str]) -> CalendarProvider:
        return CalDAVProvider(username, password, server_url=server_url, session_cache=self.sessions)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def register_provider(self, user_id: str, provider: CalendarProvider) -> None:
        self._providers[(user_id, provider.name)] = provider

    def register_calendar(self, integration: CalendarIntegration) -> CalendarIntegration:
        self._integrations[integration.key] = integration
        return integration

    def integrations_for(self, user_id: str) -> List[CalendarIntegration]:
        return [i for i in self._integrations.values() if i.user_id == user_id]

    def integration(self, user_id: str, provider: str, calendar_id: str) -> CalendarIntegration:
        integration = self._integrations.get(f"{user_id}:{provider}:{calendar_id}")
        if integration is None:
            raise NotFoundError("Calendar integration", f"{provider}/{calendar_id}")
        return integration

    def _provider(self, user_id: str, provider: str) -> CalendarProvider:
        instance = self._providers.get((user_id, provider))
        if instance is None:
            raise NotFoundError("Provider connection", provider)
        return instance

    async def connect_account(
        self,
        user_id: str,
        username: str,
        password: str,
        server_url: Optional[str] = None,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        policy: UpdatePolicy = UpdatePolicy.NEWEST_WINS,
    ) -> List[CalendarIntegration]:
        """
        Detect the provider, authenticate and register every discovered
        calendar. The first writable calendar becomes the default target for
        appointments that have not been pushed anywhere yet.

        Raises:
            ValidationError: No server URL and no known provider for the username
            ProviderAuthError: Credentials rejected
        """
        provider = self.provider_factory(username, password, server_url)
        await provider.authenticate()
        calendars = await provider.discover_calendars()
        self.register_provider(user_id, provider)

        has_default = any(i.is_default for i in self.integrations_for(user_id))
        connected = []
        for calendar in calendars:
            writable = calendar.access_role != AccessRole.READER
            integration = CalendarIntegration(
                user_id=user_id,
                provider=provider.name,
                calendar=calendar,
                direction=direction if writable else SyncDirection.PULL_ONLY,
                policy=policy,
                is_default=writable and not has_default,
            )
            has_default = has_default or integration.is_default
            connected.append(self.register_calendar(integration))

        logger.info(f"Connected {provider.name} for user {user_id}: {len(connected)} calendars")
        return connected

    # ------------------------------------------------------------------
    # Sync pass
    # ------------------------------------------------------------------

    async def sync_calendar(
        self,
        user_id: str,
        provider: str,
        calendar_id: str,
        direction: Optional[SyncDirection] = None,
        policy: Optional[UpdatePolicy] = None,
    ) -> SyncResult:
        """
        Run one sync pass.

        Raises:
            SyncInProgressError: Another pass for the same calendar is running
            NotFoundError: Calendar or provider not connected
            ProviderError: The provider failed after retries
        """
        integration = self.integration(user_id, provider, calendar_id)
        client = self._provider(user_id, provider)
        direction = direction or integration.direction
        policy = policy or integration.policy

        async with self.guard.claim(integration.key) as claim:
            try:
                result = await self._run_pass(integration, client, direction, policy, claim)
            except Exception as e:
                logger.error(f"Sync failed for {integration.key}: {e}")
                self.collaborators.audit_event(AuditEventType.SYNC_FAILED, SYSTEM_ACTOR, integration.key,
                                               {"error": str(e)})
                raise

        logger.info(
            f"Sync {integration.key} ({result.mode}): +{result.created} ~{result.updated} "
            f"-{result.deleted} pushed={result.pushed} conflicts={len(result.conflicts)}"
        )
        self.collaborators.audit_event(AuditEventType.SYNC_COMPLETED, SYSTEM_ACTOR, integration.key,
                                       {"mode": result.mode, "pushed": result.pushed})
        return result

    async def _run_pass(
        self,
        integration: CalendarIntegration,
        client: CalendarProvider,
        direction: SyncDirection,
        policy: UpdatePolicy,
        claim: SyncClaim,
    ) -> SyncResult:
        calendar = integration.calendar
        state = await self.sync_states.get(integration.user_id, integration.provider, calendar.id) or SyncState(
            user_id=integration.user_id, provider=integration.provider, calendar_id=calendar.id
        )
        started = self.clock()
        result = SyncResult(calendar_id=calendar.id)
        new_token = state.sync_token
        upserts: List[CanonicalEvent] = []
        deletes: List[str] = []
        replace_mirror = False
        touched: Set[str] = set()

        if direction != SyncDirection.PUSH_ONLY:
            listing = await self._pull(client, calendar, state.sync_token, started, result)
            upserts, deletes = await self._reconcile(integration, listing, state, policy, result, touched)
            new_token = listing.sync_token
            replace_mirror = listing.is_full_snapshot
        else:
            result.mode = "push_only"

        if direction != SyncDirection.PULL_ONLY and calendar.access_role != AccessRole.READER:
            pushed = await self._push(integration, client, state.last_sync, touched, result)
            upserts.extend(pushed)

        namespace = integration.key
        await self.mirror.apply(namespace, upserts, deletes, replace=replace_mirror)

        if self.conflicts is not None:
            result.conflicts.extend(await self.conflicts.scan(integration.user_id))

        # a pass that outlived its claim must not move the cursor under a newer pass
        claim.ensure_held()
        await self.sync_states.commit(SyncState(
            user_id=state.user_id,
            provider=state.provider,
            calendar_id=state.calendar_id,
            sync_token=new_token,
            last_full_sync=started if result.mode == "full" else state.last_full_sync,
            last_sync=started,
        ))
        result.sync_token = new_token
        return result

    async def _pull(
        self,
        client: CalendarProvider,
        calendar: Calendar,
        token: Optional[str],
        now: datetime,
        result: SyncResult,
    ) -> EventListing:
        window = (now - self.window_past, now + self.window_future)
        if token:
            try:
                listing = await client.list_events(calendar, sync_token=token, time_range=window)
                result.mode = "full" if listing.is_full_snapshot else "incremental"
                return listing
            except SyncTokenInvalid:
                logger.warning(f"Sync token for {calendar.id} rejected; running a full resync")
                result.full_resync_triggered = True

        listing = await client.list_events(calendar, sync_token=None, time_range=window)
        result.mode = "full"
        return listing

    async def _reconcile(
        self,
        integration: CalendarIntegration,
        listing: EventListing,
        state: SyncState,
        policy: UpdatePolicy,
        result: SyncResult,
        touched: Set[str],
    ) -> Tuple[List[CanonicalEvent], List[str]]:
        """Count remote changes and merge them into linked appointments."""
        namespace = integration.key
        known = {e.uid: e for e in await self.mirror.list(namespace)}
        by_href = {e.href: e.uid for e in known.values() if e.href}

        for event in listing.events:
            prior = known.get(event.uid)
            if prior is None:
                result.created += 1
            elif prior.etag != event.etag or prior.etag is None:
                result.updated += 1
            else:
                continue
            linked = await self.appointments.store.find_by_external_uid(integration.user_id, event.uid)
            if linked:
                await self._merge_remote(integration, linked, event, state, policy, result, touched)

        if listing.is_full_snapshot:
            seen = {e.uid for e in listing.events}
            removed = [uid for uid in known if uid not in seen]
        else:
            removed = [by_href.get(ref, ref) for ref in listing.deleted]
            removed = [uid for uid in removed if uid in known]

        for uid in removed:
            result.deleted += 1
            linked = await self.appointments.store.find_by_external_uid(integration.user_id, uid)
            if linked and linked.status != AppointmentStatus.CANCELLED:
                await self._remote_deleted(linked, policy, touched)

        deletes = list(listing.deleted) if not listing.is_full_snapshot else []
        return list(listing.events), deletes

    async def _merge_remote(
        self,
        integration: CalendarIntegration,
        appointment: Appointment,
        event: CanonicalEvent,
        state: SyncState,
        policy: UpdatePolicy,
        result: SyncResult,
        touched: Set[str],
    ) -> None:
        if appointment.external_etag and appointment.external_etag == event.etag:
            return

        local_changed = state.last_sync is not None and appointment.updated_at > state.last_sync
        if not local_changed or policy == UpdatePolicy.REMOTE_WINS:
            winner = "remote"
        elif policy == UpdatePolicy.LOCAL_WINS:
            winner = "local"
        elif policy == UpdatePolicy.NEWEST_WINS:
            remote_time = event.last_modified or state.last_sync
            winner = "remote" if remote_time and remote_time > appointment.updated_at else "local"
        else:
            winner = "manual"

        touched.add(appointment.id)
        if winner == "remote":
            await self.appointments.apply_remote_change(appointment, event)
        elif winner == "local":
            await self.appointments.claim_local_version(appointment, event.etag)
            touched.discard(appointment.id)
        else:
            conflict = Conflict(
                type=ConflictType.UPDATE_CONFLICT,
                severity=ConflictSeverity.MEDIUM,
                subject=appointment_item(appointment),
                conflicting=event_item(event, integration.user_id),
                detected_at=self.clock(),
            )
            conflict.enrichment["remote"] = event.to_json()
            if self.conflicts is not None:
                await self.conflicts.store.save(conflict)
            result.conflicts.append(conflict)
            logger.info(f"Appointment {appointment.id} and remote event {event.uid} both changed; raised conflict")

    async def _remote_deleted(self, appointment: Appointment, policy: UpdatePolicy, touched: Set[str]) -> None:
        if policy == UpdatePolicy.LOCAL_WINS:
            # Recreate it on the next push
            appointment.external_uid = None
            appointment.external_etag = None
            await self.appointments.claim_local_version(appointment, None)
            return
        touched.add(appointment.id)
        appointment.status = AppointmentStatus.CANCELLED
        await self.appointments.store.update(appointment)
        if appointment.timeslot_id:
            await self.appointments.timeslots.release(appointment.timeslot_id)
        logger.info(f"Remote deletion cancelled appointment {appointment.id}")

    async def _push(
        self,
        integration: CalendarIntegration,
        client: CalendarProvider,
        since: Optional[datetime],
        touched: Set[str],
        result: SyncResult,
    ) -> List[CanonicalEvent]:
        """Write local changes; returns the mirror entries for what was written."""
        calendar = integration.calendar
        written: List[CanonicalEvent] = []
        changed = await self.appointments.store.list_changed_since(integration.user_id, since)

        for appointment in changed:
            if appointment.id in touched:
                continue
            if appointment.calendar_id is None and not integration.is_default:
                continue
            if appointment.calendar_id is not None and appointment.calendar_id != calendar.id:
                continue

            if appointment.status == AppointmentStatus.CANCELLED:
                if appointment.external_uid:
                    await self._push_delete(client, calendar, appointment)
                    result.pushed += 1
                continue

            if await self._matches_mirror(integration, appointment):
                logger.debug(f"Appointment {appointment.id} already matches the remote copy; not pushing")
                continue

            event = await self._push_upsert(client, calendar, appointment)
            written.append(event)
            result.pushed += 1
        return written

    async def _matches_mirror(self, integration: CalendarIntegration, appointment: Appointment) -> bool:
        """
        True when the mirror holds this appointment's content at the etag it
        last saw, e.g. after a pass that both kept the local version and
        pushed it.
        """
        if not (appointment.external_uid and appointment.external_etag):
            return False
        mirrored = await self.mirror.get(integration.key, appointment.external_uid)
        if mirrored is None or mirrored.etag != appointment.external_etag:
            return False
        local = event_from_appointment(appointment, appointment.external_uid, integration.calendar)
        return local.content_hash() == mirrored.content_hash()

    async def _push_upsert(self, client: CalendarProvider, calendar: Calendar, appointment: Appointment) -> CanonicalEvent:
        uid = appointment.external_uid or external_uid_for(appointment)
        event = event_from_appointment(appointment, uid, calendar)

        async def refetch_etag() -> Optional[str]:
            current = await client.get_event(calendar, uid)
            return current.etag if current else None

        async def write(etag: Optional[str]) -> WriteResult:
            # without a known version only a create (If-None-Match: *) is safe; an
            # existing resource then surfaces as a conflict and its etag is refetched
            if etag:
                return await client.update_event(calendar, event, etag)
            return await client.create_event(calendar, event)

        current = appointment.external_etag if appointment.external_uid else None
        written = await with_conflict_retry(write, refetch_etag, current)

        appointment.external_uid = written.uid
        appointment.external_etag = written.etag
        appointment.calendar_id = calendar.id
        await self.appointments.store.update(appointment)
        return event.model_copy(update={"etag": written.etag, "href": written.href, "provider": client.name})

    async def _push_delete(self, client: CalendarProvider, calendar: Calendar, appointment: Appointment) -> None:
        uid = appointment.external_uid

        async def refetch_etag() -> Optional[str]:
            current = await client.get_event(calendar, uid)
            return current.etag if current else None

        await with_conflict_retry(
            lambda etag: client.delete_event(calendar, uid, etag),
            refetch_etag,
            appointment.external_etag,
        )

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def sync_user(self, user_id: str) -> Dict[str, object]:
        """Sync every connected calendar of a user; one failure does not stop the rest."""
        outcomes: Dict[str, object] = {}
        for integration in self.integrations_for(user_id):
            try:
                result = await self.sync_calendar(user_id, integration.provider, integration.calendar.id)
                outcomes[integration.calendar.id] = result.to_dict()
            except Exception as e:
                outcomes[integration.calendar.id] = {"error": getattr(e, "kind", "error"), "message": str(e)}
        return outcomes

    async def aclose(self) -> None:
        """Close provider connections (shutdown)."""
        for (user_id, name), provider in list(self._providers.items()):
            try:
                await provider.aclose()
            except Exception as e:
                logger.warning(f"Failed to close {name} connection for user {user_id}: {e}")
        self._providers.clear()

    async def handle_webhook(self, user_id: str, provider: str, calendar_id: str) -> Optional[SyncResult]:
        """
        Change notification from a provider: run an incremental pass for the
        calendar. A notification that arrives while a pass is running is
        covered by that pass.
        """
        try:
            return await self.sync_calendar(user_id, provider, calendar_id)
        except SyncInProgressError:
            logger.info(f"Webhook for {provider}/{calendar_id} coalesced into running pass")
            return None

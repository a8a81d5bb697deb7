"""
Tests for the sync orchestrator against an in-memory calendar provider
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import redis

from calsync.exceptions import ConcurrencyError, NotFoundError, SyncInProgressError
from calsync.models.calendar import AccessRole
from calsync.models.conflicts import ConflictType
from calsync.models.scheduling import AppointmentStatus, SyncDirection, UpdatePolicy
from calsync.services.collaborators import AuditEventType
from calsync.services.sync_guard import RedisSyncLease
from calsync.services.sync_orchestrator import CalendarIntegration, SyncOrchestrator, external_uid_for

from tests.conftest import OWNER_ID, make_appointment, utc
from tests.fakes import FakeCalendarProvider, make_calendar, remote_event

KEY = f"{OWNER_ID}:fake:work"


def ago(**delta) -> datetime:
    return datetime.now(timezone.utc) - timedelta(**delta)


@pytest.fixture
def provider():
    return FakeCalendarProvider()


@pytest.fixture
def calendar(provider):
    return provider.calendars[0]


@pytest.fixture
def orchestrator(appointment_service, mirror, sync_states, guard, provider, calendar):
    orchestrator = SyncOrchestrator(appointment_service, mirror, sync_states, guard=guard)
    orchestrator.register_provider(OWNER_ID, provider)
    orchestrator.register_calendar(CalendarIntegration(OWNER_ID, "fake", calendar, is_default=True))
    return orchestrator


async def sync(orchestrator, **kwargs):
    return await orchestrator.sync_calendar(OWNER_ID, "fake", "work", **kwargs)


async def add_local(store, start=None, **fields):
    """An appointment booked before any sync pass ran."""
    appointment = make_appointment(start or utc(2030, 1, 14, 9), updated_at=ago(minutes=5), **fields)
    await store.insert(appointment)
    return appointment


async def edit_local(store, appointment_id, **changes):
    appointment = await store.get(appointment_id)
    for name, value in changes.items():
        setattr(appointment, name, value)
    appointment.updated_at = datetime.now(timezone.utc) + timedelta(seconds=1)
    await store.update(appointment)
    return appointment


def edit_remote(provider, calendar, uid, **changes):
    return provider.add_remote(calendar, provider.events[uid].model_copy(update=changes))


class TestPull:

    async def test_first_pass_is_full(self, orchestrator, provider, calendar, sync_states, mirror):
        provider.add_remote(calendar, remote_event("r1", utc(2030, 1, 14, 9)))

        result = await sync(orchestrator)

        assert result.mode == "full"
        assert result.created == 1
        assert provider.list_calls == [None]
        state = await sync_states.get(OWNER_ID, "fake", "work")
        assert state.sync_token == "tok-1"
        assert state.last_full_sync == state.last_sync
        assert [e.uid for e in await mirror.list(KEY)] == ["r1"]

    async def test_later_passes_are_incremental(self, orchestrator, provider, calendar):
        provider.add_remote(calendar, remote_event("r1", utc(2030, 1, 14, 9)))
        await sync(orchestrator)
        provider.add_remote(calendar, remote_event("r2", utc(2030, 1, 14, 11)))

        result = await sync(orchestrator)

        assert provider.list_calls == [None, "tok-1"]
        assert result.mode == "incremental"
        assert (result.created, result.updated, result.deleted) == (1, 0, 0)
        assert result.sync_token == "tok-2"

    async def test_unchanged_events_are_not_counted(self, orchestrator, provider, calendar):
        provider.add_remote(calendar, remote_event("r1", utc(2030, 1, 14, 9)))
        await sync(orchestrator)

        result = await sync(orchestrator)

        assert (result.created, result.updated, result.deleted) == (0, 0, 0)

    async def test_rejected_token_triggers_one_full_resync(self, orchestrator, provider, calendar, sync_states):
        provider.add_remote(calendar, remote_event("r1", utc(2030, 1, 14, 9)))
        await sync(orchestrator)
        provider.invalid_tokens.add("tok-1")

        result = await sync(orchestrator)

        assert provider.list_calls == [None, "tok-1", None]
        assert result.full_resync_triggered
        assert result.mode == "full"
        state = await sync_states.get(OWNER_ID, "fake", "work")
        assert state.last_full_sync == state.last_sync

    async def test_failed_pass_keeps_cursor(self, orchestrator, provider, calendar, sync_states, guard, collaborators):
        provider.add_remote(calendar, remote_event("r1", utc(2030, 1, 14, 9)))
        await sync(orchestrator)
        before = await sync_states.get(OWNER_ID, "fake", "work")
        provider.fail_on_list = RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            await sync(orchestrator)

        assert await sync_states.get(OWNER_ID, "fake", "work") == before
        assert not guard.is_active(KEY)
        await collaborators.drain()
        assert collaborators.audit.recent_events[-1].event_type == AuditEventType.SYNC_FAILED

        provider.fail_on_list = None
        provider.add_remote(calendar, remote_event("r2", utc(2030, 1, 14, 11)))
        result = await sync(orchestrator)
        assert provider.list_calls[-1] == "tok-1"
        assert result.created == 1

    async def test_remote_deletion_leaves_mirror(self, orchestrator, provider, calendar, mirror):
        provider.add_remote(calendar, remote_event("r1", utc(2030, 1, 14, 9)))
        await sync(orchestrator)
        provider.remove_remote("r1")

        result = await sync(orchestrator)

        assert result.deleted == 1
        assert await mirror.get(KEY, "r1") is None


class TestPassExclusion:

    async def test_concurrent_pass_is_rejected(self, orchestrator, guard, provider):
        async with guard.claim(KEY):
            with pytest.raises(SyncInProgressError):
                await sync(orchestrator)
        assert provider.list_calls == []

    async def test_webhook_during_pass_is_coalesced(self, orchestrator, guard, provider):
        async with guard.claim(KEY):
            assert await orchestrator.handle_webhook(OWNER_ID, "fake", "work") is None

        result = await orchestrator.handle_webhook(OWNER_ID, "fake", "work")
        assert result.mode == "full"

    async def test_sync_user_reports_each_calendar(self, orchestrator, guard):
        async with guard.claim(KEY):
            outcomes = await orchestrator.sync_user(OWNER_ID)
        assert outcomes["work"]["error"] == "sync_in_progress"

        outcomes = await orchestrator.sync_user(OWNER_ID)
        assert outcomes["work"]["mode"] == "full"

    async def test_pass_that_lost_its_lease_keeps_the_old_cursor(
        self, appointment_service, mirror, sync_states, provider, calendar
    ):
        redis_client = MagicMock(spec=redis.Redis)
        redis_client.set.return_value = True
        redis_client.eval.return_value = 0
        orchestrator = SyncOrchestrator(appointment_service, mirror, sync_states, guard=RedisSyncLease(redis_client))
        orchestrator.register_provider(OWNER_ID, provider)
        orchestrator.register_calendar(CalendarIntegration(OWNER_ID, "fake", calendar, is_default=True))

        with pytest.raises(ConcurrencyError):
            await sync(orchestrator)

        assert await sync_states.get(OWNER_ID, "fake", "work") is None


class TestPush:

    async def test_new_appointment_is_created_remotely(self, orchestrator, provider, appointment_store, mirror):
        appointment = await add_local(appointment_store, purpose="Quarterly review")

        result = await sync(orchestrator)

        uid = external_uid_for(appointment)
        assert uid == f"calsync-{appointment.id}@calsync"
        assert result.pushed == 1
        assert provider.writes == [("create", uid)]
        assert provider.events[uid].title == "Quarterly review"
        stored = await appointment_store.get(appointment.id)
        assert (stored.external_uid, stored.calendar_id) == (uid, "work")
        assert stored.external_etag == provider.events[uid].etag
        assert (await mirror.get(KEY, uid)).etag == stored.external_etag

    async def test_pushed_appointment_is_not_echoed(self, orchestrator, provider, appointment_store):
        await add_local(appointment_store)
        await sync(orchestrator)

        result = await sync(orchestrator)

        assert (result.pushed, result.created, result.updated) == (0, 0, 0)
        assert len(provider.writes) == 1

    async def test_local_edit_is_pushed(self, orchestrator, provider, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        await edit_local(appointment_store, appointment.id, location="Room 4")

        result = await sync(orchestrator)

        uid = external_uid_for(appointment)
        assert result.pushed == 1
        assert provider.writes[-1] == ("update", uid)
        assert provider.events[uid].location == "Room 4"

    async def test_stale_etag_is_refetched_once(self, orchestrator, provider, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        uid = external_uid_for(appointment)
        await edit_local(appointment_store, appointment.id, location="Room 4", external_etag='"stale"')

        await sync(orchestrator)

        assert provider.writes[-1] == ("update", uid)
        assert provider.events[uid].location == "Room 4"
        stored = await appointment_store.get(appointment.id)
        assert stored.external_etag == provider.events[uid].etag

    async def test_push_without_etag_never_overwrites_blindly(self, orchestrator, provider, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        uid = external_uid_for(appointment)
        remote_etag = provider.events[uid].etag
        await edit_local(appointment_store, appointment.id, location="Room 4", external_etag=None)

        with patch.object(provider, "update_event", wraps=provider.update_event) as update:
            await sync(orchestrator, direction=SyncDirection.PUSH_ONLY)

        assert [c.args[2] for c in update.call_args_list] == [remote_etag]
        assert provider.writes[-1] == ("update", uid)
        assert provider.events[uid].location == "Room 4"

    async def test_push_without_etag_creates_missing_event(self, orchestrator, provider, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        uid = external_uid_for(appointment)
        provider.remove_remote(uid)
        await edit_local(appointment_store, appointment.id, location="Room 4", external_etag=None)

        await sync(orchestrator, direction=SyncDirection.PUSH_ONLY)

        assert provider.writes[-1] == ("create", uid)
        assert provider.events[uid].location == "Room 4"

    async def test_cancelled_appointment_is_deleted_remotely(self, orchestrator, provider, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        await edit_local(appointment_store, appointment.id, status=AppointmentStatus.CANCELLED)

        result = await sync(orchestrator)

        uid = external_uid_for(appointment)
        assert result.pushed == 1
        assert provider.writes[-1] == ("delete", uid)
        assert uid not in provider.events

    async def test_pull_only_never_writes(self, orchestrator, provider, appointment_store):
        await add_local(appointment_store)

        result = await sync(orchestrator, direction=SyncDirection.PULL_ONLY)

        assert result.pushed == 0
        assert provider.writes == []

    async def test_push_only_skips_listing(self, orchestrator, provider, appointment_store):
        await add_local(appointment_store)

        result = await sync(orchestrator, direction=SyncDirection.PUSH_ONLY)

        assert result.mode == "push_only"
        assert provider.list_calls == []
        assert result.pushed == 1

    async def test_only_default_calendar_receives_new_appointments(
        self, orchestrator, provider, appointment_store
    ):
        home = make_calendar("home")
        orchestrator.register_calendar(CalendarIntegration(OWNER_ID, "fake", home))
        await add_local(appointment_store)

        result = await orchestrator.sync_calendar(OWNER_ID, "fake", "home")

        assert result.pushed == 0


class TestRemoteChanges:

    async def test_remote_edit_is_applied(self, orchestrator, provider, calendar, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        uid = external_uid_for(appointment)
        moved = edit_remote(provider, calendar, uid, start=utc(2030, 1, 14, 13), end=utc(2030, 1, 14, 14),
                            location="Room 2")

        result = await sync(orchestrator)

        assert result.updated == 1
        assert result.pushed == 0
        stored = await appointment_store.get(appointment.id)
        assert (stored.start, stored.end) == (utc(2030, 1, 14, 13), utc(2030, 1, 14, 14))
        assert stored.location == "Room 2"
        assert stored.external_etag == moved.etag

    async def test_local_wins_overwrites_remote(self, orchestrator, provider, calendar, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        uid = external_uid_for(appointment)
        await edit_local(appointment_store, appointment.id, location="Room 9")
        edit_remote(provider, calendar, uid, start=utc(2030, 1, 14, 13), end=utc(2030, 1, 14, 14))

        await sync(orchestrator, policy=UpdatePolicy.LOCAL_WINS)

        assert provider.writes[-1] == ("update", uid)
        remote = provider.events[uid]
        assert remote.start == utc(2030, 1, 14, 9)
        assert remote.location == "Room 9"

    async def test_kept_local_version_is_not_pushed_again(self, orchestrator, provider, calendar, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        uid = external_uid_for(appointment)
        await edit_local(appointment_store, appointment.id, location="Room 9")
        edit_remote(provider, calendar, uid, start=utc(2030, 1, 14, 13), end=utc(2030, 1, 14, 14))
        await sync(orchestrator, policy=UpdatePolicy.LOCAL_WINS)
        writes = list(provider.writes)

        result = await sync(orchestrator, policy=UpdatePolicy.LOCAL_WINS)

        assert result.pushed == 0
        assert provider.writes == writes
        assert provider.events[uid].location == "Room 9"

    async def test_newest_wins_takes_later_remote_edit(self, orchestrator, provider, calendar, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        uid = external_uid_for(appointment)
        await edit_local(appointment_store, appointment.id, location="Room 9")
        edit_remote(provider, calendar, uid, start=utc(2030, 1, 14, 13), end=utc(2030, 1, 14, 14),
                    last_modified=datetime.now(timezone.utc) + timedelta(hours=1))

        await sync(orchestrator)

        stored = await appointment_store.get(appointment.id)
        assert stored.start == utc(2030, 1, 14, 13)
        assert provider.writes[-1] == ("create", uid)

    async def test_manual_policy_raises_update_conflict(self, orchestrator, provider, calendar, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        uid = external_uid_for(appointment)
        await edit_local(appointment_store, appointment.id, location="Room 9")
        edit_remote(provider, calendar, uid, start=utc(2030, 1, 14, 13), end=utc(2030, 1, 14, 14))
        writes = list(provider.writes)

        result = await sync(orchestrator, policy=UpdatePolicy.MANUAL)

        assert [c.type for c in result.conflicts] == [ConflictType.UPDATE_CONFLICT]
        conflict = result.conflicts[0]
        assert conflict.subject.id == appointment.id
        assert conflict.enrichment["remote"]["uid"] == uid
        # neither side is overwritten until someone decides
        assert provider.writes == writes
        assert (await appointment_store.get(appointment.id)).start == utc(2030, 1, 14, 9)

    async def test_remote_deletion_cancels_appointment(self, orchestrator, provider, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        provider.remove_remote(external_uid_for(appointment))

        result = await sync(orchestrator)

        assert result.deleted == 1
        assert result.pushed == 0
        assert (await appointment_store.get(appointment.id)).status == AppointmentStatus.CANCELLED

    async def test_remote_deletion_under_local_wins_recreates(self, orchestrator, provider, appointment_store):
        appointment = await add_local(appointment_store)
        await sync(orchestrator)
        uid = external_uid_for(appointment)
        provider.remove_remote(uid)

        await sync(orchestrator, policy=UpdatePolicy.LOCAL_WINS)

        assert provider.writes[-1] == ("create", uid)
        assert uid in provider.events
        assert (await appointment_store.get(appointment.id)).status == AppointmentStatus.SCHEDULED


class TestConnections:

    async def test_connect_account_registers_calendars(self, appointment_service, mirror, sync_states):
        provider = FakeCalendarProvider([
            make_calendar("holidays", AccessRole.READER),
            make_calendar("work"),
            make_calendar("home"),
        ])
        orchestrator = SyncOrchestrator(
            appointment_service, mirror, sync_states,
            provider_factory=lambda username, password, server_url: provider,
        )

        connected = await orchestrator.connect_account(OWNER_ID, "user-1", "secret")

        by_id = {i.calendar.id: i for i in connected}
        assert by_id["holidays"].direction == SyncDirection.PULL_ONLY
        assert not by_id["holidays"].is_default
        assert by_id["work"].is_default
        assert not by_id["home"].is_default
        assert by_id["home"].direction == SyncDirection.BIDIRECTIONAL
        assert len(orchestrator.integrations_for(OWNER_ID)) == 3

        result = await orchestrator.sync_calendar(OWNER_ID, "fake", "holidays")
        assert result.mode == "full"

    async def test_reader_calendar_is_never_written(self, appointment_service, mirror, sync_states, appointment_store):
        provider = FakeCalendarProvider([make_calendar("holidays", AccessRole.READER)])
        orchestrator = SyncOrchestrator(appointment_service, mirror, sync_states)
        orchestrator.register_provider(OWNER_ID, provider)
        orchestrator.register_calendar(CalendarIntegration(
            OWNER_ID, "fake", provider.calendars[0], is_default=True
        ))
        await add_local(appointment_store)

        await orchestrator.sync_calendar(OWNER_ID, "fake", "holidays")

        assert provider.writes == []

    async def test_unknown_calendar(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.sync_calendar(OWNER_ID, "fake", "missing")

    async def test_aclose_closes_providers(self, orchestrator, provider):
        await orchestrator.aclose()
        assert provider.closed


class TestConflictReporting:

    async def test_remote_events_conflict_with_appointments(
        self, appointment_service, mirror, sync_states, conflict_service, provider, calendar, appointment_store
    ):
        orchestrator = SyncOrchestrator(appointment_service, mirror, sync_states, conflicts=conflict_service)
        orchestrator.register_provider(OWNER_ID, provider)
        orchestrator.register_calendar(CalendarIntegration(OWNER_ID, "fake", calendar, is_default=True))
        appointment = await add_local(appointment_store, start=utc(2030, 1, 14, 10))
        provider.add_remote(calendar, remote_event("r1", utc(2030, 1, 14, 10, 30)))

        result = await orchestrator.sync_calendar(OWNER_ID, "fake", "work")

        overlaps = [c for c in result.conflicts if c.type == ConflictType.TIME_OVERLAP]
        assert len(overlaps) == 1
        assert {overlaps[0].subject.id, overlaps[0].conflicting.id} == {appointment.id, "event:r1"}

        # the same pair is not reported again
        again = await orchestrator.sync_calendar(OWNER_ID, "fake", "work")
        assert again.conflicts == []

"""
Tests for the Supabase-backed stores against a mocked query builder
"""

from datetime import date, time
from types import SimpleNamespace
from unittest.mock import MagicMock, call

import pytest

from calsync.models.scheduling import (
    MeetingType,
    SyncState,
    Timeslot,
    TimeslotFilters,
    TimeslotStatus,
)
from calsync.stores.supabase_store import (
    SupabaseSyncStateStore,
    SupabaseTimeslotStore,
    appointment_from_row,
    appointment_to_row,
    timeslot_from_row,
    timeslot_to_row,
)

from tests.conftest import NEXT_MONDAY, make_appointment, utc

CHAIN_METHODS = (
    "select", "insert", "update", "upsert", "delete",
    "eq", "neq", "gt", "gte", "lt", "lte", "in_",
    "order", "range", "limit",
)


def mock_query(*results):
    """Query builder whose chained calls return itself; execute() yields results in order."""
    query = MagicMock()
    for name in CHAIN_METHODS:
        getattr(query, name).return_value = query
    query.execute.side_effect = [SimpleNamespace(data=data, count=count) for data, count in results]
    return query


@pytest.fixture
def client():
    return MagicMock()


def slot_row(**fields):
    slot = Timeslot(
        id="slot-1",
        owner_id="owner-1",
        date=NEXT_MONDAY,
        start_time=time(9, 0),
        end_time=time(10, 0),
        created_at=utc(2030, 1, 1),
        updated_at=utc(2030, 1, 1),
    )
    row = timeslot_to_row(slot)
    row.update(fields)
    return row


class TestRowMapping:

    def test_timeslot_row_round_trip(self):
        row = slot_row(max_bookings=3, current_bookings=1)

        assert "duration" not in row
        assert row["duration_minutes"] == 60
        slot = timeslot_from_row(row)
        assert slot.start_time == time(9, 0)
        assert slot.date == NEXT_MONDAY
        assert (slot.max_bookings, slot.current_bookings) == (3, 1)
        assert timeslot_to_row(slot) == row

    def test_timeslot_row_tolerates_seconds_and_z_suffix(self):
        slot = timeslot_from_row(slot_row(start_time="09:00:00", updated_at="2030-01-02T10:00:00Z"))
        assert slot.start_time == time(9, 0)
        assert slot.updated_at == utc(2030, 1, 2, 10)

    def test_appointment_row_round_trip(self):
        appointment = make_appointment(
            utc(2030, 1, 14, 9),
            buffer_minutes=10,
            meeting_type=MeetingType.VIRTUAL,
            external_uid="evt-1",
            external_etag='"e1"',
        )

        row = appointment_to_row(appointment)

        assert row["external_etag"] == '"e1"'
        assert appointment_from_row(row) == appointment


class TestSupabaseTimeslotStore:

    async def test_get_missing(self, client):
        client.table.return_value = mock_query(([], None))
        assert await SupabaseTimeslotStore(client).get("nope") is None

    async def test_compare_and_reserve_fills_slot(self, client):
        query = mock_query(
            ([slot_row()], None),
            ([slot_row(current_bookings=1, status="booked")], None),
        )
        client.table.return_value = query

        slot = await SupabaseTimeslotStore(client).compare_and_reserve("slot-1", 0)

        assert slot.status == TimeslotStatus.BOOKED
        assert slot.current_bookings == 1
        update = query.update.call_args.args[0]
        assert (update["current_bookings"], update["status"]) == (1, "booked")
        assert call("status", "available") in query.eq.call_args_list
        assert call("current_bookings", 0) in query.eq.call_args_list

    async def test_compare_and_reserve_keeps_open_below_capacity(self, client):
        query = mock_query(
            ([slot_row(max_bookings=3)], None),
            ([slot_row(max_bookings=3, current_bookings=1)], None),
        )
        client.table.return_value = query

        await SupabaseTimeslotStore(client).compare_and_reserve("slot-1", 0)

        assert query.update.call_args.args[0]["status"] == "available"

    async def test_lost_race_returns_none(self, client):
        client.table.return_value = mock_query(([slot_row()], None), ([], None))
        assert await SupabaseTimeslotStore(client).compare_and_reserve("slot-1", 0) is None

    async def test_stale_observation_skips_write(self, client):
        query = mock_query(([slot_row(max_bookings=2, current_bookings=1)], None))
        client.table.return_value = query

        assert await SupabaseTimeslotStore(client).compare_and_reserve("slot-1", 0) is None
        query.update.assert_not_called()

    async def test_release_reopens_booked_slot(self, client):
        query = mock_query(
            ([slot_row(current_bookings=1, status="booked")], None),
            ([slot_row()], None),
        )
        client.table.return_value = query

        slot = await SupabaseTimeslotStore(client).release("slot-1")

        assert slot.status == TimeslotStatus.AVAILABLE
        assert query.update.call_args.args[0]["current_bookings"] == 0

    async def test_query_filters_and_pages(self, client):
        query = mock_query(([slot_row()], 11))
        client.table.return_value = query
        filters = TimeslotFilters(
            owner_id="owner-1",
            start_date=date(2030, 1, 14),
            end_date=date(2030, 1, 20),
            statuses=[TimeslotStatus.AVAILABLE],
            page=2,
            limit=10,
        )

        slots, total = await SupabaseTimeslotStore(client).query(filters)

        assert total == 11
        assert len(slots) == 1
        query.select.assert_called_once_with("*", count="exact")
        query.gte.assert_called_once_with("date", "2030-01-14")
        query.lte.assert_called_once_with("date", "2030-01-20")
        query.in_.assert_called_once_with("status", ["available"])
        query.range.assert_called_once_with(10, 19)
        assert query.order.call_args_list == [call("date"), call("start_time")]


class TestSupabaseSyncStateStore:

    async def test_commit_upserts_on_composite_key(self, client):
        query = mock_query(([], None))
        client.table.return_value = query
        state = SyncState("owner-1", "caldav", "work", sync_token="tok-3", last_sync=utc(2030, 1, 7, 8))

        await SupabaseSyncStateStore(client).commit(state)

        client.table.assert_called_with("calendar_sync_states")
        query.upsert.assert_called_once_with(state.to_dict(), on_conflict="user_id,provider,calendar_id")

    async def test_get_parses_row(self, client):
        row = {
            "user_id": "owner-1",
            "provider": "caldav",
            "calendar_id": "work",
            "sync_token": "tok-3",
            "last_full_sync": "2030-01-06T08:00:00+00:00",
            "last_sync": None,
        }
        client.table.return_value = mock_query(([row], None))

        state = await SupabaseSyncStateStore(client).get("owner-1", "caldav", "work")

        assert state.sync_token == "tok-3"
        assert state.last_full_sync == utc(2030, 1, 6, 8)
        assert state.last_sync is None

    async def test_get_missing(self, client):
        client.table.return_value = mock_query(([], None))
        assert await SupabaseSyncStateStore(client).get("owner-1", "caldav", "work") is None

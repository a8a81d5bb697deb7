"""
HTTP-level tests: routing, caller identity and error mapping
"""

import pytest
from fastapi.testclient import TestClient

from calsync.api.dependencies import build_container, set_container
from calsync.main import app
from calsync.services.sync_orchestrator import CalendarIntegration

from tests.conftest import utc
from tests.fakes import FakeCalendarProvider, remote_event

OWNER = {"X-User-Id": "owner-1"}
PATIENT = {"X-User-Id": "patient-1", "X-User-Role": "patient"}

SLOT = {
    "date": "2030-01-14",
    "start_time": "09:00",
    "end_time": "10:00",
    "timezone": "America/New_York",
}


@pytest.fixture
def container():
    container = build_container("memory")
    set_container(container)
    yield container
    set_container(None)


@pytest.fixture
def client(container):
    with TestClient(app) as client:
        yield client


def create_slot(client, **fields):
    response = client.post("/api/timeslots", json={**SLOT, **fields}, headers=OWNER)
    assert response.status_code == 201, response.text
    return response.json()["timeslot"]


class TestBasics:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_identity_is_forbidden(self, client):
        response = client.get("/api/timeslots")
        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "forbidden"


class TestTimeslotRoutes:

    def test_create_and_list(self, client):
        slot = create_slot(client)
        assert slot["status"] == "available"
        assert slot["owner_id"] == "owner-1"

        response = client.get("/api/timeslots", params={"start_date": "2030-01-14"}, headers=OWNER)

        body = response.json()
        assert [s["id"] for s in body["timeslots"]] == [slot["id"]]
        assert body["pagination"]["total"] == 1

    def test_overlap_is_conflict(self, client):
        existing = create_slot(client)

        response = client.post("/api/timeslots", json={**SLOT, "start_time": "09:30", "end_time": "10:30"},
                               headers=OWNER)

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["kind"] == "overlap"
        assert existing["id"] in str(error["detail"])

    def test_malformed_body(self, client):
        response = client.post("/api/timeslots", json={"start_time": "09:00"}, headers=OWNER)
        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "validation"

    def test_bad_time_is_rejected(self, client):
        response = client.post("/api/timeslots", json={**SLOT, "start_time": "25:00"}, headers=OWNER)
        assert response.status_code == 400
        assert response.json()["error"]["detail"]["field"] == "start_time"

    def test_unknown_slot(self, client):
        assert client.get("/api/timeslots/missing", headers=OWNER).status_code == 404

    def test_bulk_reports_item_errors(self, client):
        response = client.post(
            "/api/timeslots/bulk",
            json={"timeslots": [SLOT, {**SLOT, "start_time": "09:30", "end_time": "10:30"}]},
            headers=OWNER,
        )
        body = response.json()
        assert response.status_code == 200
        assert body["success"] is False
        assert [e["index"] for e in body["errors"]] == [1]


class TestAppointmentRoutes:

    def test_last_seat_is_booked_once(self, client):
        slot = create_slot(client)

        first = client.post("/api/appointments", json={"timeslot_id": slot["id"]}, headers=PATIENT)
        second = client.post("/api/appointments", json={"timeslot_id": slot["id"]}, headers=PATIENT)

        assert first.status_code == 201
        appointment = first.json()["appointment"]
        assert appointment["start"] == "2030-01-14T14:00:00+00:00"
        assert "patient-1" in appointment["participants"]
        assert second.status_code == 409
        assert second.json()["error"]["kind"] == "unavailable"

    def test_cancel_frees_the_seat(self, client):
        slot = create_slot(client)
        booked = client.post("/api/appointments", json={"timeslot_id": slot["id"]}, headers=PATIENT).json()

        response = client.post(f"/api/appointments/{booked['appointment']['id']}/cancel",
                               json={"reason": "sick"}, headers=PATIENT)

        assert response.json()["appointment"]["status"] == "cancelled"
        assert client.get(f"/api/timeslots/{slot['id']}", headers=OWNER).json()["timeslot"]["status"] == "available"

    def test_strangers_cannot_see_appointments(self, client):
        slot = create_slot(client)
        booked = client.post("/api/appointments", json={"timeslot_id": slot["id"]}, headers=PATIENT).json()

        response = client.get(f"/api/appointments/{booked['appointment']['id']}", headers={"X-User-Id": "someone"})

        assert response.status_code == 403


class TestSyncAndConflictRoutes:

    def test_sync_reports_conflicts_with_remote_events(self, client, container):
        provider = FakeCalendarProvider()
        calendar = provider.calendars[0]
        container.sync.register_provider("owner-1", provider)
        container.sync.register_calendar(CalendarIntegration("owner-1", "fake", calendar, is_default=True))
        slot = create_slot(client)
        client.post("/api/appointments", json={"timeslot_id": slot["id"]}, headers=PATIENT)
        provider.add_remote(calendar, remote_event("dentist", utc(2030, 1, 14, 14, 30)))

        response = client.post("/api/calendar/sync/fake/work", headers=OWNER)

        result = response.json()["result"]
        assert result["mode"] == "full"
        assert result["pushed"] == 1
        assert [c["type"] for c in result["conflicts"]] == ["time_overlap"]

        listed = client.get("/api/conflicts", headers=OWNER).json()
        assert listed["total"] == 1
        conflict_id = listed["conflicts"][0]["id"]

        resolved = client.post(f"/api/conflicts/{conflict_id}/resolve", json={"strategy": "priority_based"},
                               headers=OWNER).json()["conflict"]
        assert resolved["state"] == "resolved"

        webhook = client.post("/api/calendar/webhook/owner-1/fake/work").json()
        assert webhook["coalesced"] is False
        assert webhook["result"]["mode"] == "incremental"

    def test_unknown_calendar(self, client):
        response = client.post("/api/calendar/sync/fake/nope", headers=OWNER)
        assert response.status_code == 404

    def test_patients_cannot_scan_conflicts(self, client):
        response = client.post("/api/conflicts/scan", json={}, headers=PATIENT)
        assert response.status_code == 403


class TestTimezoneRoutes:

    def test_detect_from_offset(self, client):
        response = client.post("/api/timezones/detect", json={"utc_offset_minutes": 540})
        body = response.json()
        assert body["timezone"] == "Asia/Tokyo"
        assert body["source"] == "client_offset"

    def test_convert(self, client):
        response = client.post(
            "/api/timezones/convert",
            json={"local": "2030-01-14T09:00:00", "from_zone": "America/New_York", "to_zone": "Europe/Berlin"},
        )
        assert response.json()["local"].startswith("2030-01-14T15:00:00")

from datetime import datetime, timezone

import pytest
import respx
from fastapi.testclient import TestClient

from clinic_booking import api, config
from clinic_booking.models import SlotReservation
from clinic_booking.reservation import ReservationSession, Reserved

from conftest import BASE, load_fixture

KEY = "test-key"
AUTH = {"Authorization": f"Bearer {KEY}"}

FAR_HOLD = {
    "success": True,
    "data": {
        "timeslotId": "ts-900",
        "doctorScheduleId": "sched-77",
        "startTime": "2025-06-10T07:00:00.000Z",
        "endTime": "2025-06-10T07:30:00.000Z",
        "expiresAt": "2999-01-01T00:00:00.000Z",
    },
}

NEW_SESSION = {
    "doctorUserId": "doc-1",
    "services": [{"_id": "svc-1", "serviceName": "Khám tổng quát", "durationMinutes": 30}],
    "date": "2025-06-10",
    "appointmentFor": "self",
}


@pytest.fixture(autouse=True)
def service_key(monkeypatch):
    monkeypatch.setattr(config, "BOOKING_SERVICE_KEY", KEY)


def test_missing_key_is_rejected():
    with TestClient(api.app) as client:
        resp = client.post("/sessions", json=NEW_SESSION)
        assert resp.status_code == 401
        resp = client.get("/sessions/abc", headers={"Authorization": "Bearer wrong"})
        assert resp.status_code == 401


def test_unknown_session_is_404():
    with TestClient(api.app) as client:
        assert client.get("/sessions/nope", headers=AUTH).status_code == 404
        assert client.delete("/sessions/nope", headers=AUTH).status_code == 404


def test_booking_session_lifecycle():
    with respx.mock(base_url=BASE, assert_all_called=False) as m:
        m.get("/api/available-slots/doctor-schedule").respond(200, json=load_fixture("doctor_schedule.json"))
        m.get("/api/available-slots/validate-appointment-time").respond(200, json={"success": True, "data": {}})
        reserve = m.post("/api/appointments/reserve-slot").respond(200, json=FAR_HOLD)
        release = m.post("/api/appointments/release-slot").respond(200, json={"success": True})

        with TestClient(api.app) as client:
            resp = client.post("/sessions", json=NEW_SESSION, headers=AUTH)
            assert resp.status_code == 201
            snap = resp.json()
            sid = snap["sessionId"]
            assert snap["phase"] == "idle"
            assert snap["serviceDuration"] == 30
            assert [r["displayRange"] for r in snap["ranges"]] == ["08:00 - 12:00", "13:00 - 17:00"]

            snap = client.put(f"/sessions/{sid}/time", json={"startTime": "11:45"}, headers=AUTH).json()
            assert snap["phase"] == "invalid"
            assert "30 phút" in snap["error"]
            assert reserve.call_count == 0

            snap = client.put(f"/sessions/{sid}/time", json={"startTime": "14:00"}, headers=AUTH).json()
            assert snap["phase"] == "held"
            assert snap["hold"]["timeslotId"] == "ts-900"
            assert snap["remainingSeconds"] > 0

            snap = client.put(f"/sessions/{sid}/date", json={"date": "2025-06-11"}, headers=AUTH).json()
            assert snap["hold"] is None
            assert release.call_count == 1

            assert client.delete(f"/sessions/{sid}", headers=AUTH).status_code == 204
            assert client.get(f"/sessions/{sid}", headers=AUTH).status_code == 404
            # nothing left to give back
            assert release.call_count == 1


def test_closing_session_releases_hold():
    with respx.mock(base_url=BASE, assert_all_called=False) as m:
        m.get("/api/available-slots/doctor-schedule").respond(200, json=load_fixture("doctor_schedule.json"))
        m.get("/api/available-slots/validate-appointment-time").respond(200, json={"success": True, "data": {}})
        m.post("/api/appointments/reserve-slot").respond(200, json=FAR_HOLD)
        release = m.post("/api/appointments/release-slot").respond(200, json={"success": True})

        with TestClient(api.app) as client:
            sid = client.post("/sessions", json=NEW_SESSION, headers=AUTH).json()["sessionId"]
            client.put(f"/sessions/{sid}/time", json={"startTime": "14:00"}, headers=AUTH)

            assert client.delete(f"/sessions/{sid}", headers=AUTH).status_code == 204

        assert release.call_count == 1


class RecordingBackend:
    def __init__(self):
        self.released = []

    async def release_slot(self, timeslot_id):
        self.released.append(timeslot_id)
        return True


def idle_session(backend, timeslot_id=None):
    session = ReservationSession(
        doctor_user_id="doc-1", services=[], date="2025-06-10", api=backend, run_timers=False
    )
    if timeslot_id:
        hold = SlotReservation(
            timeslot_id=timeslot_id,
            start_time="2025-06-10T02:00:00.000Z",
            end_time="2025-06-10T02:30:00.000Z",
            expires_at=datetime(2999, 1, 1, tzinfo=timezone.utc),
        )
        session.dispatch(Reserved(hold=hold, remaining_seconds=300))
    return session


@pytest.mark.asyncio
async def test_cleanup_evicts_idle_and_finished_sessions(monkeypatch):
    backend = RecordingBackend()
    booked = idle_session(backend, "ts-booked")
    booked.consume()
    sessions = {
        "idle": idle_session(backend, "ts-idle"),
        "booked": booked,
        "active": idle_session(backend, "ts-active"),
    }
    monkeypatch.setattr(api, "SESSIONS", dict(sessions))
    monkeypatch.setattr(api, "LAST_SEEN", {"idle": 0.0, "booked": 1000.0, "active": 950.0})
    monkeypatch.setattr(config, "SESSION_IDLE_SECONDS", 900)

    assert await api.cleanup_sessions(now=1000.0) == 2

    assert list(api.SESSIONS) == ["active"]
    assert list(api.LAST_SEEN) == ["active"]
    # only the abandoned hold goes back; the booked one belongs to its appointment
    assert backend.released == ["ts-idle"]
    assert sessions["active"].hold.timeslot_id == "ts-active"

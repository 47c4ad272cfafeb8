import json

import pytest
import respx

from clinic_booking.client import ApiError
from clinic_booking.models import MedicalRecordPermissions, ServiceSummary
from clinic_booking.records import (
    DUPLICATE_SERVICE,
    LOCKED_APPOINTMENT_DONE,
    LOCKED_APPROVED,
    MedicalRecordEditor,
    RecordLocked,
    recompute_permissions,
)
from clinic_booking.reservation import Phase

from conftest import BASE, load_fixture

RECORD = "/api/doctor/medical-records/appt-123"


def saved_record(**changes):
    record = dict(load_fixture("medical_record.json")["data"]["record"])
    record.update(changes)
    return {"success": True, "data": record}


async def loaded_editor(m, bundle=None):
    m.get(RECORD).respond(200, json=bundle or load_fixture("medical_record.json"))
    editor = MedicalRecordEditor("appt-123")
    await editor.load()
    return editor


@pytest.mark.asyncio
async def test_load_reads_legacy_prescription_and_display_services():
    with respx.mock(base_url=BASE) as m:
        editor = await loaded_editor(m)

        assert editor.nurse_note == "Huyết áp 120/80"
        assert [p.medicine for p in editor.prescriptions] == ["Paracetamol"]
        assert [s.service_name for s in editor.services] == ["Cạo vôi răng"]
        assert editor.can_edit and editor.can_approve
        assert editor.lock_reason is None


@pytest.mark.asyncio
async def test_load_adds_blank_prescription_when_editable():
    bundle = load_fixture("medical_record.json")
    del bundle["data"]["record"]["prescription"]
    with respx.mock(base_url=BASE) as m:
        editor = await loaded_editor(m, bundle)
        assert len(editor.prescriptions) == 1
        assert editor.prescriptions[0].medicine == ""


@pytest.mark.asyncio
async def test_finalized_record_rejects_edits():
    bundle = load_fixture("medical_record.json")
    bundle["data"]["record"]["status"] = "Finalized"
    bundle["data"]["permissions"] = {
        "recordStatus": "Finalized",
        "doctor": {"canEdit": False, "reason": "Hồ sơ đã được duyệt."},
    }
    with respx.mock(base_url=BASE) as m:
        editor = await loaded_editor(m, bundle)

        assert not editor.can_edit
        assert editor.lock_reason == "Hồ sơ đã được duyệt."
        with pytest.raises(RecordLocked):
            await editor.add_service(ServiceSummary(id="svc-5"))
        with pytest.raises(RecordLocked):
            await editor.save()
        with pytest.raises(RecordLocked):
            editor.start_follow_up("2025-06-10")


@pytest.mark.asyncio
async def test_add_service_adopts_server_list():
    with respx.mock(base_url=BASE) as m:
        editor = await loaded_editor(m)
        route = m.patch(RECORD + "/additional-services").respond(
            200,
            json=saved_record(
                additionalServiceIds=[
                    {"_id": "svc-2", "serviceName": "Cạo vôi răng", "price": 200000},
                    {"_id": "svc-5", "serviceName": "Chụp X-quang", "price": 150000},
                ]
            ),
        )

        services = await editor.add_service(ServiceSummary(id="svc-5", service_name="Chụp X-quang"))

        assert [s.id for s in services] == ["svc-2", "svc-5"]
        assert json.loads(route.calls.last.request.content) == {"serviceIds": ["svc-2", "svc-5"]}


@pytest.mark.asyncio
async def test_duplicate_service_is_rejected():
    with respx.mock(base_url=BASE) as m:
        editor = await loaded_editor(m)
        with pytest.raises(ValueError, match=DUPLICATE_SERVICE):
            await editor.add_service(ServiceSummary(id="svc-2"))


@pytest.mark.asyncio
async def test_failed_service_update_reverts():
    with respx.mock(base_url=BASE) as m:
        editor = await loaded_editor(m)
        m.patch(RECORD + "/additional-services").respond(500, json={"message": "Lỗi máy chủ"})

        with pytest.raises(ApiError):
            await editor.remove_service("svc-2")

        assert [s.id for s in editor.services] == ["svc-2"]


@pytest.mark.asyncio
async def test_approve_locks_record():
    with respx.mock(base_url=BASE) as m:
        editor = await loaded_editor(m)
        route = m.put(RECORD).respond(200, json=saved_record(status="Finalized", diagnosis="Viêm lợi"))
        editor.diagnosis = "Viêm lợi"
        editor.add_prescription()

        await editor.approve()

        body = json.loads(route.calls.last.request.content)
        assert body["approve"] is True
        # blank rows are not sent
        assert [p["medicine"] for p in body["prescription"]] == ["Paracetamol"]
        assert not editor.can_edit
        assert editor.lock_reason == LOCKED_APPROVED


@pytest.mark.asyncio
async def test_no_treatment_completes_appointment_even_if_status_update_fails():
    with respx.mock(base_url=BASE) as m:
        editor = await loaded_editor(m)
        save = m.put(RECORD).respond(200, json=saved_record(status="Finalized"))
        status = m.put("/api/appointments/appt-123/status").respond(500)

        await editor.mark_no_treatment("Bệnh nhân đã khỏi")

        body = json.loads(save.calls.last.request.content)
        assert body["conclusion"] == "Không cần khám. Lý do: Bệnh nhân đã khỏi"
        assert body["diagnosis"] == ""
        assert body["prescription"] == []
        assert status.call_count == 1
        assert editor.is_finalized


@pytest.mark.asyncio
async def test_follow_up_save_consumes_hold(clock):
    with respx.mock(base_url=BASE, assert_all_called=False) as m:
        editor = await loaded_editor(m)
        m.get("/api/available-slots/doctor-schedule/follow-up").respond(
            200, json=load_fixture("doctor_schedule.json")
        )
        m.get("/api/available-slots/validate-appointment-time").respond(200, json={"success": True, "data": {}})
        m.post("/api/appointments/reserve-slot").respond(200, json=load_fixture("reserve_slot.json"))
        release = m.post("/api/appointments/release-slot").respond(200, json={"success": True})
        save = m.put(RECORD).respond(
            200,
            json=saved_record(
                followUpDate="2025-06-10",
                followUpStartTime="2025-06-10T02:00:00.000Z",
                followUpEndTime="2025-06-10T02:45:00.000Z",
            ),
        )

        session = editor.start_follow_up("2025-06-10", clock=clock, run_timers=False)
        await session.start()
        # 45 minute scaling service from the record
        state = await session.set_time("09:00")
        assert state.phase == Phase.HELD

        await editor.save()

        body = json.loads(save.calls.last.request.content)
        assert body["reservedTimeslotId"] == "ts-001"
        assert body["followUpServiceIds"] == ["svc-2"]
        assert body["followUpDate"] == "2025-06-10"
        assert release.call_count == 0
        assert editor.follow_up is None
        assert editor.follow_up_display() == "2025-06-10 09:00-09:45"


def test_completed_appointment_locks_both_roles():
    prev = MedicalRecordPermissions(record_status="Draft", appointment_status="Completed")
    perms = recompute_permissions(prev, "Draft")
    assert not perms.doctor.can_edit and not perms.nurse.can_edit
    assert perms.doctor.reason == LOCKED_APPOINTMENT_DONE


def test_follow_up_needs_a_loaded_record():
    editor = MedicalRecordEditor("appt-123")
    with pytest.raises(RecordLocked):
        editor.start_follow_up("2025-06-10")
    assert editor.follow_up is None

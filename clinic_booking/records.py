"""Doctor-side medical record editing, including follow-up scheduling."""
from __future__ import annotations
import logging
from typing import Any

from . import client
from .client import ApiError
from .models import (
    EditPermission,
    MedicalRecord,
    MedicalRecordDisplay,
    MedicalRecordPermissions,
    Prescription,
    ServiceSummary,
)
from .reservation import ReservationSession
from .slots import format_minutes, to_local_minutes

logger = logging.getLogger(__name__)

LOCKED_DEFAULT = "Hồ sơ đã được khóa, không thể chỉnh sửa."
LOCKED_APPOINTMENT_DONE = "Ca khám đã hoàn thành, không thể chỉnh sửa hồ sơ."
LOCKED_APPROVED = "Hồ sơ đã được duyệt."
LOCKED_NURSE_APPROVED = "Hồ sơ đã được bác sĩ duyệt, điều dưỡng không thể chỉnh sửa."
DUPLICATE_SERVICE = "Dịch vụ này đã được thêm"
NO_TREATMENT = "Không cần khám"


class RecordLocked(Exception):
    """Raised on any edit attempt against a record the doctor may not change."""


def recompute_permissions(prev: MedicalRecordPermissions, record_status: str | None) -> MedicalRecordPermissions:
    """Derive edit rights after a save from the returned record status."""
    status = record_status or prev.record_status
    appointment_locked = prev.appointment_status in ("Completed", "Finalized")
    finalized = status == "Finalized"
    can_edit = not appointment_locked and not finalized
    if can_edit:
        doctor_reason = nurse_reason = None
    elif appointment_locked:
        doctor_reason = nurse_reason = LOCKED_APPOINTMENT_DONE
    else:
        doctor_reason, nurse_reason = LOCKED_APPROVED, LOCKED_NURSE_APPROVED
    return prev.model_copy(
        update={
            "record_status": status,
            "doctor": EditPermission(can_edit=can_edit, reason=doctor_reason),
            "nurse": EditPermission(can_edit=can_edit, reason=nurse_reason),
        }
    )


class MedicalRecordEditor:
    """Local editable copy of one appointment's medical record."""

    def __init__(self, appointment_id: str, api=client):
        self.appointment_id = appointment_id
        self.api = api
        self.record: MedicalRecord | None = None
        self.display: MedicalRecordDisplay | None = None
        self.permissions = MedicalRecordPermissions()
        self.diagnosis = ""
        self.conclusion = ""
        self.nurse_note = ""
        self.prescriptions: list[Prescription] = []
        self.services: list[ServiceSummary] = []
        self.follow_up: ReservationSession | None = None
        self.follow_up_note = ""

    # -- permissions ---------------------------------------------------------

    @property
    def can_edit(self) -> bool:
        return self.permissions.doctor.can_edit

    @property
    def is_finalized(self) -> bool:
        return self.permissions.record_status == "Finalized" or (
            self.record is not None and self.record.status == "Finalized"
        )

    @property
    def can_approve(self) -> bool:
        return self.can_edit and not self.is_finalized

    @property
    def lock_reason(self) -> str | None:
        if self.can_edit and not self.is_finalized:
            return None
        return self.permissions.doctor.reason or LOCKED_DEFAULT

    def _require_editable(self) -> None:
        if not self.can_edit or self.is_finalized:
            raise RecordLocked(self.lock_reason)

    # -- load ----------------------------------------------------------------

    async def load(self) -> MedicalRecord:
        bundle = await self.api.get_medical_record(self.appointment_id)
        self.record = MedicalRecord.model_validate(bundle["record"])
        self.display = MedicalRecordDisplay.model_validate(bundle.get("display") or {})
        self.permissions = MedicalRecordPermissions.model_validate(bundle.get("permissions") or {})
        if self.permissions.record_status is None:
            self.permissions = self.permissions.model_copy(update={"record_status": self.record.status})

        self.diagnosis = self.record.diagnosis
        self.conclusion = self.record.conclusion
        self.nurse_note = self.record.nurse_note
        if self.record.prescriptions is not None:
            self.prescriptions = list(self.record.prescriptions)
        elif self.record.prescription is not None:
            self.prescriptions = [self.record.prescription]
        else:
            self.prescriptions = []
        if not self.prescriptions and self.can_edit:
            self.prescriptions = [Prescription()]

        self.services = list(self.display.additional_services or self.record.additional_service_ids)
        logger.debug("Loaded record %s (%s) with %d services", self.record.id, self.record.status, len(self.services))
        return self.record

    # -- additional services -------------------------------------------------

    async def _push_services(self, new_services: list[ServiceSummary]) -> list[ServiceSummary]:
        previous = self.services
        self.services = new_services
        try:
            updated = await self.api.update_additional_services(self.appointment_id, [s.id for s in new_services])
        except ApiError:
            self.services = previous
            raise
        if updated.additional_service_ids:
            self.services = updated.additional_service_ids
        self.record = updated
        if self.follow_up is not None:
            await self.follow_up.set_services(self.services)
        return self.services

    async def add_service(self, service: ServiceSummary) -> list[ServiceSummary]:
        self._require_editable()
        if any(s.id == service.id for s in self.services):
            raise ValueError(DUPLICATE_SERVICE)
        return await self._push_services([*self.services, service])

    async def remove_service(self, service_id: str) -> list[ServiceSummary]:
        self._require_editable()
        if not any(s.id == service_id for s in self.services):
            return self.services
        return await self._push_services([s for s in self.services if s.id != service_id])

    # -- prescriptions -------------------------------------------------------

    def add_prescription(self) -> None:
        self._require_editable()
        self.prescriptions.append(Prescription())

    def remove_prescription(self, index: int) -> None:
        self._require_editable()
        del self.prescriptions[index]

    # -- follow-up -----------------------------------------------------------

    def start_follow_up(self, date: str, **session_kwargs: Any) -> ReservationSession:
        """Open a follow-up booking for the record's patient with its additional services."""
        if self.record is None:
            raise RecordLocked("Hồ sơ chưa được tải.")
        self._require_editable()
        if self.follow_up is not None:
            raise RuntimeError("follow-up booking already open")
        self.follow_up = ReservationSession(
            doctor_user_id=self.record.doctor_user_id,
            services=self.services,
            date=date,
            appointment_for="self",
            actor="doctor",
            patient_user_id=self.record.patient_user_id,
            follow_up=True,
            api=self.api,
            **session_kwargs,
        )
        return self.follow_up

    async def cancel_follow_up(self) -> None:
        if self.follow_up is not None:
            await self.follow_up.close()
            self.follow_up = None

    def _follow_up_fields(self) -> dict[str, Any] | None:
        session = self.follow_up
        if session is None or session.hold is None:
            return None
        hold = session.hold
        return {
            "followUpDate": session.date,
            "followUpStartTime": hold.start_time,
            "followUpEndTime": hold.end_time,
            "followUpServiceIds": [s.id for s in session.services],
            "followUpNote": self.follow_up_note or None,
            "reservedTimeslotId": hold.timeslot_id,
        }

    def follow_up_display(self) -> str | None:
        if self.record is None or not self.record.follow_up_start_time:
            return None
        start = format_minutes(to_local_minutes(self.record.follow_up_start_time))
        if not self.record.follow_up_end_time:
            return f"{self.record.follow_up_date} {start}"
        end = format_minutes(to_local_minutes(self.record.follow_up_end_time))
        return f"{self.record.follow_up_date} {start}-{end}"

    # -- save ----------------------------------------------------------------

    async def save(self, approve: bool = False) -> MedicalRecord:
        """Persist the local copy; approving finalizes the record."""
        self._require_editable()
        if approve and not self.can_approve:
            raise RecordLocked("Không thể duyệt hồ sơ khi đã được khóa.")
        record = await self.api.update_medical_record(
            self.appointment_id,
            diagnosis=self.diagnosis,
            conclusion=self.conclusion,
            prescriptions=[p for p in self.prescriptions if p.medicine.strip()],
            nurse_note=self.nurse_note,
            approve=approve,
            follow_up=self._follow_up_fields(),
        )
        self.record = record
        self.permissions = recompute_permissions(self.permissions, record.status)
        if self.follow_up is not None and self.follow_up.hold is not None:
            # the booking now owns the slot
            self.follow_up.consume()
            await self.follow_up.close()
            self.follow_up = None
        logger.info("Saved record for appointment %s (approve=%s)", self.appointment_id, approve)
        return record

    async def approve(self) -> MedicalRecord:
        if not self.can_approve:
            raise RecordLocked(self.lock_reason)
        return await self.save(approve=True)

    async def mark_no_treatment(self, reason: str = "") -> MedicalRecord:
        """Finalize with an empty diagnosis and complete the appointment."""
        self._require_editable()
        if not self.can_approve:
            raise RecordLocked(self.lock_reason)
        conclusion = f"{NO_TREATMENT}. Lý do: {reason.strip()}" if reason.strip() else NO_TREATMENT
        record = await self.api.update_medical_record(
            self.appointment_id,
            diagnosis="",
            conclusion=conclusion,
            prescriptions=[],
            nurse_note=self.nurse_note,
            approve=True,
        )
        self.record = record
        self.conclusion = conclusion
        self.permissions = recompute_permissions(self.permissions, record.status)
        try:
            await self.api.update_appointment_status(self.appointment_id, "Completed")
        except ApiError as exc:
            # the record is already finalized
            logger.warning("Could not complete appointment %s: %s", self.appointment_id, exc.message)
        await self.cancel_follow_up()
        return record

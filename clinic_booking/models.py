from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Backend payloads are camelCase; Python side uses snake_case."""

    model_config = {
        "populate_by_name": True,
        "alias_generator": to_camel,
    }

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ApiResponse(BaseModel):
    """Normalized response envelope."""
    success: bool
    message: str = ""
    data: Any = None


# Availability ---------------------------------------------------------------

class ScheduleRange(WireModel):
    """A contiguous bookable block (usually a shift) for one doctor/date."""
    shift: str | None = None  # "Morning" / "Afternoon"
    shift_display: str | None = None
    start_time: str  # HH:mm or ISO-8601 instant
    end_time: str
    display_range: str | None = None
    doctor_schedule_id: str | None = None


class BookedSlot(WireModel):
    """An interval already taken on the doctor's day (booked or on hold)."""
    start: str = Field(validation_alias=AliasChoices("start", "startTime"))  # ISO-8601
    end: str = Field(validation_alias=AliasChoices("end", "endTime"))
    timeslot_id: str | None = Field(default=None, validation_alias=AliasChoices("timeslotId", "_id"))
    display_start: str | None = None
    display_end: str | None = None


class ShiftWindow(WireModel):
    """Morning/afternoon window of the reschedule payload."""
    start: str  # HH:mm
    end: str
    available: bool = True


class DoctorSchedule(WireModel):
    date: str | None = None
    doctor_schedule_id: str | None = None
    service_duration: int | None = None
    service_name: str | None = None
    schedule_ranges: list[ScheduleRange] = Field(default_factory=list)
    user_reserved_slots: list[BookedSlot] = Field(default_factory=list)
    booked_slots: list[BookedSlot] = Field(default_factory=list)
    morning_range: ShiftWindow | None = None
    afternoon_range: ShiftWindow | None = None
    message: str | None = None

    @model_validator(mode="after")
    def _ranges_from_shift_windows(self):
        # the reschedule endpoint describes the day as two shift windows
        if self.schedule_ranges:
            return self
        shifts = (("Morning", "Ca sáng", self.morning_range), ("Afternoon", "Ca chiều", self.afternoon_range))
        self.schedule_ranges = [
            ScheduleRange(
                shift=shift,
                shift_display=display,
                start_time=window.start,
                end_time=window.end,
                display_range=f"{window.start} - {window.end}",
                doctor_schedule_id=self.doctor_schedule_id,
            )
            for shift, display, window in shifts
            if window is not None and window.available
        ]
        return self

    @property
    def taken_slots(self) -> list[BookedSlot]:
        return [*self.user_reserved_slots, *self.booked_slots]


class TimeValidation(WireModel):
    """Server verdict on a candidate start time."""
    valid: bool
    message: str | None = None
    end_time: str | None = None  # ISO-8601


class AvailableSlot(WireModel):
    start_time: str
    end_time: str
    display_time: str | None = None


class AvailableSlotsData(WireModel):
    date: str
    doctor_user_id: str | None = None
    service_id: str
    service_name: str | None = None
    service_duration: int | None = None
    break_after_minutes: int | None = None
    doctor_schedule_id: str | None = None
    total_slots: int | None = None
    available_slots: list[AvailableSlot] = Field(default_factory=list)
    message: str | None = None


# Reservation ----------------------------------------------------------------

class ReserveSlotRequest(WireModel):
    doctor_user_id: str
    service_id: str
    doctor_schedule_id: str | None = None
    date: str  # YYYY-MM-DD
    start_time: str  # ISO-8601 UTC
    end_time: str | None = None
    appointment_for: Literal["self", "other"] = "self"


class SlotReservation(WireModel):
    """Temporary server-side hold on a slot."""
    timeslot_id: str
    start_time: str  # ISO-8601
    end_time: str
    expires_at: datetime
    doctor_schedule_id: str | None = None


class ServiceSummary(WireModel):
    id: str = Field(alias="_id")
    service_name: str = ""
    price: float = 0
    final_price: float | None = None
    duration_minutes: int | None = None


# Appointments ---------------------------------------------------------------

class AppointmentCreate(WireModel):
    full_name: str
    email: str
    phone_number: str
    appointment_for: Literal["self", "other"] = "self"
    service_id: str
    doctor_user_id: str
    doctor_schedule_id: str | None = None
    selected_slot: dict[str, str]  # {"startTime", "endTime"}
    notes: str | None = None
    reserved_timeslot_id: str | None = None


class RescheduleRequest(WireModel):
    new_start_time: str
    new_end_time: str
    reason: str | None = None
    reserved_timeslot_id: str | None = None


# Medical records ------------------------------------------------------------

class Prescription(WireModel):
    medicine: str = ""
    dosage: str = ""
    duration: str = ""


class EditPermission(WireModel):
    can_edit: bool = True
    reason: str | None = None


class MedicalRecordPermissions(WireModel):
    record_status: str | None = None
    appointment_status: str | None = None
    doctor: EditPermission = Field(default_factory=EditPermission)
    nurse: EditPermission = Field(default_factory=EditPermission)


class MedicalRecordDisplay(WireModel):
    patient_name: str = ""
    patient_age: int | None = None
    patient_dob: str | None = None
    address: str = ""
    doctor_name: str = ""
    additional_services: list[ServiceSummary] | None = None


class MedicalRecord(WireModel):
    id: str = Field(alias="_id")
    appointment_id: str
    doctor_user_id: str | None = None
    patient_user_id: str | None = None
    nurse_note: str = ""
    diagnosis: str = ""
    conclusion: str = ""
    prescriptions: list[Prescription] | None = None
    prescription: Prescription | None = None  # single-object legacy shape
    additional_service_ids: list[ServiceSummary] = Field(default_factory=list)
    status: Literal["Draft", "InProgress", "Finalized"] = "Draft"
    follow_up_date: str | None = None
    follow_up_start_time: str | None = None
    follow_up_end_time: str | None = None
    follow_up_service_ids: list[str] = Field(default_factory=list)

    @field_validator("additional_service_ids", mode="before")
    @classmethod
    def _ids_to_objects(cls, value: Any) -> Any:
        # unpopulated references come back as bare id strings
        if isinstance(value, list):
            return [{"_id": v} if isinstance(v, str) else v for v in value if v]
        return value

    @field_validator("follow_up_service_ids", mode="before")
    @classmethod
    def _objects_to_ids(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [v.get("_id") if isinstance(v, dict) else v for v in value]
        return value

"""Async REST client for the clinic backend.
Bearer token comes from the runtime token store, with the backend cookie jar
kept alongside for cookie-based sessions.
"""
from __future__ import annotations
import logging
import time
from typing import Any

import httpx

from . import config
from .models import (
    ApiResponse,
    AppointmentCreate,
    AvailableSlotsData,
    DoctorSchedule,
    MedicalRecord,
    Prescription,
    RescheduleRequest,
    ReserveSlotRequest,
    ServiceSummary,
    SlotReservation,
    TimeValidation,
)

logger = logging.getLogger(__name__)

# "session" is cleared with the process, "local" mirrors a remembered login
_TOKEN_STORE: dict[str, str | None] = {"session": None, "local": None}
_COOKIES = httpx.Cookies()

UNAUTHENTICATED_MESSAGE = "Không có token xác thực"
CONNECTION_ERROR_MESSAGE = (
    "Lỗi kết nối: Không thể kết nối đến server. Vui lòng kiểm tra:\n"
    "- Backend đang chạy không?\n"
    "- CORS config có cho phép origin này không?\n"
    "- Kiểm tra log để xem chi tiết"
)


class ApiError(Exception):
    """Backend answered with a non-2xx status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status


class TransportError(ApiError):
    """Backend could not be reached at all."""


def set_auth_token(token: str, persist: bool = False) -> None:
    _TOKEN_STORE["session"] = token
    if persist:
        _TOKEN_STORE["local"] = token


def clear_auth_token() -> None:
    _TOKEN_STORE.update(session=None, local=None)
    _COOKIES.clear()


def _get_token() -> str | None:
    return _TOKEN_STORE["session"] or _TOKEN_STORE["local"] or config.AUTH_TOKEN


def _clean_params(params: dict[str, Any] | None) -> dict[str, Any] | None:
    if not params:
        return None
    return {k: v for k, v in params.items() if v is not None and v != ""}


def _normalize(payload: Any) -> ApiResponse:
    if isinstance(payload, dict) and "success" in payload:
        return ApiResponse(
            success=bool(payload.get("success")),
            message=payload.get("message") or "",
            data=payload.get("data"),
        )
    # some endpoints answer with the bare resource
    return ApiResponse(success=True, data=payload)


def _json_or_empty(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {}


async def _api_call(
    method: str,
    path: str,
    *,
    params: dict[str, Any] | None = None,
    json: Any = None,
    authenticated: bool = True,
    base_url: str | None = None,
) -> ApiResponse:
    """Perform one backend call and return its normalized envelope.

    401 comes back as an unsuccessful envelope instead of an exception so
    silent auth checks stay quiet. Any other non-2xx raises ApiError.
    """
    url = f"{base_url or config.API_BASE_URL}{path}"
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if authenticated:
        token = _get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            logger.debug("No bearer token for %s, relying on cookies", path)
    query = _clean_params(params)
    is_auth_check = "/auth/profile" in path

    try:
        async with httpx.AsyncClient(http2=True, timeout=config.HTTP_TIMEOUT, cookies=_COOKIES) as client:
            resp = await client.request(method, url, headers=headers, params=query, json=json)
            if resp.status_code == 304:
                logger.warning("304 Not Modified from %s, retrying without cache", path)
                retry_params = dict(query or {}, _nocache=int(time.time() * 1000))
                resp = await client.request(
                    method,
                    url,
                    headers={**headers, "Cache-Control": "no-cache"},
                    params=retry_params,
                    json=json,
                )
            _COOKIES.update(resp.cookies)
    except httpx.TransportError as exc:
        logger.error("Request %s %s failed: %r", method, url, exc)
        raise TransportError(CONNECTION_ERROR_MESSAGE) from exc

    if not (is_auth_check and resp.status_code == 401):
        logger.debug("%s %s -> %s", method, url, resp.status_code)

    body = _json_or_empty(resp)
    if resp.status_code == 401:
        message = body.get("message") if isinstance(body, dict) else None
        return ApiResponse(success=False, message=message or UNAUTHENTICATED_MESSAGE)
    if resp.is_error or resp.status_code == 304:
        message = body.get("message") if isinstance(body, dict) else None
        raise ApiError(message or f"HTTP error! status: {resp.status_code}", resp.status_code)
    return _normalize(body)


def _unwrap(resp: ApiResponse, fallback: str) -> Any:
    if not resp.success:
        raise ApiError(resp.message or fallback)
    return resp.data


# Availability ---------------------------------------------------------------

async def get_doctor_schedule(
    doctor_user_id: str,
    service_id: str,
    date: str,
    appointment_for: str = "self",
    patient_user_id: str | None = None,
    follow_up: bool = False,
) -> DoctorSchedule:
    """Return the bookable ranges of a doctor for one service and date."""
    path = "/available-slots/doctor-schedule/follow-up" if follow_up else "/available-slots/doctor-schedule"
    params = {
        "doctorUserId": doctor_user_id,
        "serviceId": service_id,
        "date": date,
        "appointmentFor": appointment_for,
        "patientUserId": patient_user_id,
    }
    resp = await _api_call("GET", path, params=params)
    data = _unwrap(resp, "Không thể tải lịch làm việc của bác sĩ")
    schedule = DoctorSchedule.model_validate(data or {})
    if not schedule.message and resp.message:
        schedule.message = resp.message
    return schedule


async def validate_appointment_time(
    doctor_user_id: str,
    service_id: str,
    date: str,
    start_time: str,
    end_time: str | None = None,
    appointment_for: str = "self",
    patient_user_id: str | None = None,
) -> TimeValidation:
    """Ask the backend whether a start time can be booked; rejections are values."""
    params = {
        "doctorUserId": doctor_user_id,
        "serviceId": service_id,
        "date": date,
        "startTime": start_time,
        "endTime": end_time,
        "appointmentFor": appointment_for,
        "patientUserId": patient_user_id,
    }
    try:
        resp = await _api_call("GET", "/available-slots/validate-appointment-time", params=params)
    except ApiError as exc:
        if isinstance(exc, TransportError):
            raise
        return TimeValidation(valid=False, message=exc.message)
    data = resp.data if isinstance(resp.data, dict) else {}
    return TimeValidation(valid=resp.success, message=resp.message or None, end_time=data.get("endTime"))


async def get_available_slots(doctor_user_id: str | None, service_id: str, date: str) -> ApiResponse:
    """Legacy per-slot listing. Never raises; failures come back as an envelope."""
    params = {"doctorUserId": doctor_user_id, "serviceId": service_id, "date": date}
    try:
        resp = await _api_call(
            "GET", "/api/available-slots", params=params, authenticated=False, base_url=config.API1_BASE_URL
        )
    except ApiError as exc:
        logger.error("Error fetching available slots: %s", exc.message)
        return ApiResponse(success=False, message=exc.message or "Không thể tải danh sách khung giờ.")
    if resp.success and resp.data:
        resp.data = AvailableSlotsData.model_validate(resp.data)
    return resp


# Reservation ----------------------------------------------------------------

async def reserve_slot(req: ReserveSlotRequest) -> SlotReservation:
    """Place a temporary hold; raises ApiError with the server's reason on conflict."""
    resp = await _api_call("POST", "/appointments/reserve-slot", json=req.to_wire())
    data = _unwrap(resp, "Không thể giữ chỗ khung giờ này")
    return SlotReservation.model_validate(data)


async def release_slot(timeslot_id: str) -> bool:
    resp = await _api_call("POST", "/appointments/release-slot", json={"timeslotId": timeslot_id})
    data = resp.data if isinstance(resp.data, dict) else {}
    return bool(resp.success and data.get("released", True))


# Appointments ---------------------------------------------------------------

async def create_appointment(req: AppointmentCreate) -> dict[str, Any]:
    resp = await _api_call("POST", "/appointments/consultation/create", json=req.to_wire())
    return _unwrap(resp, "Không thể tạo lịch hẹn") or {}


async def update_appointment_status(appointment_id: str, status: str) -> ApiResponse:
    return await _api_call("PUT", f"/appointments/{appointment_id}/status", json={"status": status})


async def get_reschedule_slots(appointment_id: str, date: str) -> DoctorSchedule:
    resp = await _api_call("GET", f"/appointments/{appointment_id}/reschedule/slots", params={"date": date})
    return DoctorSchedule.model_validate(_unwrap(resp, "Không thể tải khung giờ.") or {})


async def request_reschedule(appointment_id: str, req: RescheduleRequest) -> dict[str, Any]:
    """Submit a reschedule request for staff approval."""
    resp = await _api_call("POST", f"/appointments/{appointment_id}/request-reschedule", json=req.to_wire())
    return _unwrap(resp, "Có lỗi xảy ra khi đổi lịch hẹn") or {}


# Medical records ------------------------------------------------------------

async def get_medical_record(appointment_id: str) -> dict[str, Any]:
    """Return the raw {record, display, permissions} bundle (created on first access)."""
    resp = await _api_call("GET", f"/doctor/medical-records/{appointment_id}")
    return _unwrap(resp, "Không thể tải hồ sơ khám bệnh") or {}


async def update_medical_record(
    appointment_id: str,
    *,
    diagnosis: str,
    conclusion: str,
    prescriptions: list[Prescription],
    nurse_note: str,
    approve: bool = False,
    follow_up: dict[str, Any] | None = None,
) -> MedicalRecord:
    payload: dict[str, Any] = {
        "diagnosis": diagnosis,
        "conclusion": conclusion,
        "prescription": [p.to_wire() for p in prescriptions],
        "nurseNote": nurse_note,
        "approve": approve,
    }
    if follow_up:
        payload.update(follow_up)
    resp = await _api_call("PUT", f"/doctor/medical-records/{appointment_id}", json=payload)
    return MedicalRecord.model_validate(_unwrap(resp, "Lưu thất bại"))


async def update_additional_services(appointment_id: str, service_ids: list[str]) -> MedicalRecord:
    """Overwrite the additional-service list of a record."""
    resp = await _api_call(
        "PATCH", f"/doctor/medical-records/{appointment_id}/additional-services", json={"serviceIds": service_ids}
    )
    return MedicalRecord.model_validate(_unwrap(resp, "Không thể cập nhật dịch vụ"))


async def get_active_services() -> list[ServiceSummary]:
    resp = await _api_call("GET", "/doctor/services")
    return [ServiceSummary.model_validate(s) for s in _unwrap(resp, "Không thể tải dịch vụ") or []]

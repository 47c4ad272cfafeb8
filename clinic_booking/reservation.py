"""Slot-hold workflow for booking and follow-up scheduling.

A ``ReservationSession`` keeps at most one outstanding hold on a candidate
appointment time while a booking is being composed, and releases it as soon
as the input it was made for goes away.

The state lives in an immutable ``BookingState`` and only changes through
``reduce(state, event)``. The session performs I/O and dispatches events;
it never edits state directly.

    IDLE -> VALIDATING -> INVALID | HELD
    HELD -> EXPIRED | RELEASED | CONSUMED

``FETCHING`` covers a non-silent reload of the available ranges; a hold
keeps its HELD phase through such a reload.
"""
from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from . import client, config
from .client import ApiError
from .guards import FetchGeneration, SingleFlight
from .models import (
    AppointmentCreate,
    BookedSlot,
    DoctorSchedule,
    RescheduleRequest,
    ReserveSlotRequest,
    ScheduleRange,
    ServiceSummary,
    SlotReservation,
)
from .slots import (
    MSG_EXPIRED,
    MSG_UNAVAILABLE,
    check_time,
    local_to_utc_iso,
    localize_message,
    remaining,
    service_duration,
    to_local_minutes,
)

logger = logging.getLogger(__name__)

DEFAULT_RESCHEDULE_REASON = "Yêu cầu đổi lịch hẹn"


class Phase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    VALIDATING = "validating"
    INVALID = "invalid"
    HELD = "held"
    EXPIRED = "expired"
    RELEASED = "released"
    CONSUMED = "consumed"


class BookingState(BaseModel):
    """Snapshot of one booking attempt. ``hold`` is set exactly when phase is HELD."""
    model_config = {"frozen": True}

    phase: Phase = Phase.IDLE
    ranges: list[ScheduleRange] = Field(default_factory=list)
    taken: list[BookedSlot] = Field(default_factory=list)
    schedule_message: Optional[str] = None
    loading: bool = False
    time_input: str = ""
    hold: Optional[SlotReservation] = None
    remaining_seconds: Optional[int] = None
    error: Optional[str] = None


# Events ---------------------------------------------------------------------

class FetchStarted(BaseModel):
    silent: bool = False


class RangesLoaded(BaseModel):
    ranges: list[ScheduleRange]
    taken: list[BookedSlot] = Field(default_factory=list)
    message: Optional[str] = None


class FetchFailed(BaseModel):
    error: str


class ContextChanged(BaseModel):
    """Date, doctor or service selection changed."""


class InputCleared(BaseModel):
    pass


class ValidationStarted(BaseModel):
    text: str


class ValidationFailed(BaseModel):
    error: str


class Reserved(BaseModel):
    hold: SlotReservation
    remaining_seconds: int


class Ticked(BaseModel):
    remaining_seconds: int


class HoldExpired(BaseModel):
    pass


class HoldReleased(BaseModel):
    reason: str = ""


class HoldConsumed(BaseModel):
    pass


_RESETTABLE = (Phase.INVALID, Phase.EXPIRED, Phase.CONSUMED, Phase.VALIDATING)


def _after_reset(phase: Phase) -> Phase:
    if phase == Phase.HELD:
        return Phase.RELEASED
    return Phase.IDLE if phase in _RESETTABLE else phase


def reduce(state: BookingState, event: BaseModel) -> BookingState:
    """Pure transition function of the booking state machine."""
    dropped_hold = {"hold": None, "remaining_seconds": None}

    if isinstance(event, FetchStarted):
        if event.silent:
            return state
        if state.phase in (Phase.HELD, Phase.VALIDATING):
            # a hold outlives a reload; only selection changes give it back
            return state.model_copy(update={"loading": True})
        return state.model_copy(update={"phase": Phase.FETCHING, "loading": True})

    if isinstance(event, RangesLoaded):
        phase = Phase.IDLE if state.phase == Phase.FETCHING else state.phase
        return state.model_copy(
            update={
                "phase": phase,
                "ranges": event.ranges,
                "taken": event.taken,
                "schedule_message": event.message,
                "loading": False,
            }
        )

    if isinstance(event, FetchFailed):
        phase = Phase.IDLE if state.phase == Phase.FETCHING else state.phase
        return state.model_copy(
            update={
                "phase": phase,
                "ranges": [],
                "taken": [],
                "schedule_message": None,
                "loading": False,
                "error": event.error,
            }
        )

    if isinstance(event, ContextChanged):
        return state.model_copy(
            update={
                "phase": _after_reset(state.phase),
                "ranges": [],
                "taken": [],
                "time_input": "",
                "error": None,
                **dropped_hold,
            }
        )

    if isinstance(event, InputCleared):
        return state.model_copy(
            update={"phase": _after_reset(state.phase), "time_input": "", "error": None, **dropped_hold}
        )

    if isinstance(event, ValidationStarted):
        return state.model_copy(
            update={"phase": Phase.VALIDATING, "time_input": event.text, "error": None, **dropped_hold}
        )

    if isinstance(event, ValidationFailed):
        return state.model_copy(update={"phase": Phase.INVALID, "error": event.error, **dropped_hold})

    if isinstance(event, Reserved):
        return state.model_copy(
            update={
                "phase": Phase.HELD,
                "hold": event.hold,
                "remaining_seconds": event.remaining_seconds,
                "error": None,
            }
        )

    if isinstance(event, Ticked):
        if state.phase != Phase.HELD:
            return state
        return state.model_copy(update={"remaining_seconds": event.remaining_seconds})

    if isinstance(event, HoldExpired):
        if state.phase != Phase.HELD:
            return state
        return state.model_copy(update={"phase": Phase.EXPIRED, "error": MSG_EXPIRED, **dropped_hold})

    if isinstance(event, HoldReleased):
        if state.phase != Phase.HELD:
            return state
        return state.model_copy(update={"phase": Phase.RELEASED, **dropped_hold})

    if isinstance(event, HoldConsumed):
        return state.model_copy(update={"phase": Phase.CONSUMED, "time_input": "", **dropped_hold})

    raise TypeError(f"Unknown booking event: {type(event).__name__}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_hold(slot: BookedSlot, hold: SlotReservation | None) -> bool:
    """Whether a taken slot is our own hold being given up."""
    if hold is None:
        return False
    if slot.timeslot_id:
        return slot.timeslot_id == hold.timeslot_id
    return to_local_minutes(slot.start) == to_local_minutes(hold.start_time)


class ReservationSession:
    """Drives one booking attempt against the backend.

    ``api`` is any object exposing the reservation functions of
    ``clinic_booking.client``; ``clock`` returns an aware datetime.
    With ``reschedule_appointment_id`` the ranges come from the reschedule
    endpoint of that appointment and the hold is submitted as a reschedule
    request instead of a new booking.
    """

    def __init__(
        self,
        *,
        doctor_user_id: str | None,
        services: list[ServiceSummary],
        date: str | None,
        appointment_for: str = "self",
        actor: str = "patient",
        patient_user_id: str | None = None,
        follow_up: bool = False,
        reschedule_appointment_id: str | None = None,
        api=client,
        clock: Callable[[], datetime] = _utcnow,
        run_timers: bool = True,
    ):
        self.doctor_user_id = doctor_user_id
        self.services = list(services)
        self.date = date
        self.appointment_for = appointment_for
        self.actor = actor
        self.patient_user_id = patient_user_id
        self.follow_up = follow_up
        self.reschedule_appointment_id = reschedule_appointment_id
        self.api = api
        self.clock = clock
        self.run_timers = run_timers

        self.state = BookingState()
        self._releaser = SingleFlight("release-slot")
        self._fetches = FetchGeneration()
        self._attempts = FetchGeneration()
        self._schedule_id: str | None = None
        self._schedule_duration: int | None = None
        self._countdown: asyncio.Task | None = None
        self._refresher: asyncio.Task | None = None

    # -- state ---------------------------------------------------------------

    def dispatch(self, event: BaseModel) -> BookingState:
        before = self.state.phase
        self.state = reduce(self.state, event)
        if self.state.phase != before:
            logger.debug("booking %s -> %s on %s", before.value, self.state.phase.value, type(event).__name__)
        return self.state

    @property
    def hold(self) -> SlotReservation | None:
        return self.state.hold

    @property
    def service_id(self) -> str | None:
        return self.services[0].id if self.services else None

    @property
    def duration_minutes(self) -> int:
        if self._schedule_duration and not any(s.duration_minutes for s in self.services):
            return self._schedule_duration
        return service_duration(self.services)

    def _message(self, message: str | None) -> str | None:
        return localize_message(message, self.actor)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Load ranges and begin the periodic background refresh."""
        await self.refresh_ranges()
        if self.run_timers and self._refresher is None:
            self._refresher = asyncio.create_task(self._refresh_loop())

    async def close(self) -> None:
        """Stop background work and give back any outstanding hold."""
        for task in (self._refresher, self._countdown):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._refresher = self._countdown = None
        self._attempts.invalidate()
        self._fetches.invalidate()
        await self.release("session closed", refresh=False)

    async def __aenter__(self) -> "ReservationSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -- available ranges ----------------------------------------------------

    async def refresh_ranges(self, silent: bool = False) -> None:
        """Reload the bookable ranges; stale responses are discarded."""
        token = self._fetches.next()
        if not (self.doctor_user_id and self.service_id and self.date):
            self.dispatch(RangesLoaded(ranges=[]))
            return
        self.dispatch(FetchStarted(silent=silent))
        try:
            schedule = await self._fetch_schedule()
        except ApiError as exc:
            if not self._fetches.is_current(token):
                return
            if silent:
                logger.warning("Silent schedule refresh failed: %s", exc.message)
                return
            self.dispatch(FetchFailed(error=self._message(exc.message) or exc.message))
            return
        if not self._fetches.is_current(token):
            logger.debug("Discarding stale schedule response (token %s)", token)
            return
        self._schedule_id = schedule.doctor_schedule_id
        self._schedule_duration = schedule.service_duration
        self.dispatch(
            RangesLoaded(ranges=schedule.schedule_ranges, taken=schedule.taken_slots, message=schedule.message)
        )

    async def _fetch_schedule(self) -> DoctorSchedule:
        if self.reschedule_appointment_id:
            return await self.api.get_reschedule_slots(self.reschedule_appointment_id, self.date)
        return await self.api.get_doctor_schedule(
            self.doctor_user_id,
            self.service_id,
            self.date,
            appointment_for=self.appointment_for,
            patient_user_id=self.patient_user_id,
            follow_up=self.follow_up,
        )

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(config.SCHEDULE_REFRESH_SECONDS)
            await self.refresh_ranges(silent=True)

    # -- selection changes ---------------------------------------------------

    async def _context_changed(self, reason: str) -> None:
        self._attempts.invalidate()
        await self.release(reason, refresh=False)
        self.dispatch(ContextChanged())
        await self.refresh_ranges()

    async def set_date(self, date: str) -> None:
        if date == self.date:
            return
        self.date = date
        await self._context_changed("date changed")

    async def set_doctor(self, doctor_user_id: str) -> None:
        if doctor_user_id == self.doctor_user_id:
            return
        self.doctor_user_id = doctor_user_id
        await self._context_changed("doctor changed")

    async def set_services(self, services: list[ServiceSummary]) -> None:
        if [s.id for s in services] == [s.id for s in self.services]:
            return
        self.services = list(services)
        await self._context_changed("services changed")

    async def clear_input(self) -> None:
        self._attempts.invalidate()
        await self.release("input cleared")
        self.dispatch(InputCleared())

    # -- reserve -------------------------------------------------------------

    async def set_time(self, text: str) -> BookingState:
        """Validate a typed start time (on blur) and hold it when acceptable."""
        if self.state.phase == Phase.HELD and text == self.state.time_input:
            return self.state
        attempt = self._attempts.next()
        replaced = self.hold
        if replaced is not None:
            await self.release("time changed", refresh=False)
        if not text or not text.strip():
            self.dispatch(InputCleared())
            return self.state

        self.dispatch(ValidationStarted(text=text))
        check = check_time(
            text,
            self.state.ranges,
            self.duration_minutes,
            taken=[slot for slot in self.state.taken if not _is_hold(slot, replaced)],
            date=self.date,
            now=self.clock(),
        )
        if not check.ok:
            self.dispatch(ValidationFailed(error=check.error))
            return self.state

        start_iso = local_to_utc_iso(self.date, check.start_minutes)
        end_iso = local_to_utc_iso(self.date, check.end_minutes)
        try:
            verdict = await self.api.validate_appointment_time(
                self.doctor_user_id,
                self.service_id,
                self.date,
                start_iso,
                end_iso,
                appointment_for=self.appointment_for,
                patient_user_id=self.patient_user_id,
            )
        except ApiError as exc:
            if self._attempts.is_current(attempt):
                self.dispatch(ValidationFailed(error=exc.message))
            return self.state
        if not self._attempts.is_current(attempt):
            return self.state
        if not verdict.valid:
            self.dispatch(ValidationFailed(error=self._message(verdict.message) or MSG_UNAVAILABLE))
            return self.state

        request = ReserveSlotRequest(
            doctor_user_id=self.doctor_user_id,
            service_id=self.service_id,
            doctor_schedule_id=check.range.doctor_schedule_id or self._schedule_id,
            date=self.date,
            start_time=start_iso,
            end_time=verdict.end_time or end_iso,
            appointment_for=self.appointment_for,
        )
        try:
            hold = await self.api.reserve_slot(request)
        except ApiError as exc:
            if self._attempts.is_current(attempt):
                self.dispatch(ValidationFailed(error=self._message(exc.message) or exc.message))
            return self.state

        if not self._attempts.is_current(attempt):
            # input moved on while the reservation was in flight
            await self._release_orphan(hold)
            return self.state

        self.dispatch(Reserved(hold=hold, remaining_seconds=remaining(self.clock(), hold.expires_at)))
        logger.info("Holding timeslot %s until %s", hold.timeslot_id, hold.expires_at.isoformat())
        self._start_countdown()
        await self.refresh_ranges(silent=True)
        return self.state

    # -- release -------------------------------------------------------------

    async def release(self, reason: str = "", refresh: bool = True) -> bool:
        """Give back the current hold. Concurrent calls collapse into one request."""
        if self.hold is None:
            return False
        released = await self._releaser.run(self._release_hold, self.hold, reason)
        if released and refresh:
            await self.refresh_ranges(silent=True)
        return bool(released)

    async def _release_hold(self, hold: SlotReservation, reason: str) -> bool:
        try:
            await self.api.release_slot(hold.timeslot_id)
        except ApiError as exc:
            logger.warning("Release of timeslot %s failed: %s", hold.timeslot_id, exc.message)
        finally:
            # a newer hold may own the countdown by now
            if self.hold is not None and self.hold.timeslot_id == hold.timeslot_id:
                self._stop_countdown()
                self.dispatch(HoldReleased(reason=reason))
        logger.info("Released timeslot %s (%s)", hold.timeslot_id, reason or "no reason")
        return True

    async def _release_orphan(self, hold: SlotReservation) -> None:
        logger.info("Releasing untracked hold %s", hold.timeslot_id)
        try:
            await self.api.release_slot(hold.timeslot_id)
        except ApiError as exc:
            logger.warning("Release of untracked timeslot %s failed: %s", hold.timeslot_id, exc.message)

    def consume(self) -> SlotReservation | None:
        """Hand the hold over to a saved booking; it is not released."""
        hold = self.hold
        self._stop_countdown()
        self._attempts.invalidate()
        self.dispatch(HoldConsumed())
        return hold

    def _require_hold(self) -> SlotReservation:
        if self.hold is None:
            raise RuntimeError("no slot is being held")
        return self.hold

    async def book(
        self,
        *,
        full_name: str,
        email: str,
        phone_number: str,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Create the appointment on the held slot; the booking takes over the hold."""
        hold = self._require_hold()
        req = AppointmentCreate(
            full_name=full_name,
            email=email,
            phone_number=phone_number,
            appointment_for=self.appointment_for,
            service_id=self.service_id,
            doctor_user_id=self.doctor_user_id,
            doctor_schedule_id=hold.doctor_schedule_id or self._schedule_id,
            selected_slot={"startTime": hold.start_time, "endTime": hold.end_time},
            notes=notes,
            reserved_timeslot_id=hold.timeslot_id,
        )
        appointment = await self.api.create_appointment(req)
        self.consume()
        logger.info("Booked timeslot %s", hold.timeslot_id)
        return appointment

    async def submit_reschedule(self, reason: str = "") -> dict[str, Any]:
        """Ask staff to move the appointment onto the held slot."""
        if not self.reschedule_appointment_id:
            raise RuntimeError("session is not rescheduling an appointment")
        hold = self._require_hold()
        req = RescheduleRequest(
            new_start_time=hold.start_time,
            new_end_time=hold.end_time,
            reason=reason.strip() or DEFAULT_RESCHEDULE_REASON,
            reserved_timeslot_id=hold.timeslot_id,
        )
        result = await self.api.request_reschedule(self.reschedule_appointment_id, req)
        self.consume()
        logger.info("Requested reschedule of %s onto timeslot %s", self.reschedule_appointment_id, hold.timeslot_id)
        return result

    # -- countdown -----------------------------------------------------------

    async def tick(self) -> int | None:
        """Advance the countdown once; expires the hold when it hits zero."""
        hold = self.hold
        if hold is None:
            return None
        left = remaining(self.clock(), hold.expires_at)
        if left > 0:
            self.dispatch(Ticked(remaining_seconds=left))
            return left
        self.dispatch(HoldExpired())
        logger.info("Hold on timeslot %s expired", hold.timeslot_id)
        # the screen is already cleared; telling the server is best-effort
        # and skipped when a release of the hold is already under way
        await self._releaser.run(self._release_orphan, hold)
        await self.refresh_ranges(silent=True)
        return 0

    def _start_countdown(self) -> None:
        self._stop_countdown()
        if not self.run_timers:
            return
        self._countdown = asyncio.create_task(self._countdown_loop())

    def _stop_countdown(self) -> None:
        task, self._countdown = self._countdown, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _countdown_loop(self) -> None:
        while self.hold is not None:
            await asyncio.sleep(config.COUNTDOWN_TICK_SECONDS)
            await self.tick()

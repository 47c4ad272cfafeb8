import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import Field

from . import config
from .logging_config import setup_logging
from .models import ServiceSummary, WireModel
from .reservation import Phase, ReservationSession

logger = logging.getLogger(__name__)


class SessionCreate(WireModel):
    doctor_user_id: Optional[str] = None
    services: list[ServiceSummary] = Field(default_factory=list)
    date: Optional[str] = None  # YYYY-MM-DD
    appointment_for: Literal["self", "other"] = "self"
    actor: Literal["patient", "doctor"] = "patient"
    patient_user_id: Optional[str] = None
    follow_up: bool = False
    reschedule_appointment_id: Optional[str] = None


class DateUpdate(WireModel):
    date: str


class DoctorUpdate(WireModel):
    doctor_user_id: str


class ServicesUpdate(WireModel):
    services: list[ServiceSummary]


class TimeInput(WireModel):
    start_time: str  # HH:mm, clinic local time


# HTTPBearer scheme so Swagger-UI can attach the Authorization header globally
auth_scheme = HTTPBearer(auto_error=False)

SESSIONS: dict[str, ReservationSession] = {}
# monotonic time of the last request that touched each session
LAST_SEEN: dict[str, float] = {}


async def cleanup_sessions(now: float | None = None) -> int:
    """Close and evict finished sessions and those left idle too long."""
    now = time.monotonic() if now is None else now
    evicted = 0
    for session_id, session in list(SESSIONS.items()):
        idle = now - LAST_SEEN.get(session_id, now)
        if session.state.phase != Phase.CONSUMED and idle < config.SESSION_IDLE_SECONDS:
            continue
        SESSIONS.pop(session_id, None)
        LAST_SEEN.pop(session_id, None)
        await session.close()
        evicted += 1
    if evicted:
        logger.info("Evicted %d booking sessions", evicted)
    return evicted


async def cleanup_sessions_periodically():
    while True:
        await asyncio.sleep(config.SESSION_CLEANUP_SECONDS)
        try:
            await cleanup_sessions()
        except Exception:
            logger.exception("Session cleanup failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    cleanup_task = asyncio.create_task(cleanup_sessions_periodically())
    yield
    cleanup_task.cancel()
    # give back every hold still open when the service stops
    for session in list(SESSIONS.values()):
        await session.close()
    SESSIONS.clear()
    LAST_SEEN.clear()


app = FastAPI(title="Clinic Booking Service", lifespan=lifespan)


def verify_key(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)):
    """Validate Bearer token provided via Authorization header"""
    if (
        credentials is None
        or credentials.scheme.lower() != "bearer"
        or credentials.credentials != config.BOOKING_SERVICE_KEY
    ):
        raise HTTPException(status_code=401, detail="Invalid API key")


def _get_session(session_id: str) -> ReservationSession:
    session = SESSIONS.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Booking session not found")
    LAST_SEEN[session_id] = time.monotonic()
    return session


def _snapshot(session_id: str, session: ReservationSession) -> dict:
    state = session.state
    return {
        "sessionId": session_id,
        "phase": state.phase.value,
        "loading": state.loading,
        "timeInput": state.time_input,
        "hold": state.hold.to_wire() if state.hold else None,
        "remainingSeconds": state.remaining_seconds,
        "error": state.error,
        "scheduleMessage": state.schedule_message,
        "ranges": [r.to_wire() for r in state.ranges],
        "serviceDuration": session.duration_minutes,
    }


# Session endpoints -----------------------------------------------------------

@app.post("/sessions", dependencies=[Depends(verify_key)], status_code=201)
async def open_session(req: SessionCreate):
    """Open a booking attempt and load the doctor's available ranges."""
    session = ReservationSession(
        doctor_user_id=req.doctor_user_id,
        services=req.services,
        date=req.date,
        appointment_for=req.appointment_for,
        actor=req.actor,
        patient_user_id=req.patient_user_id,
        follow_up=req.follow_up,
        reschedule_appointment_id=req.reschedule_appointment_id,
    )
    await session.start()
    session_id = uuid.uuid4().hex
    SESSIONS[session_id] = session
    LAST_SEEN[session_id] = time.monotonic()
    return _snapshot(session_id, session)


@app.get("/sessions/{session_id}", dependencies=[Depends(verify_key)])
async def get_session(session_id: str):
    return _snapshot(session_id, _get_session(session_id))


@app.put("/sessions/{session_id}/date", dependencies=[Depends(verify_key)])
async def change_date(session_id: str, req: DateUpdate):
    session = _get_session(session_id)
    await session.set_date(req.date)
    return _snapshot(session_id, session)


@app.put("/sessions/{session_id}/doctor", dependencies=[Depends(verify_key)])
async def change_doctor(session_id: str, req: DoctorUpdate):
    session = _get_session(session_id)
    await session.set_doctor(req.doctor_user_id)
    return _snapshot(session_id, session)


@app.put("/sessions/{session_id}/services", dependencies=[Depends(verify_key)])
async def change_services(session_id: str, req: ServicesUpdate):
    session = _get_session(session_id)
    await session.set_services(req.services)
    return _snapshot(session_id, session)


@app.put("/sessions/{session_id}/time", dependencies=[Depends(verify_key)])
async def enter_time(session_id: str, req: TimeInput):
    """Validate the typed start time and hold the slot when it is bookable.

    Validation and reservation failures are reported in the snapshot's
    ``error`` field, not as HTTP errors.
    """
    session = _get_session(session_id)
    await session.set_time(req.start_time)
    return _snapshot(session_id, session)


@app.delete("/sessions/{session_id}/time", dependencies=[Depends(verify_key)])
async def clear_time(session_id: str):
    session = _get_session(session_id)
    await session.clear_input()
    return _snapshot(session_id, session)


@app.delete("/sessions/{session_id}", dependencies=[Depends(verify_key)], status_code=204)
async def close_session(session_id: str):
    """Close the booking attempt, releasing any hold it still owns."""
    session = SESSIONS.pop(session_id, None)
    LAST_SEEN.pop(session_id, None)
    if session is None:
        raise HTTPException(status_code=404, detail="Booking session not found")
    await session.close()
    return None

"""Runtime configuration read from the environment (``.env`` supported)."""
from __future__ import annotations
import os
from dotenv import load_dotenv

load_dotenv()


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


API_BASE_URL = os.getenv("CLINIC_API_URL", "https://haianhteethbe-production.up.railway.app/api")
# Legacy per-slot endpoint lives on a second host
API1_BASE_URL = os.getenv("CLINIC_API1_URL", "http://localhost:9999")

AUTH_TOKEN = os.getenv("CLINIC_AUTH_TOKEN")
HTTP_TIMEOUT = _get_float(os.getenv("CLINIC_HTTP_TIMEOUT"), 15.0)

LOCAL_UTC_OFFSET_HOURS = _get_int(os.getenv("CLINIC_LOCAL_UTC_OFFSET_HOURS"), 7)
DEFAULT_SERVICE_DURATION_MINUTES = 30

SCHEDULE_REFRESH_SECONDS = _get_float(os.getenv("CLINIC_SCHEDULE_REFRESH_SECONDS"), 90.0)
COUNTDOWN_TICK_SECONDS = _get_float(os.getenv("CLINIC_COUNTDOWN_TICK_SECONDS"), 1.0)

LOG_LEVEL = os.getenv("CLINIC_LOG_LEVEL", "INFO")

BOOKING_SERVICE_KEY = os.getenv("BOOKING_SERVICE_KEY", "")

# Facade sessions untouched this long are closed and evicted
SESSION_IDLE_SECONDS = _get_float(os.getenv("CLINIC_SESSION_IDLE_SECONDS"), 900.0)
SESSION_CLEANUP_SECONDS = _get_float(os.getenv("CLINIC_SESSION_CLEANUP_SECONDS"), 60.0)

"""Time helpers for the slot-hold flow.

Everything here is pure: clinic wall-clock strings (``HH:mm``, UTC+7 by
default) in, minutes-of-day / UTC ISO strings / verdicts out. The async
session in ``reservation.py`` is the only caller that owns a clock.
"""
from __future__ import annotations
import math
import re
from datetime import date as date_cls, datetime, timedelta, timezone
from typing import Iterable, Optional

from pydantic import BaseModel

from . import config
from .models import BookedSlot, ScheduleRange, ServiceSummary

_HHMM = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")

MSG_EMPTY = "Vui lòng nhập thời gian bắt đầu"
MSG_FORMAT = "Thời gian không hợp lệ. Vui lòng nhập theo định dạng HH:mm (giờ 00-23, phút 00-59)"
MSG_PAST = "Không thể đặt lịch hẹn trong quá khứ"
MSG_UNAVAILABLE = "Thời gian này không khả dụng. Vui lòng chọn thời gian trong các khoảng thời gian khả dụng"
MSG_NO_RANGES = "Thời gian này không khả dụng. Bác sĩ không có lịch làm việc trong ngày này"
MSG_BOOKED = "Thời gian này đã có người đặt lịch. Vui lòng chọn thời gian khác"
MSG_EXPIRED = "Thời gian giữ chỗ đã hết hạn. Vui lòng nhập lại thời gian"

# server phrases addressed to the patient, reworded when a doctor is booking
_DOCTOR_PHRASES = [
    ("Bạn đã", "Bệnh nhân đã"),
    ("bạn đã", "bệnh nhân đã"),
    ("của bạn", "của bệnh nhân"),
    ("Bạn không", "Bệnh nhân không"),
    ("bạn không", "bệnh nhân không"),
]


class TimeCheck(BaseModel):
    """Outcome of validating a start time against the fetched ranges."""
    ok: bool
    error: Optional[str] = None
    start_minutes: Optional[int] = None
    end_minutes: Optional[int] = None
    range: Optional[ScheduleRange] = None

    @property
    def start_hhmm(self) -> str:
        return format_minutes(self.start_minutes)

    @property
    def end_hhmm(self) -> str:
        return format_minutes(self.end_minutes)


def local_tz(offset_hours: int | None = None) -> timezone:
    hours = config.LOCAL_UTC_OFFSET_HOURS if offset_hours is None else offset_hours
    return timezone(timedelta(hours=hours))


def parse_hhmm(text: str) -> tuple[int, int] | None:
    """Return (hour, minute) or None when the text is not a valid wall-clock time."""
    match = _HHMM.match(text or "")
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return hour, minute


def format_minutes(minutes: int | None) -> str:
    if minutes is None:
        return ""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_local_minutes(value: str, offset_hours: int | None = None) -> int:
    """Minutes since local midnight for either ``HH:mm`` or an ISO instant."""
    hhmm = parse_hhmm(value)
    if hhmm:
        return hhmm[0] * 60 + hhmm[1]
    local = parse_instant(value).astimezone(local_tz(offset_hours))
    return local.hour * 60 + local.minute


def local_to_utc(date_str: str, minutes: int, offset_hours: int | None = None) -> datetime:
    day = date_cls.fromisoformat(date_str)
    local = datetime(day.year, day.month, day.day, tzinfo=local_tz(offset_hours)) + timedelta(minutes=minutes)
    return local.astimezone(timezone.utc)


def to_utc_iso(moment: datetime) -> str:
    """Format like JavaScript's toISOString(): millisecond precision, Z suffix."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def local_to_utc_iso(date_str: str, minutes: int, offset_hours: int | None = None) -> str:
    return to_utc_iso(local_to_utc(date_str, minutes, offset_hours))


def service_duration(services: Iterable[ServiceSummary]) -> int:
    """Longest duration among the attached services; default when none declares one."""
    durations = [s.duration_minutes for s in services if s.duration_minutes]
    return max(durations) if durations else config.DEFAULT_SERVICE_DURATION_MINUTES


def range_bounds(rng: ScheduleRange, offset_hours: int | None = None) -> tuple[int, int]:
    return to_local_minutes(rng.start_time, offset_hours), to_local_minutes(rng.end_time, offset_hours)


def _on_date(value: str, date: str | None, offset_hours: int | None) -> bool:
    if not date or parse_hhmm(value):
        return True
    return parse_instant(value).astimezone(local_tz(offset_hours)).date().isoformat() == date


def find_overlap(
    start: int,
    end: int,
    taken: Iterable[BookedSlot],
    *,
    date: str | None = None,
    offset_hours: int | None = None,
) -> BookedSlot | None:
    """First taken slot intersecting the local interval [start, end) in minutes."""
    for slot in taken:
        if not _on_date(slot.start, date, offset_hours):
            continue
        lo, hi = to_local_minutes(slot.start, offset_hours), to_local_minutes(slot.end, offset_hours)
        if start < hi and end > lo:
            return slot
    return None


def check_time(
    text: str,
    ranges: list[ScheduleRange],
    duration_minutes: int,
    *,
    taken: Iterable[BookedSlot] = (),
    date: str | None = None,
    now: datetime | None = None,
    offset_hours: int | None = None,
) -> TimeCheck:
    """Validate a typed start time against the available ranges.

    Order: format, past (only when both ``date`` and ``now`` are given),
    overlap with an already taken slot, containment in a range (start
    inclusive, end exclusive), then whether the service still fits before
    that range closes.
    """
    if not text or not text.strip():
        return TimeCheck(ok=False, error=MSG_EMPTY)
    hhmm = parse_hhmm(text)
    if hhmm is None:
        return TimeCheck(ok=False, error=MSG_FORMAT)
    start = hhmm[0] * 60 + hhmm[1]

    if date and now is not None:
        local_now = now.astimezone(local_tz(offset_hours))
        if local_now.date().isoformat() == date and start <= local_now.hour * 60 + local_now.minute:
            return TimeCheck(ok=False, error=MSG_PAST, start_minutes=start)

    if find_overlap(start, start + duration_minutes, taken, date=date, offset_hours=offset_hours) is not None:
        return TimeCheck(ok=False, error=MSG_BOOKED, start_minutes=start)

    if not ranges:
        return TimeCheck(ok=False, error=MSG_NO_RANGES, start_minutes=start)

    for rng in ranges:
        lo, hi = range_bounds(rng, offset_hours)
        if not lo <= start < hi:
            continue
        end = start + duration_minutes
        if end > hi:
            return TimeCheck(
                ok=False,
                error=(
                    f"Không đủ thời gian cho dịch vụ ({duration_minutes} phút). "
                    f"Khung giờ {format_minutes(lo)} - {format_minutes(hi)} kết thúc lúc {format_minutes(hi)}, "
                    f"vui lòng chọn giờ bắt đầu trước {format_minutes(hi - duration_minutes)}"
                ),
                start_minutes=start,
                range=rng,
            )
        return TimeCheck(ok=True, start_minutes=start, end_minutes=end, range=rng)

    return TimeCheck(ok=False, error=MSG_UNAVAILABLE, start_minutes=start)


def remaining(now: datetime, expires_at: datetime) -> int:
    """Whole seconds left on a hold, never negative."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    left = (expires_at - now).total_seconds()
    return max(0, math.ceil(left))


def localize_message(message: str | None, actor: str = "patient") -> str | None:
    """Reword server messages addressed to "bạn" when a doctor is the one booking."""
    if not message or actor != "doctor":
        return message
    for src, dst in _DOCTOR_PHRASES:
        message = message.replace(src, dst)
    return message

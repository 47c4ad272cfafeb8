import json
import pathlib
from datetime import datetime, timedelta, timezone

import pytest

from clinic_booking import client as cl

FIX = pathlib.Path(__file__).parent / "fixtures"
BASE = "https://haianhteethbe-production.up.railway.app"


def load_fixture(name: str) -> dict:
    return json.loads((FIX / name).read_text(encoding="utf-8"))


class FakeClock:
    """Settable stand-in for datetime.now(timezone.utc)."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _clean_auth():
    cl.clear_auth_token()
    yield
    cl.clear_auth_token()


@pytest.fixture
def clock():
    # 17:00 clinic time the day before the booking date
    return FakeClock(datetime(2025, 6, 9, 10, 0, tzinfo=timezone.utc))

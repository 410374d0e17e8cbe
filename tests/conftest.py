import datetime as dt
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import task_time_tracker as ttt  # noqa: E402

LOCAL_TZ = dt.timezone(dt.timedelta(hours=1))


class FixedClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: dt.datetime):
        self.current = start

    def now(self) -> dt.datetime:
        return self.current

    def today(self) -> str:
        return ttt.format_ymd(self.current)

    def advance(self, **kwargs) -> None:
        self.current += dt.timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(dt.datetime(2024, 1, 10, 9, 0, 0, tzinfo=LOCAL_TZ))


@pytest.fixture
def storage():
    return ttt.MemoryStorage()


@pytest.fixture
def tracker(storage, clock):
    return ttt.TimeTracker(storage, clock=clock)


@pytest.fixture
def temp_db_path(tmp_path):
    """Return a unique SQLite path per test to avoid cross-test contamination."""
    return tmp_path / "test_tracker.db"

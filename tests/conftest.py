import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# srcディレクトリをパスに追加
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))


class FakeClock:
    """sleep すると時刻が進むテスト用の時計"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeDateTimeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fixed_now():
    return datetime(2026, 1, 20, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def datetime_clock(fixed_now):
    return FakeDateTimeClock(fixed_now)


@pytest.fixture
def store(tmp_path, monkeypatch):
    from state_store import PaymentStateStore

    monkeypatch.setenv("PAYMENT_STATE_DB", str(tmp_path / "state.db"))
    s = PaymentStateStore()
    s.init_db()
    return s

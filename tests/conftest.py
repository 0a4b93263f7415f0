from datetime import date, datetime, timedelta, timezone

import pytest

from engine import TokenEngine

DAY = date(2024, 2, 1)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(DAY.year, DAY.month, DAY.day, hour, minute, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(at(8))


@pytest.fixture
def engine(clock):
    """Default roster for DAY: D1 has four 60-minute slots of 10 seats from 09:00."""
    eng = TokenEngine(clock=clock)
    eng.seed_day(DAY)
    return eng


@pytest.fixture
def d1_slots(engine):
    return engine.day_slots("D1", DAY)


def fill_slot(engine, slot, source="walk_in", prefix="P-fill"):
    tokens = []
    for i in range(slot.max_capacity):
        result = engine.allocate(f"{prefix}-{slot.id[:6]}-{i}", slot.doctor_id, slot.start_time, source)
        assert result.success, result.message
        tokens.append(result.token)
    return tokens
